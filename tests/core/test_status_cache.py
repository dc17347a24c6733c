from preview_container.core.status_cache import StatusCache
from preview_container.models.container import ContainerStatus, StatusTag


class TestStatusCache:
    def test_entries_expire(self, fake_clock):
        cache = StatusCache(ttl=2.0, timer=fake_clock)
        status = ContainerStatus(app_id='app-42', is_running=True, status=StatusTag.STARTING)

        cache.put(status)
        assert cache.get('app-42') is status
        assert 'app-42' in cache

        fake_clock.advance(2.5)
        assert cache.get('app-42') is None
        assert 'app-42' not in cache

    def test_invalidate_and_clear(self, fake_clock):
        cache = StatusCache(ttl=10, timer=fake_clock)
        cache.put(ContainerStatus.stopped('a'))
        cache.put(ContainerStatus.stopped('b'))

        cache.invalidate('a')
        cache.invalidate('missing')
        assert cache.get('a') is None
        assert len(cache) == 1

        cache.clear()
        assert len(cache) == 0

    def test_zero_ttl_disables_caching(self):
        cache = StatusCache(ttl=0)
        cache.put(ContainerStatus.stopped('a'))

        assert cache.get('a') is None
        assert len(cache) == 0

    def test_put_after_invalidation_is_rejected(self, fake_clock):
        cache = StatusCache(ttl=10, timer=fake_clock)
        running = ContainerStatus(app_id='app-42', is_running=True, status=StatusTag.RUNNING)
        generation = cache.generation('app-42')

        cache.invalidate('app-42')

        assert cache.put(running, generation) is False
        assert cache.get('app-42') is None
        assert cache.put(running, cache.generation('app-42')) is True
        assert cache.get('app-42') is running

    def test_clear_rejects_earlier_generations(self, fake_clock):
        cache = StatusCache(ttl=10, timer=fake_clock)
        generation = cache.generation('app-42')

        cache.clear()

        assert cache.put(ContainerStatus.stopped('app-42'), generation) is False
