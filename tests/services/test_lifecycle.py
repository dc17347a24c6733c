import socket

import pytest

from preview_container.services.exceptions import PortConflictError
from preview_container.services.lifecycle import ActivityTracker, is_port_free


class TestActivityTracker:
    """Test idle detection and port allocation."""

    def test_idle_apps(self, tracker, fake_clock):
        tracker.record_activity('a')
        fake_clock.advance(100)
        tracker.record_activity('b')
        fake_clock.advance(200)

        assert tracker.idle_apps(300) == ['a']
        assert tracker.idle_apps(200) == ['a', 'b']
        assert tracker.last_activity('b') == 1100.0

    def test_forget_keeps_port(self, tracker):
        tracker.record_activity('a')
        port = tracker.allocate_port('a')

        tracker.forget('a')

        assert tracker.last_activity('a') is None
        assert tracker.get_port('a') == port

    def test_allocation_is_stable(self, tracker):
        first = tracker.allocate_port('a')

        assert tracker.allocate_port('a') == first
        assert tracker.allocate_port('b') == first + 1

    def test_force_new_port(self, tracker):
        first = tracker.allocate_port('a')

        second = tracker.allocate_port('a', force_new=True)

        assert second != first
        assert tracker.get_port('a') == second

    def test_skips_ports_bound_on_host(self, fake_clock):
        tracker = ActivityTracker(port_range=(5000, 5003), clock=fake_clock,
                                  port_checker=lambda port: port != 5000)

        assert tracker.allocate_port('a') == 5001

    def test_adopted_ports_are_reserved(self, tracker):
        tracker.adopt_port('a', 32100)

        assert tracker.allocate_port('b') == 32101

    def test_range_exhausted(self, fake_clock):
        tracker = ActivityTracker(port_range=(5000, 5002), clock=fake_clock, port_checker=lambda port: True)
        tracker.allocate_port('a')
        tracker.allocate_port('b')

        with pytest.raises(PortConflictError, match="No available ports in range 5000-5001"):
            tracker.allocate_port('c')

    def test_release_and_stats(self, tracker):
        tracker.record_activity('a')
        tracker.allocate_port('a')
        tracker.allocate_port('b')
        tracker.release_port('b')

        assert tracker.stats() == {'trackedApps': 1, 'allocatedPorts': 1}

        tracker.clear()
        assert tracker.stats() == {'trackedApps': 0, 'allocatedPorts': 0}


def test_is_port_free_detects_bound_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        sock.listen(1)
        port = sock.getsockname()[1]

        assert is_port_free(port, host='127.0.0.1') is False
