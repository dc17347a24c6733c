from unittest.mock import patch

import pytest

from preview_container.services import ContainerizationService


@pytest.fixture
def cli_service(service_config, fake_handler, tracker):
    """Routes every CLI command to a service backed by the in-memory engine."""
    service = ContainerizationService(service_config, handler=fake_handler, tracker=tracker)
    with patch('preview_container.cli.helpers.get_service', return_value=service):
        yield service
