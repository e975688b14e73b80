from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from nestwatch.processor.manager import NestProcessorManager
from nestwatch.processor.matcher import NestMatcher
from nestwatch.processor.processor import NestProcessor
from nestwatch.web.core.factory import create_app
from nestwatch.web.core.reloader import ConfigReloader


@pytest.fixture
def processor(make_nest, processor_config, clock):
    """Provide a processor tracking two nests."""
    matcher = NestMatcher()
    matcher.add_nest(make_nest(1))
    matcher.add_nest(make_nest(2, lat=41.0, area_name=None))
    return NestProcessor(MagicMock(), matcher, MagicMock(), processor_config, clock=clock)


@pytest.fixture
def processor_manager(processor):
    """Provide a mock processor manager serving the processor."""
    manager = MagicMock(spec=NestProcessorManager)
    manager.get_processor.return_value = processor
    manager.get_config.return_value = processor.config
    return manager


@pytest.fixture
def config_reloader():
    """Provide a mock config reloader."""
    reloader = MagicMock(spec=ConfigReloader)
    reloader.reload = AsyncMock()
    reloader.refresh_nests = AsyncMock()
    return reloader


@pytest.fixture
def app(processor_manager, config_reloader):
    """Create the app with the processor manager and reloader mocked out."""
    app = create_app()
    app.container.processor_manager.override(processor_manager)  # type: ignore[attr-defined]
    app.container.config_reloader.override(config_reloader)  # type: ignore[attr-defined]
    return app


@pytest.fixture
def client(app):
    """Create test client. The lifespan is not run."""
    return TestClient(app)
