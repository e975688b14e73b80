"""Dependency injection container for the nestwatch service."""

from dependency_injector import containers, providers

from nestwatch.config import ConfigManager
from nestwatch.database.nests_store import NestsStore
from nestwatch.filters.refresher import NestRefresher
from nestwatch.notifications.webhooks import NestWebhookSender
from nestwatch.processor.manager import NestProcessorManager
from nestwatch.web.core.config import create_points_store, get_config
from nestwatch.web.core.reloader import ConfigReloader


class Container(containers.DeclarativeContainer):
    """Application dependency injection container.

    Everything is a singleton: the processor manager in particular must be
    shared by the ingest route, the API and the background loop.
    """

    # Overridden by create_app() when a path is given on the command line
    config_path = providers.Object(None)

    config_manager = providers.Singleton(ConfigManager, config_path=config_path)

    config = providers.Singleton(get_config, config_manager=config_manager)

    nests_store = providers.Singleton(NestsStore, config=config.provided.nests_db)

    # None when no golbat database is configured
    points_store = providers.Singleton(create_points_store, config=config)

    webhook_sender = providers.Singleton(
        NestWebhookSender,
        settings=config.provided.webhook_settings,
        webhooks=config.provided.webhooks,
    )

    processor_manager = providers.Singleton(
        NestProcessorManager,
        nests_store=nests_store,
        webhook_sender=webhook_sender,
        points_store=points_store,
    )

    refresher = providers.Singleton(
        NestRefresher,
        nests_store=nests_store,
        points_store=points_store,
    )

    config_reloader = providers.Singleton(
        ConfigReloader,
        config_manager=config_manager,
        processor_manager=processor_manager,
        webhook_sender=webhook_sender,
        refresher=refresher,
    )
