"""Config reload shared by the reload API and SIGHUP."""

import asyncio
import logging

from nestwatch.config import ConfigManager, NestwatchConfig
from nestwatch.filters.refresher import NestRefresher, RefreshOptions
from nestwatch.notifications.webhooks import NestWebhookSender
from nestwatch.processor.manager import NestProcessorManager

logger = logging.getLogger(__name__)


class ConfigReloader:
    """Re-reads the config file and rebuilds the processor from the database."""

    def __init__(
        self,
        config_manager: ConfigManager,
        processor_manager: NestProcessorManager,
        webhook_sender: NestWebhookSender,
        refresher: NestRefresher,
    ):
        self.config_manager = config_manager
        self.processor_manager = processor_manager
        self.webhook_sender = webhook_sender
        self.refresher = refresher

    def current_config(self) -> NestwatchConfig:
        return self.processor_manager.config or self.config_manager.load()

    async def refresh_nests(
        self, force_spawnpoints_refresh: bool = False, concurrency: int | None = None
    ) -> None:
        """Re-filter every nest in the database with the current filters.

        Raises:
            StoreUnavailableError: If the nests cannot be read or updated
        """
        options = RefreshOptions.from_config(
            self.current_config().filters,
            force_spawnpoints_refresh=force_spawnpoints_refresh,
            concurrency=concurrency,
        )
        logger.info("starting nest refresh")
        await self.refresher.refresh_all(options)
        logger.info("finished nest refresh")

    async def reload(self) -> NestwatchConfig:
        """Load the config file and publish a new processor.

        Raises:
            ConfigInvalidError: If the config file is invalid
            StoreUnavailableError: If the nests cannot be loaded
        """
        logger.info("reloading config")
        config = await asyncio.to_thread(self.config_manager.reload)
        await self.processor_manager.load_config(config)
        self.webhook_sender.configure(config.webhook_settings, config.webhooks)
        logger.info("config reloaded")
        return config
