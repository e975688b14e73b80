"""Application lifespan management for startup and shutdown events."""

import asyncio
import logging
import signal
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from nestwatch.utils.structlog_configurator import configure_structlog
from nestwatch.web.core.container import Container
from nestwatch.web.core.reloader import ConfigReloader

logger = logging.getLogger(__name__)


async def _reload_on_signal(reloader: ConfigReloader) -> None:
    logger.info("Received SIGHUP: reloading config")
    try:
        await reloader.reload()
    except Exception as e:
        logger.error("Failed to reload config (keeping the previous one): %s", e)


def _install_sighup_handler(reloader: ConfigReloader, pending: set[asyncio.Task]) -> bool:
    loop = asyncio.get_running_loop()

    def handle_sighup() -> None:
        task = loop.create_task(_reload_on_signal(reloader))
        pending.add(task)
        task.add_done_callback(pending.discard)

    try:
        loop.add_signal_handler(signal.SIGHUP, handle_sighup)
    except (NotImplementedError, RuntimeError, ValueError, AttributeError) as e:
        # Not the main thread (e.g. a test client) or no SIGHUP on this platform
        logger.debug("SIGHUP reload not available: %s", e)
        return False
    return True


async def _cancel(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Task %s failed", task.get_name())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Context manager for application startup and shutdown events.

    Startup configures logging, migrates the nests database, loads the
    nests and starts the background tasks. Shutdown stops the processor
    loop, lets the webhook sender flush, then closes the stores.

    Args:
        app: The FastAPI application instance.

    Yields:
        None: Control back to the application for normal operation.
    """
    container: Container = app.container  # type: ignore[attr-defined]

    config = container.config()
    configure_structlog(config, debug=getattr(app.state, "debug", False))

    nests_store = container.nests_store()
    points_store = container.points_store()
    processor_manager = container.processor_manager()
    webhook_sender = container.webhook_sender()

    logger.info("Starting nestwatch services...")
    await nests_store.initialize()
    await processor_manager.load_config(config)
    await webhook_sender.start()

    manager_task = asyncio.create_task(processor_manager.run(), name="nest-processor")
    webhook_task = asyncio.create_task(webhook_sender.run(), name="webhook-sender")

    reload_tasks: set[asyncio.Task] = set()
    sighup_installed = _install_sighup_handler(container.config_reloader(), reload_tasks)
    logger.info("All services started successfully")

    try:
        yield
    finally:
        logger.info("Shutting down nestwatch services...")
        if sighup_installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
        for task in list(reload_tasks):
            await _cancel(task)

        await _cancel(manager_task)
        # The sender flushes what is queued before it exits
        await _cancel(webhook_task)
        await webhook_sender.stop()

        await nests_store.dispose()
        if points_store is not None:
            await points_store.dispose()
        logger.info("All services stopped successfully")
