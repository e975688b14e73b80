"""Poracle-compatible nest webhooks.

Nest changes are queued by the processor and sent in batches by a
background task, so the rotation path never waits on HTTP.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

import httpx

from nestwatch.config.models import WebhookConfig, WebhookSettings
from nestwatch.geo.areas import AreaName, area_matches_any, parse_area_names
from nestwatch.geo.geometry import poly_path
from nestwatch.processor.models import Nest, NestingPokemonInfo, to_epoch

logger = logging.getLogger(__name__)

USER_AGENT = "nestwatch"


@dataclass
class NestWebhookMessage:
    """A queued "nest" message and the area used to filter it."""

    message: dict[str, Any]
    area: AreaName

    def payload(self) -> dict[str, Any]:
        return {"type": "nest", "message": self.message}


def build_nest_message(nest: Nest, nesting: NestingPokemonInfo) -> NestWebhookMessage:
    message = {
        "nest_id": nest.id,
        "name": nest.name,
        "lat": nest.lat,
        "lon": nest.lon,
        "pokemon_id": nesting.key.pokemon_id,
        "form": nesting.key.form_id,
        "type": 0,
        "pokemon_count": nesting.nest_count,
        "pokemon_avg": nesting.nest_hourly_count,
        "pokemon_ratio": nesting.nest_pct,
        # Poracle parses this string itself
        "poly_path": json.dumps(poly_path(nest.geometry)),
        "reset_time": to_epoch(nesting.detected_at),
    }
    return NestWebhookMessage(message=message, area=AreaName(parent="", name=nest.area_name or ""))


@dataclass
class WebhookDestination:
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    areas: list[AreaName] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: WebhookConfig) -> "WebhookDestination":
        return cls(
            url=config.url,
            headers=config.header_dict(),
            areas=parse_area_names(config.areas),
        )

    def filter_messages(self, messages: list[NestWebhookMessage]) -> list[NestWebhookMessage]:
        if not self.areas:
            return messages
        return [m for m in messages if area_matches_any(m.area, self.areas)]


class NestWebhookSender:
    """Queues nest webhooks and flushes them to every destination."""

    def __init__(
        self,
        settings: WebhookSettings | None = None,
        webhooks: list[WebhookConfig] | None = None,
    ) -> None:
        self.flush_interval = (settings or WebhookSettings()).flush_interval_seconds
        self.destinations = [WebhookDestination.from_config(w) for w in webhooks or []]
        self.client: httpx.AsyncClient | None = None
        self._lock = threading.Lock()
        self._queue: list[NestWebhookMessage] = []
        self.stats = {"total_sent": 0, "total_failed": 0}

    def configure(self, settings: WebhookSettings, webhooks: list[WebhookConfig]) -> None:
        """Replace the destinations, e.g. after a config reload."""
        self.flush_interval = settings.flush_interval_seconds
        self.destinations = [WebhookDestination.from_config(w) for w in webhooks]
        logger.info("Configured %d nest webhook destination(s)", len(self.destinations))

    async def start(self) -> None:
        """Create the HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )
        logger.info("Webhook sender started with %d destination(s)", len(self.destinations))

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None:
            await self.start()
        return self.client  # type: ignore[return-value]

    async def stop(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None
        logger.info("Webhook sender stopped")

    def add_nest_webhook(self, nest: Nest, nesting: NestingPokemonInfo) -> None:
        """Queue a webhook for a new or changed nesting pokemon. Safe from any thread."""
        message = build_nest_message(nest, nesting)
        with self._lock:
            self._queue.append(message)

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def _pop_messages(self) -> list[NestWebhookMessage]:
        with self._lock:
            messages, self._queue = self._queue, []
        return messages

    async def flush(self) -> None:
        """Send everything queued so far to all destinations."""
        messages = self._pop_messages()
        if not messages or not self.destinations:
            return
        await asyncio.gather(*(self._send(dest, messages) for dest in self.destinations))

    async def _send(
        self, destination: WebhookDestination, messages: list[NestWebhookMessage]
    ) -> None:
        messages = destination.filter_messages(messages)
        if not messages:
            return
        client = await self._get_client()

        logger.info("Sending %d nest webhook(s) to %s", len(messages), destination.url)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            **destination.headers,
        }
        try:
            response = await client.post(
                destination.url,
                json=[m.payload() for m in messages],
                headers=headers,
            )
        except httpx.HTTPError as e:
            self.stats["total_failed"] += 1
            logger.warning("Failed to send webhooks to '%s': %s", destination.url, e)
            return

        if not response.is_success:
            self.stats["total_failed"] += 1
            logger.warning("Received http response: %d", response.status_code)
            return
        self.stats["total_sent"] += len(messages)

    async def run(self) -> None:
        """Flush on an interval until cancelled, then flush one last time."""
        try:
            while True:
                await asyncio.sleep(self.flush_interval)
                await self.flush()
        except asyncio.CancelledError:
            logger.info("Asked to shut down. Flushing webhooks...")
            await self.flush()
            raise
