"""Ingest route for scanner webhooks."""

import json
import logging
import time
from typing import Annotated, Any

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response
from pydantic import ValidationError

from nestwatch.processor.manager import NestProcessorManager
from nestwatch.processor.models import Pokemon
from nestwatch.web.core.container import Container
from nestwatch.web.models.webhooks import PokemonWebhook

logger = logging.getLogger(__name__)

router = APIRouter()


def parse_pokemon(message: Any) -> Pokemon | None:
    """Turn one webhook message into a spawn, or None if it should be ignored."""
    if not isinstance(message, dict):
        logger.warning("ignoring malformed webhook message: %r", message)
        return None

    hook_type = message.get("type")
    if hook_type != "pokemon":
        logger.debug("ignoring webhook for type '%s': please only send me pokemon!", hook_type)
        return None

    try:
        hook = PokemonWebhook.model_validate(message.get("message") or {})
    except ValidationError as e:
        logger.warning("ignoring unparsable pokemon webhook: %s", e)
        return None

    if hook.pokemon_id <= 0:
        logger.warning("ignoring pokemon webhook with bad pokemon id (%r)", hook)
        return None

    try:
        spawnpoint_id = hook.spawnpoint_id_as_int()
    except ValueError as e:
        logger.warning("ignoring pokemon webhook with no or bad spawnpoint id: %s (%r)", e, hook)
        return None

    # Only encounters count
    if hook.individual_attack is None:
        return None

    return Pokemon(
        pokemon_id=hook.pokemon_id,
        form_id=hook.form or 0,
        lat=hook.latitude,
        lon=hook.longitude,
        spawnpoint_id=spawnpoint_id,
    )


def process_messages(processor_manager: NestProcessorManager, messages: list[Any]) -> int:
    """Count every usable pokemon in a webhook batch. Runs after the response is sent."""
    if processor_manager.get_processor() is None:
        logger.warning("dropping %d webhook message(s): nests are not loaded yet", len(messages))
        return 0

    started = time.monotonic()
    processed = 0
    for message in messages:
        pokemon = parse_pokemon(message)
        if pokemon is None:
            continue
        processor_manager.process_pokemon(pokemon)
        processed += 1

    logger.debug(
        "processed %d pokemon from single webhook in %0.3fms",
        processed,
        (time.monotonic() - started) * 1000,
    )
    return processed


@router.post("/webhook")
@inject
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> Response:
    """Accept a batch of scanner webhooks.

    Always answers 200 so senders never retry; bad input is only logged.
    """
    body = await request.body()
    try:
        messages = json.loads(body)
    except ValueError as e:
        logger.warning("received unprocessable webhook: %s", e)
        return Response(status_code=200)

    if not isinstance(messages, list):
        logger.warning("received unprocessable webhook: expected a list of messages")
        return Response(status_code=200)

    background_tasks.add_task(process_messages, processor_manager, messages)
    return Response(status_code=200)
