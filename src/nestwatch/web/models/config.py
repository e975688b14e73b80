"""Config API contract models."""

from typing import Any

from pydantic import BaseModel


class ConfigSection(BaseModel):
    processor: dict[str, Any]


class ConfigResponse(BaseModel):
    config: ConfigSection
    version: str


class MessageResponse(BaseModel):
    message: str
