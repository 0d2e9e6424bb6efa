"""Pydantic request models for API endpoints."""

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionBody(CamelBody):
    private_share_hash: str | None = None
    language: str | None = None


class SessionActionBody(CamelBody):
    action: Literal["intro", "player-action"]
    chapter_id: int = 0
    message: str | None = None
