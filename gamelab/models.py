"""Core domain models.

Every component of the engine (credential resolution, provider adapters,
the turn orchestrator, storage) operates on these types. Pydantic is used for
validation and serialisation at every data boundary.

Wire-facing models serialise with camelCase aliases (``by_alias=True``) and
accept both camelCase and snake_case on input. Binary payloads (image and
audio bytes) are plain ``bytes`` in Python and base64 strings in JSON.
"""

from __future__ import annotations

import base64
import uuid
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
)
from pydantic.alias_generators import to_camel

Tier = Literal["economy", "balanced", "premium", "max"]

# Total order, lowest first
TIER_ORDER: tuple[str, ...] = ("economy", "balanced", "premium", "max")

MessageType = Literal["system", "player", "game"]


def new_id() -> str:
    return str(uuid.uuid4())


def _decode_blob(value: Any) -> Any:
    if isinstance(value, str):
        return base64.b64decode(value)
    return value


def _encode_blob(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


Blob = Annotated[
    bytes,
    BeforeValidator(_decode_blob),
    PlainSerializer(_encode_blob, return_type=str, when_used="json"),
]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Token accounting
# ---------------------------------------------------------------------------

class TokenUsage(WireModel):
    """Input/output/total token counters for one or more provider calls.

    ``add`` is associative and commutative; ``TokenUsage()`` is the identity.
    """

    model_config = ConfigDict(frozen=True)

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: TokenUsage | None) -> TokenUsage:
        if other is None:
            return self
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class AiModel(WireModel):
    """One tier of a platform, mapped to a concrete provider model string."""

    id: Tier
    name: str
    model: str
    description: str = ""
    supports_image: bool = False
    supports_audio: bool = False


class AiPlatform(WireModel):
    id: str
    name: str
    models: list[AiModel] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Sessions and messages
# ---------------------------------------------------------------------------

class StatusField(WireModel):
    name: str
    value: str = ""


class AiSession(WireModel):
    """Opaque conversation state owned by exactly one provider adapter.

    ``blob`` is only ever encoded and decoded by the adapter whose id matches
    ``platform``. ``version`` lets an adapter change its blob layout later.
    """

    platform: str
    version: int = 1
    blob: str = ""


class GameSession(WireModel):
    """One running instance of a game for one player."""

    id: str = Field(default_factory=new_id)
    game_id: str
    user_id: str
    workshop_id: str | None = None
    private_share_hash: str | None = None  # set when started through a private link

    # Payment; api_key_id is cleared when the key turns out to be broken
    api_key_id: str | None = None
    ai_platform: str = ""
    ai_model: Tier = "balanced"

    ai_session: AiSession | None = None

    # Frozen at creation time
    game_name: str = ""
    game_description: str = ""
    scenario: str = ""
    game_start: str = ""
    system_message: str = ""
    status_fields: list[StatusField] = Field(default_factory=list)
    image_style: str = ""
    language: str = "en"
    story_expansion: bool = True
    audio: bool = True

    organisation_unverified: bool = False


class GameSessionMessage(WireModel):
    """One turn: system priming, player action, or game response."""

    id: str = Field(default_factory=new_id)
    session_id: str
    seq: int = 0
    type: MessageType
    message: str = ""
    status_fields: list[StatusField] = Field(default_factory=list)
    image_prompt: str | None = None
    image: Blob | None = None
    audio: Blob | None = None

    stream: bool = False  # true while text/image/audio are still being produced
    has_image: bool = False
    has_audio: bool = False
    token_usage: TokenUsage | None = None

    # Debug transparency
    raw_response: str | None = None
    prompt_status_update: str | None = None
    prompt_response_schema: str | None = None
    prompt_expand_story: str | None = None
    prompt_image_generation: str | None = None

    def to_ai_json(self) -> str:
        """The JSON payload the provider sees for this turn."""
        status = {f.name: f.value for f in self.status_fields}
        return GameSessionMessageAi(
            type=self.type, message=self.message, status=status,
        ).model_dump_json(exclude_none=True)


class GameSessionMessageAi(BaseModel):
    """The structured turn shape exchanged with the model."""

    type: MessageType | None = None
    message: str
    status: dict[str, str] = Field(default_factory=dict)
    imagePrompt: str | None = None


class Chunk(WireModel):
    """One unit of streamed output. Each modality has its own done flag."""

    text: str = ""
    text_done: bool = False
    image_data: Blob | None = None
    image_done: bool = False
    audio_data: Blob | None = None
    audio_done: bool = False
    error: str = ""
    error_code: str = ""

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_defaults=True)


# ---------------------------------------------------------------------------
# Credential graph (read-only to the engine)
# ---------------------------------------------------------------------------

class ApiKey(WireModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    platform: str
    key: str
    name: str = ""


class ApiKeyShare(WireModel):
    """Grants use of an ApiKey to a user, workshop, institution or game."""

    id: str = Field(default_factory=new_id)
    api_key_id: str
    user_id: str | None = None
    workshop_id: str | None = None
    institution_id: str | None = None
    game_id: str | None = None
    allow_public_game_sponsoring: bool = False
    is_user_default: bool = False


class User(WireModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    language: str = "en"
    workshop_id: str | None = None
    institution_id: str | None = None
    ai_tier: Tier | None = None


class Workshop(WireModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    institution_id: str | None = None
    default_api_key_share_id: str | None = None
    ai_tier: Tier | None = None


class Institution(WireModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    free_use_api_key_share_id: str | None = None
    free_use_ai_tier: Tier | None = None


class Game(WireModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    public: bool = False
    public_sponsored_api_key_share_id: str | None = None
    private_share_hash: str | None = None
    private_sponsored_api_key_share_id: str | None = None
    system_message_scenario: str = ""
    system_message_game_start: str = ""
    image_style: str = ""
    status_fields: list[StatusField] = Field(default_factory=list)
    story_expansion: bool = True
    audio: bool = True
    language: str = "en"
    created_by: str | None = None
