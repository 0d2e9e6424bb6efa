"""Static catalog of AI platforms and their quality tiers.

Tiers are generic (economy < balanced < premium < max) so that sessions,
workshops and institutions can pick a quality level without knowing any one
provider's model naming.
"""

from __future__ import annotations

from collections.abc import Sequence

from gamelab.models import TIER_ORDER, AiModel, AiPlatform

OPENAI = "openai"
MISTRAL = "mistral"
MOCK = "mock"

OPENAI_PLATFORM = AiPlatform(
    id=OPENAI,
    name="OpenAI",
    models=[
        AiModel(id="premium", name="Premium", model="gpt-5.2",
                description="Best narration quality, slowest and most expensive",
                supports_image=True, supports_audio=True),
        AiModel(id="balanced", name="Balanced", model="gpt-5.1",
                description="Good quality at moderate cost",
                supports_image=True, supports_audio=True),
        AiModel(id="economy", name="Economy", model="gpt-5-mini",
                description="Fast and cheap",
                supports_image=True, supports_audio=False),
    ],
)

MISTRAL_PLATFORM = AiPlatform(
    id=MISTRAL,
    name="Mistral",
    models=[
        AiModel(id="premium", name="Premium", model="mistral-large-latest",
                description="Mistral's flagship model",
                supports_image=True),
        AiModel(id="balanced", name="Balanced", model="mistral-medium-latest",
                description="Good quality at moderate cost",
                supports_image=True),
        AiModel(id="economy", name="Economy", model="mistral-small-latest",
                description="Fast and cheap"),
    ],
)

MOCK_PLATFORM = AiPlatform(
    id=MOCK,
    name="Mock",
    models=[
        AiModel(id=tier, name=tier.capitalize(), model="mock-v1",
                description="Offline mock for development and tests",
                supports_image=True, supports_audio=True)
        for tier in reversed(TIER_ORDER)
    ],
)


def tier_rank(tier: str) -> int:
    """Position of ``tier`` in the total order. Raises ValueError if unknown."""
    try:
        return TIER_ORDER.index(tier)
    except ValueError:
        raise ValueError(f"Unknown AI tier {tier!r}") from None


def resolve_model_info(models: Sequence[AiModel], tier: str) -> AiModel | None:
    """Pick the model for ``tier``, downgrading but never upgrading.

    Exact match first, otherwise the highest tier strictly below the request.
    Returns None when every available tier is above the request.
    """
    wanted = tier_rank(tier)
    best: AiModel | None = None
    for model in models:
        rank = tier_rank(model.id)
        if rank == wanted:
            return model
        if rank < wanted and (best is None or rank > tier_rank(best.id)):
            best = model
    return best
