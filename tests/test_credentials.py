"""Tests for credential resolution over the share graph."""

import pytest

from gamelab import catalog
from gamelab.ai import MockPlatform
from gamelab.credentials import (
    INSTITUTION,
    PRIVATE_SPONSOR,
    PUBLIC_SPONSOR,
    SYSTEM,
    USER_DEFAULT,
    WORKSHOP,
    CredentialResolver,
)
from gamelab.errors import NoApiKeyAvailable
from gamelab.models import ApiKey, ApiKeyShare, Game, Institution, User, Workshop


@pytest.fixture
def resolver(storage, platforms):
    return CredentialResolver(storage, platforms)


def add_key(storage, key_id, platform="mock", **share_fields):
    """Save an API key plus a share for it named ``share-{key_id}``."""
    storage.save_api_key(ApiKey(id=key_id, user_id="owner", platform=platform, key=f"secret-{key_id}"))
    return storage.save_share(ApiKeyShare(id=f"share-{key_id}", api_key_id=key_id, **share_fields))


@pytest.fixture
def graph(storage):
    """Every source populated, each with its own key."""
    for key_id in ("public", "private", "workshop", "institution", "user", "system"):
        add_key(storage, key_id)
    storage.save_share(ApiKeyShare(id="share-user", api_key_id="user", user_id="u1", is_user_default=True))
    storage.save_workshop(Workshop(id="w1", default_api_key_share_id="share-workshop"))
    storage.save_institution(Institution(id="i1", free_use_api_key_share_id="share-institution"))
    storage.save_user(User(id="u1", workshop_id="w1", institution_id="i1"))
    storage.save_game(Game(
        id="g1", name="G", public=True,
        public_sponsored_api_key_share_id="share-public",
        private_share_hash="secret-link",
        private_sponsored_api_key_share_id="share-private",
    ))
    storage.update_system_settings({"free_use_api_key_id": "system"})
    return storage


# ── ordering ──────────────────────────────────────────────────


def test_resolution_order_capped_at_three(graph, resolver):
    found = resolver.candidates("u1", "g1", private_share_hash="secret-link")
    assert [c.source for c in found] == [PUBLIC_SPONSOR, PRIVATE_SPONSOR, WORKSHOP]
    assert [c.api_key_id for c in found] == ["public", "private", "workshop"]


def test_private_sponsor_needs_matching_hash(graph, resolver):
    found = resolver.candidates("u1", "g1", private_share_hash="wrong")
    assert [c.source for c in found] == [PUBLIC_SPONSOR, WORKSHOP, INSTITUTION]


def test_public_sponsor_only_for_public_games(graph, resolver):
    game = graph.get_game("g1")
    graph.save_game(game.model_copy(update={"public": False}))
    found = resolver.candidates("u1", "g1")
    assert [c.source for c in found] == [WORKSHOP, INSTITUTION, USER_DEFAULT]


def test_user_default_then_system(storage, resolver):
    add_key(storage, "mine", user_id="u1", is_user_default=True)
    storage.save_api_key(ApiKey(id="free", user_id="admin", platform="mock", key="k"))
    storage.update_system_settings({"free_use_api_key_id": "free"})
    storage.save_user(User(id="u1"))
    storage.save_game(Game(id="g1", name="G"))
    found = resolver.candidates("u1", "g1")
    assert [c.source for c in found] == [USER_DEFAULT, SYSTEM]
    assert found[1].share is None


def test_system_key_serves_unknown_user(storage, resolver):
    storage.save_api_key(ApiKey(id="free", user_id="admin", platform="mock", key="k"))
    storage.update_system_settings({"free_use_api_key_id": "free"})
    resolved = resolver.resolve("anonymous", "no-such-game")
    assert resolved.source == SYSTEM


def test_resolution_is_deterministic(graph, resolver):
    first = resolver.candidates("u1", "g1", "secret-link")
    second = resolver.candidates("u1", "g1", "secret-link")
    assert first == second


# ── dedupe / skipping ─────────────────────────────────────────


def test_same_key_listed_once(storage, resolver):
    add_key(storage, "shared")
    storage.save_share(ApiKeyShare(id="share-shared-user", api_key_id="shared", user_id="u1", is_user_default=True))
    storage.save_workshop(Workshop(id="w1", default_api_key_share_id="share-shared"))
    storage.save_user(User(id="u1", workshop_id="w1"))
    storage.save_game(Game(id="g1", name="G"))
    found = resolver.candidates("u1", "g1")
    assert [(c.source, c.api_key_id) for c in found] == [(WORKSHOP, "shared")]


def test_unknown_platform_skipped(storage, resolver):
    add_key(storage, "weird", platform="deepthought")
    add_key(storage, "fallback", user_id="u1", is_user_default=True)
    storage.save_workshop(Workshop(id="w1", default_api_key_share_id="share-weird"))
    storage.save_user(User(id="u1", workshop_id="w1"))
    storage.save_game(Game(id="g1", name="G"))
    assert resolver.resolve("u1", "g1").api_key_id == "fallback"


def test_dangling_share_skipped(storage, resolver):
    storage.save_workshop(Workshop(id="w1", default_api_key_share_id="gone"))
    add_key(storage, "mine", user_id="u1", is_user_default=True)
    storage.save_user(User(id="u1", workshop_id="w1"))
    storage.save_game(Game(id="g1", name="G"))
    assert [c.source for c in resolver.candidates("u1", "g1")] == [USER_DEFAULT]


def test_no_key_raises(storage, resolver):
    storage.save_user(User(id="u1"))
    storage.save_game(Game(id="g1", name="G"))
    assert resolver.candidates("u1", "g1") == []
    with pytest.raises(NoApiKeyAvailable):
        resolver.resolve("u1", "g1")


# ── tier ──────────────────────────────────────────────────────


def test_tier_preference_order(storage, resolver):
    storage.save_workshop(Workshop(id="w1", ai_tier="premium"))
    storage.save_institution(Institution(id="i1", free_use_ai_tier="economy"))
    user = User(id="u1", workshop_id="w1", institution_id="i1", ai_tier="max")
    assert resolver.requested_tier(user) == "premium"
    assert resolver.requested_tier(user.model_copy(update={"workshop_id": None})) == "economy"
    assert resolver.requested_tier(User(id="u2", ai_tier="max")) == "max"
    assert resolver.requested_tier(None) == "balanced"
    storage.update_system_settings({"default_ai_tier": "economy"})
    assert resolver.requested_tier(None) == "economy"


def test_tier_downgraded_to_platform_offer(storage, resolver):
    add_key(storage, "oa", platform="openai", user_id="u1", is_user_default=True)
    storage.save_user(User(id="u1", ai_tier="max"))
    storage.save_game(Game(id="g1", name="G"))
    resolved = resolver.resolve("u1", "g1")
    assert (resolved.platform, resolved.tier, resolved.model) == ("openai", "premium", "gpt-5.2")


class PremiumOnlyPlatform(MockPlatform):
    platform = catalog.MOCK_PLATFORM.model_copy(update={
        "id": "premium-only",
        "models": [m for m in catalog.MOCK_PLATFORM.models if m.id in ("premium", "max")],
    })


def test_key_skipped_when_platform_has_no_cheaper_tier(storage, platforms, resolver):
    platforms.register(PremiumOnlyPlatform())
    add_key(storage, "pricey", platform="premium-only")
    add_key(storage, "cheap", user_id="u1", is_user_default=True)
    storage.save_workshop(Workshop(id="w1", default_api_key_share_id="share-pricey"))
    storage.save_user(User(id="u1", workshop_id="w1", ai_tier="economy"))
    storage.save_game(Game(id="g1", name="G"))

    found = resolver.candidates("u1", "g1")
    assert [(c.api_key_id, c.tier) for c in found] == [("cheap", "economy")]
    assert resolver.candidates("u1", "g1", tier="premium")[0].api_key_id == "pricey"


def test_explicit_tier_overrides_preferences(storage, resolver):
    add_key(storage, "ms", platform="mistral", user_id="u1", is_user_default=True)
    storage.save_user(User(id="u1", ai_tier="premium"))
    storage.save_game(Game(id="g1", name="G"))
    resolved = resolver.resolve("u1", "g1", tier="economy")
    assert resolved.model == "mistral-small-latest"


def test_system_key_uses_free_use_tier(storage, resolver):
    storage.save_api_key(ApiKey(id="free", user_id="admin", platform="openai", key="k"))
    storage.update_system_settings({"free_use_api_key_id": "free", "free_use_ai_tier": "economy"})
    storage.save_user(User(id="u1", ai_tier="premium"))
    storage.save_game(Game(id="g1", name="G"))
    resolved = resolver.resolve("u1", "g1")
    assert resolved.source == SYSTEM
    assert resolved.tier == "economy"


def test_sponsored_flag(graph, resolver):
    found = resolver.candidates("u1", "g1", "secret-link")
    assert [c.is_sponsored for c in found] == [True, True, False]
