"""Credential resolver.

Walks the share graph (game sponsors, workshop, institution, user default,
system free-use key) to decide which API key pays for a session and which
platform and tier it runs on. Resolution is read-only and deterministic for
an unchanged graph.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass

from gamelab.ai import PlatformRegistry
from gamelab.config import Settings
from gamelab.errors import NoApiKeyAvailable, PlatformNotFound
from gamelab.models import ApiKey, ApiKeyShare, Game, Tier, User
from gamelab.storage import Storage

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 3

# Sources, in resolution order
PUBLIC_SPONSOR = "public_sponsor"
PRIVATE_SPONSOR = "private_sponsor"
WORKSHOP = "workshop"
INSTITUTION = "institution_free_use"
USER_DEFAULT = "user_default"
SYSTEM = "system_free_use"


@dataclass(frozen=True)
class ResolvedKey:
    """One usable key with the platform and tier it resolves to."""

    share: ApiKeyShare | None  # None for the system free-use key, which has no share
    api_key: ApiKey
    platform: str
    tier: Tier
    model: str
    source: str

    @property
    def api_key_id(self) -> str:
        return self.api_key.id

    @property
    def is_sponsored(self) -> bool:
        return self.source in (PUBLIC_SPONSOR, PRIVATE_SPONSOR)


class CredentialResolver:
    def __init__(self, storage: Storage, platforms: PlatformRegistry, settings: Settings | None = None) -> None:
        self._storage = storage
        self._platforms = platforms
        self._settings = settings or Settings()

    # ------------------------------------------------------------------
    # Tier
    # ------------------------------------------------------------------

    def requested_tier(self, user: User | None) -> Tier:
        """Workshop tier, then institution free-use tier, then user tier, then server default."""
        if user is not None:
            workshop = self._storage.get_workshop(user.workshop_id)
            if workshop is not None and workshop.ai_tier:
                return workshop.ai_tier
            institution = self._storage.get_institution(user.institution_id)
            if institution is not None and institution.free_use_ai_tier:
                return institution.free_use_ai_tier
            if user.ai_tier:
                return user.ai_tier
        stored = self._storage.get_system_settings().get("default_ai_tier")
        return stored or self._settings.default_ai_tier

    # ------------------------------------------------------------------
    # Share graph walk
    # ------------------------------------------------------------------

    def _share_with_key(self, share_id: str | None) -> tuple[ApiKeyShare, ApiKey] | None:
        share = self._storage.get_share(share_id)
        if share is None:
            if share_id is not None:
                logger.warning("API key share %s not accessible", share_id)
            return None
        api_key = self._storage.get_api_key(share.api_key_id)
        if api_key is None:
            logger.warning("API key %s of share %s not found", share.api_key_id, share.id)
            return None
        return share, api_key

    def _walk(
        self, user: User | None, game: Game | None, private_share_hash: str | None
    ) -> Iterator[tuple[str, ApiKeyShare | None, ApiKey]]:
        if game is not None and game.public and game.public_sponsored_api_key_share_id:
            found = self._share_with_key(game.public_sponsored_api_key_share_id)
            if found:
                yield PUBLIC_SPONSOR, *found

        if (game is not None and private_share_hash
                and game.private_share_hash == private_share_hash
                and game.private_sponsored_api_key_share_id):
            found = self._share_with_key(game.private_sponsored_api_key_share_id)
            if found:
                yield PRIVATE_SPONSOR, *found

        if user is not None:
            workshop = self._storage.get_workshop(user.workshop_id)
            if workshop is not None and workshop.default_api_key_share_id:
                found = self._share_with_key(workshop.default_api_key_share_id)
                if found:
                    yield WORKSHOP, *found

            institution = self._storage.get_institution(user.institution_id)
            if institution is not None and institution.free_use_api_key_share_id:
                found = self._share_with_key(institution.free_use_api_key_share_id)
                if found:
                    yield INSTITUTION, *found

            default = self._storage.get_user_default_share(user.id)
            if default is not None:
                found = self._share_with_key(default.id)
                if found:
                    yield USER_DEFAULT, *found

        system_key_id = self._storage.get_system_settings().get("free_use_api_key_id")
        if system_key_id:
            api_key = self._storage.get_api_key(system_key_id)
            if api_key is None:
                logger.warning("system free-use API key %s not found", system_key_id)
            else:
                yield SYSTEM, None, api_key

    def _resolve_model(self, platform_id: str, tier: Tier) -> tuple[Tier, str] | None:
        try:
            adapter = self._platforms.get(platform_id)
        except PlatformNotFound:
            logger.warning("skipping API key for unsupported platform %s", platform_id)
            return None
        info = adapter.resolve_model_info(tier)
        if info is None:
            logger.warning("skipping API key: %s has no model at or below tier %s", platform_id, tier)
            return None
        return info.id, info.model

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def candidates(
        self,
        user_id: str,
        game_id: str,
        private_share_hash: str | None = None,
        tier: Tier | None = None,
    ) -> list[ResolvedKey]:
        """Usable keys in resolution order, unique by API key, at most three."""
        user = self._storage.get_user(user_id)
        game = self._storage.get_game(game_id)
        wanted = tier or self.requested_tier(user)

        result: list[ResolvedKey] = []
        seen: set[str] = set()
        for source, share, api_key in self._walk(user, game, private_share_hash):
            if api_key.id in seen:
                continue
            source_tier = wanted
            if source == SYSTEM and tier is None:
                source_tier = self._storage.get_system_settings().get("free_use_ai_tier") or wanted
            resolved = self._resolve_model(api_key.platform, source_tier)
            if resolved is None:
                continue
            seen.add(api_key.id)
            resolved_tier, model = resolved
            if resolved_tier != source_tier:
                logger.debug("tier %s not on %s, using %s", source_tier, api_key.platform, resolved_tier)
            result.append(ResolvedKey(
                share=share, api_key=api_key, platform=api_key.platform,
                tier=resolved_tier, model=model, source=source,
            ))
            if len(result) >= MAX_CANDIDATES:
                break
        return result

    def resolve(
        self,
        user_id: str,
        game_id: str,
        private_share_hash: str | None = None,
        tier: Tier | None = None,
    ) -> ResolvedKey:
        """First usable key. Raises NoApiKeyAvailable."""
        found = self.candidates(user_id, game_id, private_share_hash, tier)
        if not found:
            logger.debug("no API key available for user %s, game %s", user_id, game_id)
            raise NoApiKeyAvailable(
                "No API key available. Please configure an API key in your settings."
            )
        logger.debug("resolved %s key %s on %s/%s", found[0].source, found[0].api_key_id,
                     found[0].platform, found[0].tier)
        return found[0]
