"""AI platform adapters and the registry that looks them up by platform id."""

from __future__ import annotations

from gamelab.ai.base import AiPlatformAdapter, ImageCallback
from gamelab.ai.mistral import MistralPlatform
from gamelab.ai.mock import MockPlatform
from gamelab.ai.openai import OpenAiPlatform
from gamelab.config import Settings
from gamelab.errors import PlatformNotFound
from gamelab.models import AiPlatform


class PlatformRegistry:
    """Map of platform id to adapter instance."""

    def __init__(self) -> None:
        self._adapters: dict[str, AiPlatformAdapter] = {}

    def register(self, adapter: AiPlatformAdapter) -> None:
        if adapter.id in self._adapters:
            raise ValueError(f"Platform '{adapter.id}' is already registered")
        self._adapters[adapter.id] = adapter

    def get(self, platform_id: str) -> AiPlatformAdapter:
        adapter = self._adapters.get(platform_id)
        if adapter is None:
            raise PlatformNotFound(f"Unknown AI platform: {platform_id!r}")
        return adapter

    def __contains__(self, platform_id: str) -> bool:
        return platform_id in self._adapters

    def ids(self) -> list[str]:
        return sorted(self._adapters)

    def infos(self) -> list[AiPlatform]:
        return [self._adapters[pid].platform_info() for pid in self.ids()]

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()


def default_registry(settings: Settings | None = None) -> PlatformRegistry:
    """Registry with every built-in platform configured from ``settings``."""
    settings = settings or Settings()
    registry = PlatformRegistry()
    registry.register(OpenAiPlatform(settings.openai_base_url, timeout=settings.http_timeout))
    registry.register(MistralPlatform(settings.mistral_base_url, timeout=settings.http_timeout))
    registry.register(MockPlatform())
    return registry


__all__ = [
    "AiPlatformAdapter",
    "ImageCallback",
    "MistralPlatform",
    "MockPlatform",
    "OpenAiPlatform",
    "PlatformRegistry",
    "default_registry",
]
