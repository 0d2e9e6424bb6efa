import random
import shutil
from pathlib import Path

import pytest

from gamelab.ai import MistralPlatform, MockPlatform, OpenAiPlatform, PlatformRegistry
from gamelab.models import ApiKey, ApiKeyShare, Game, StatusField, User
from gamelab.orchestrator import TurnOrchestrator
from gamelab.storage import Storage
from gamelab.stream import StreamRegistry

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def storage(clean_test_data) -> Storage:
    return Storage(TEST_DATA_DIR)


@pytest.fixture
def mock_platform() -> MockPlatform:
    return MockPlatform(rng=random.Random(7), delay=0)


@pytest.fixture
def platforms(mock_platform: MockPlatform) -> PlatformRegistry:
    registry = PlatformRegistry()
    registry.register(OpenAiPlatform())
    registry.register(MistralPlatform())
    registry.register(mock_platform)
    return registry


@pytest.fixture
def game(storage: Storage) -> Game:
    """A player with a personal default mock key, and a private game."""
    storage.save_user(User(id="player", name="Player"))
    storage.save_api_key(ApiKey(id="player-key", user_id="player", platform="mock", key="mock-secret"))
    storage.save_share(ApiKeyShare(
        id="player-share", api_key_id="player-key", user_id="player", is_user_default=True,
    ))
    return storage.save_game(Game(
        id="castle",
        name="Castle",
        description="Escape the castle.",
        system_message_scenario="A crumbling castle full of traps.",
        status_fields=[StatusField(name="Health", value="10"), StatusField(name="Gold", value="0")],
        created_by="player",
    ))


@pytest.fixture
def orchestrator(storage: Storage, platforms: PlatformRegistry) -> TurnOrchestrator:
    return TurnOrchestrator(storage, platforms, StreamRegistry(timeout=None))
