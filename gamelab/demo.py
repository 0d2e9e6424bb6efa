"""Create demo data for development/testing: one user with a mock key and one game."""

from gamelab import catalog
from gamelab.models import ApiKey, ApiKeyShare, Game, StatusField, User
from gamelab.storage import Storage

DEMO_USER_ID = "demo-user"

DEMO_GAME = Game(
    id="dragons-hollow",
    name="Dragon's Hollow",
    description="Deep in the mountain pass lies a village terrorized by a young dragon. "
    "The townsfolk need a hero, but things are not as simple as they seem.",
    public=True,
    system_message_scenario="A low-fantasy mountain village. No magic items for sale, "
    "coins are scarce and the dragon is smarter than it looks.",
    system_message_game_start="The player arrives at the edge of Dragon's Hollow at dusk. "
    "Half the village lies in charred ruins.",
    status_fields=[
        StatusField(name="Health", value="100/100"),
        StatusField(name="Gold", value="3"),
        StatusField(name="Reputation", value="Stranger"),
    ],
    created_by=DEMO_USER_ID,
)


def create_demo_data(storage: Storage) -> Game:
    """Write the demo user, their default mock key and the demo game. Idempotent."""
    storage.save_user(User(id=DEMO_USER_ID, name="Demo Player", ai_tier="balanced"))
    key = storage.save_api_key(ApiKey(
        id="demo-mock-key", user_id=DEMO_USER_ID, platform=catalog.MOCK, key="mock", name="Mock",
    ))
    storage.save_share(ApiKeyShare(
        id="demo-mock-share", api_key_id=key.id, user_id=DEMO_USER_ID, is_user_default=True,
    ))
    return storage.save_game(DEMO_GAME)
