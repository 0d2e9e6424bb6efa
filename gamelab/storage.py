"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM; reads and writes go through plain helper
methods that load and dump JSON. Single-file writes are the only atomicity.

Directory layout:

    {base}/
      config.json             ← stored system settings
      users.json              ← list of User
      workshops.json          ← list of Workshop
      institutions.json       ← list of Institution
      games.json              ← list of Game
      api_keys.json           ← list of ApiKey
      api_key_shares.json     ← list of ApiKeyShare
      sessions/
        {id}.json             ← GameSession
        {id}/
          messages.json       ← GameSessionMessage list, ordered by seq
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

from gamelab.models import (
    AiSession,
    ApiKey,
    ApiKeyShare,
    Game,
    GameSession,
    GameSessionMessage,
    Institution,
    User,
    Workshop,
)

M = TypeVar("M", bound=BaseModel)

_SYSTEM_SETTINGS_DEFAULTS: dict[str, Any] = {
    "default_ai_tier": None,
    "free_use_api_key_id": None,
    "free_use_ai_tier": None,
}


class SessionStore(Protocol):
    """What the orchestrator needs from persistence."""

    def get_session(self, session_id: str) -> GameSession | None: ...

    def update_session(self, session: GameSession) -> None: ...

    def update_session_ai_state(self, session_id: str, ai_session: AiSession | None) -> None: ...

    def update_session_turn(self, session: GameSession) -> GameSession: ...

    def append_message(self, session_id: str, message: GameSessionMessage) -> GameSessionMessage: ...

    def update_message(self, message: GameSessionMessage) -> None: ...

    def delete_message(self, session_id: str, message_id: str) -> bool: ...

    def get_messages(self, session_id: str) -> list[GameSessionMessage]: ...


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)
        self._sessions_root = base_path / "sessions"
        self._sessions_root.mkdir(exist_ok=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def base_path(self) -> Path:
        return self._base

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _load_list(self, name: str, model: type[M]) -> list[M]:
        path = self._base / name
        if not path.exists():
            return []
        return [model.model_validate(item) for item in self._read_json(path)]

    def _save_list(self, name: str, items: list[BaseModel]) -> None:
        self._write_json(self._base / name, [i.model_dump(mode="json") for i in items])

    def _upsert(self, name: str, model: type[M], item: M) -> M:
        """Upsert by id."""
        items = self._load_list(name, model)
        for i, existing in enumerate(items):
            if existing.id == item.id:
                items[i] = item
                break
        else:
            items.append(item)
        self._save_list(name, items)
        return item

    def _find(self, name: str, model: type[M], item_id: str | None) -> M | None:
        if item_id is None:
            return None
        for item in self._load_list(name, model):
            if item.id == item_id:
                return item
        return None

    # ------------------------------------------------------------------
    # System settings
    # ------------------------------------------------------------------

    def get_system_settings(self) -> dict[str, Any]:
        """Stored settings merged over defaults."""
        settings = dict(_SYSTEM_SETTINGS_DEFAULTS)
        path = self._base / "config.json"
        if path.is_file():
            stored = self._read_json(path)
            settings.update({k: v for k, v in stored.items() if k in settings})
        return settings

    def update_system_settings(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Merge known fields into the stored settings. Returns the full settings."""
        settings = self.get_system_settings()
        settings.update({k: v for k, v in fields.items() if k in settings})
        self._write_json(self._base / "config.json", settings)
        return settings

    # ------------------------------------------------------------------
    # Credential graph (read by the resolver, written by fixtures/admin tools)
    # ------------------------------------------------------------------

    def save_user(self, user: User) -> User:
        return self._upsert("users.json", User, user)

    def get_user(self, user_id: str) -> User | None:
        return self._find("users.json", User, user_id)

    def save_workshop(self, workshop: Workshop) -> Workshop:
        return self._upsert("workshops.json", Workshop, workshop)

    def get_workshop(self, workshop_id: str | None) -> Workshop | None:
        return self._find("workshops.json", Workshop, workshop_id)

    def save_institution(self, institution: Institution) -> Institution:
        return self._upsert("institutions.json", Institution, institution)

    def get_institution(self, institution_id: str | None) -> Institution | None:
        return self._find("institutions.json", Institution, institution_id)

    def save_game(self, game: Game) -> Game:
        return self._upsert("games.json", Game, game)

    def get_game(self, game_id: str) -> Game | None:
        return self._find("games.json", Game, game_id)

    def save_api_key(self, api_key: ApiKey) -> ApiKey:
        return self._upsert("api_keys.json", ApiKey, api_key)

    def get_api_key(self, api_key_id: str | None) -> ApiKey | None:
        return self._find("api_keys.json", ApiKey, api_key_id)

    def save_share(self, share: ApiKeyShare) -> ApiKeyShare:
        return self._upsert("api_key_shares.json", ApiKeyShare, share)

    def get_share(self, share_id: str | None) -> ApiKeyShare | None:
        return self._find("api_key_shares.json", ApiKeyShare, share_id)

    def get_user_default_share(self, user_id: str) -> ApiKeyShare | None:
        """The user's own share flagged as default; first one wins."""
        for share in self._load_list("api_key_shares.json", ApiKeyShare):
            if share.user_id == user_id and share.is_user_default:
                return share
        return None

    def clear_game_public_sponsorship(self, game_id: str, share_id: str) -> bool:
        game = self.get_game(game_id)
        if game is None or game.public_sponsored_api_key_share_id != share_id:
            return False
        game.public_sponsored_api_key_share_id = None
        self.save_game(game)
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _session_file(self, session_id: str) -> Path:
        return self._sessions_root / f"{session_id}.json"

    def _session_dir(self, session_id: str) -> Path:
        return self._sessions_root / session_id

    def create_session(self, session: GameSession) -> GameSession:
        self._session_file(session.id).write_text(session.model_dump_json(indent=2))
        self._session_dir(session.id).mkdir(exist_ok=True)
        return session

    def get_session(self, session_id: str) -> GameSession | None:
        path = self._session_file(session_id)
        if not path.exists():
            return None
        return GameSession.model_validate_json(path.read_text())

    def update_session(self, session: GameSession) -> None:
        if not self._session_file(session.id).exists():
            raise KeyError(f"Session {session.id} not found")
        self._session_file(session.id).write_text(session.model_dump_json(indent=2))

    def _patch_session(self, session_id: str, **fields: Any) -> GameSession:
        session = self.get_session(session_id)
        if session is None:
            raise KeyError(f"Session {session_id} not found")
        updated = session.model_copy(update=fields)
        self.update_session(updated)
        return updated

    def update_session_ai_state(self, session_id: str, ai_session: AiSession | None) -> None:
        self._patch_session(session_id, ai_session=ai_session)

    def update_session_turn(self, session: GameSession) -> GameSession:
        """Persist the fields a text step owns; flags set by background work stay."""
        return self._patch_session(
            session.id,
            api_key_id=session.api_key_id,
            ai_platform=session.ai_platform,
            ai_model=session.ai_model,
            ai_session=session.ai_session,
        )

    def set_organisation_unverified(self, session_id: str, value: bool = True) -> None:
        self._patch_session(session_id, organisation_unverified=value)

    def clear_session_api_key(self, session_id: str) -> None:
        self._patch_session(session_id, api_key_id=None)

    def delete_session(self, session_id: str) -> bool:
        path = self._session_file(session_id)
        if not path.exists():
            return False
        path.unlink()
        shutil.rmtree(self._session_dir(session_id), ignore_errors=True)
        return True

    def list_sessions(self, game_id: str | None = None, user_id: str | None = None) -> list[GameSession]:
        sessions = [
            GameSession.model_validate_json(p.read_text())
            for p in sorted(self._sessions_root.glob("*.json"))
        ]
        return [
            s for s in sessions
            if (game_id is None or s.game_id == game_id)
            and (user_id is None or s.user_id == user_id)
        ]

    # ------------------------------------------------------------------
    # Messages (append-only apart from late image/audio and tail deletes)
    # ------------------------------------------------------------------

    def _messages_file(self, session_id: str) -> Path:
        return self._session_dir(session_id) / "messages.json"

    def get_messages(self, session_id: str) -> list[GameSessionMessage]:
        path = self._messages_file(session_id)
        if not path.exists():
            return []
        return [GameSessionMessage.model_validate(m) for m in self._read_json(path)]

    def _save_messages(self, session_id: str, messages: list[GameSessionMessage]) -> None:
        self._session_dir(session_id).mkdir(exist_ok=True)
        self._write_json(
            self._messages_file(session_id),
            [m.model_dump(mode="json") for m in messages],
        )

    def get_message(self, session_id: str, message_id: str) -> GameSessionMessage | None:
        for m in self.get_messages(session_id):
            if m.id == message_id:
                return m
        return None

    def get_latest_message(self, session_id: str) -> GameSessionMessage | None:
        messages = self.get_messages(session_id)
        return messages[-1] if messages else None

    def append_message(self, session_id: str, message: GameSessionMessage) -> GameSessionMessage:
        """Persist ``message`` with the next sequence number and return it."""
        messages = self.get_messages(session_id)
        seq = messages[-1].seq + 1 if messages else 1
        stored = message.model_copy(update={"session_id": session_id, "seq": seq})
        messages.append(stored)
        self._save_messages(session_id, messages)
        return stored

    def update_message(self, message: GameSessionMessage) -> None:
        messages = self.get_messages(message.session_id)
        for i, m in enumerate(messages):
            if m.id == message.id:
                messages[i] = message.model_copy(update={"seq": m.seq})
                break
        else:
            raise KeyError(f"Message {message.id} not found")
        self._save_messages(message.session_id, messages)

    def update_message_image(self, session_id: str, message_id: str, image: bytes) -> None:
        self._patch_message(session_id, message_id, image=image)

    def update_message_audio(self, session_id: str, message_id: str, audio: bytes) -> None:
        self._patch_message(session_id, message_id, audio=audio)

    def _patch_message(self, session_id: str, message_id: str, **fields: Any) -> None:
        messages = self.get_messages(session_id)
        for i, m in enumerate(messages):
            if m.id == message_id:
                messages[i] = m.model_copy(update=fields)
                self._save_messages(session_id, messages)
                return
        raise KeyError(f"Message {message_id} not found")

    def delete_message(self, session_id: str, message_id: str) -> bool:
        messages = self.get_messages(session_id)
        kept = [m for m in messages if m.id != message_id]
        if len(kept) == len(messages):
            return False
        self._save_messages(session_id, kept)
        return True
