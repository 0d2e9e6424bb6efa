"""Turn orchestrator.

Runs one game turn through its states:

    resolving credentials -> generating text -> parsing response
      -> (returned to the caller)
      -> expanding story | generating image -> generating audio -> done

The text step is synchronous: the caller gets the persisted game message (with
its id, which names the SSE stream) as soon as the structured output has been
parsed. Narration, image and audio are produced by background tasks that push
chunks into the message's stream. A failure there is reported inline on the
stream and never fails the turn.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from gamelab.ai import PlatformRegistry
from gamelab.config import Settings
from gamelab.credentials import PUBLIC_SPONSOR, CredentialResolver, ResolvedKey
from gamelab.errors import (
    ErrorCode,
    GameLabError,
    NoApiKeyAvailable,
    NotFound,
    SessionAlreadyStarted,
    TurnInProgress,
    to_engine_error,
)
from gamelab.imagecache import ImageCache
from gamelab.lang import is_valid_language
from gamelab.locks import SessionLock, SessionLocks
from gamelab.models import GameSession, GameSessionMessage, StatusField, TokenUsage
from gamelab.retry import MALFORMED_OUTPUT_RETRY, RetryPolicy
from gamelab.storage import Storage
from gamelab.stream import AUDIO, IMAGE, TEXT, Stream, StreamRegistry
from gamelab.templates import (
    IMAGE_STYLE_NO_IMAGE,
    build_image_prompt,
    build_response_schema,
    image_style_or_default,
    render_system_message,
)
from gamelab.translate import translate_game

logger = logging.getLogger(__name__)


class TurnOrchestrator:
    def __init__(
        self,
        storage: Storage,
        platforms: PlatformRegistry,
        streams: StreamRegistry,
        locks: SessionLocks | None = None,
        image_cache: ImageCache | None = None,
        settings: Settings | None = None,
        retry: RetryPolicy = MALFORMED_OUTPUT_RETRY,
    ) -> None:
        self.storage = storage
        self.platforms = platforms
        self.streams = streams
        self.locks = locks or SessionLocks()
        self.image_cache = image_cache or ImageCache()
        self.settings = settings or Settings()
        self.credentials = CredentialResolver(storage, platforms, self.settings)
        self.retry = retry
        self._tasks: set[asyncio.Task] = set()
        self._turns: dict[str, asyncio.Task] = {}  # message id -> background task

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        game_id: str,
        private_share_hash: str | None = None,
        language: str | None = None,
    ) -> GameSession:
        """Resolve the paying key, freeze the game's texts and persist a session.

        No turn is run; the client submits ``intro`` next.
        """
        game = self.storage.get_game(game_id)
        if game is None:
            raise NotFound(f"Game {game_id} not found")
        user = self.storage.get_user(user_id)

        key = self.credentials.resolve(user_id, game_id, private_share_hash)

        lang = language or (user.language if user else game.language)
        if not is_valid_language(lang):
            logger.warning("unsupported language %r, using %s", lang, game.language)
            lang = game.language

        if lang != game.language:
            adapter = self.platforms.get(key.platform)
            try:
                game, _, usage = await translate_game(adapter, key.api_key.key, game, lang)
                logger.debug("game %s translated to %s (%s)", game_id, lang, usage)
            except GameLabError as e:
                logger.warning("game %s: translation to %s failed, using original: %s", game_id, lang, e)

        session = GameSession(
            game_id=game.id,
            user_id=user_id,
            workshop_id=user.workshop_id if user else None,
            private_share_hash=private_share_hash,
            api_key_id=key.api_key_id,
            ai_platform=key.platform,
            ai_model=key.tier,
            game_name=game.name,
            game_description=game.description,
            scenario=game.system_message_scenario,
            game_start=game.system_message_game_start,
            system_message=render_system_message(
                game.system_message_scenario, game.status_fields, lang, game.system_message_game_start,
            ),
            status_fields=game.status_fields,
            image_style=game.image_style,
            language=lang,
            story_expansion=game.story_expansion,
            audio=game.audio,
        )
        self.storage.create_session(session)
        logger.info("session %s created for game %s on %s/%s (%s)",
                    session.id, game_id, key.platform, key.tier, key.source)
        return session

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def do_session_action(self, session_id: str, action: GameSessionMessage) -> GameSessionMessage:
        """Run the text step of a turn and hand the rest to background tasks.

        Raises TurnInProgress while another turn of the session is in flight.
        """
        lock = self.locks.try_acquire(session_id)
        if lock is None:
            raise TurnInProgress(f"A turn is already in progress for session {session_id}")
        try:
            return await self._start_turn(session_id, action, lock)
        except BaseException:
            lock.release()
            raise

    def _candidates(self, session: GameSession) -> list[ResolvedKey]:
        found = self.credentials.candidates(
            session.user_id, session.game_id, session.private_share_hash, session.ai_model,
        )
        for i, key in enumerate(found):
            if key.api_key_id == session.api_key_id:
                found.insert(0, found.pop(i))
                break
        if not found:
            raise NoApiKeyAvailable(
                "No API key available. Please configure an API key in your settings."
            )
        return found

    def _prior_status(self, session: GameSession) -> list[StatusField]:
        for message in reversed(self.storage.get_messages(session.id)):
            if message.type == "game" and message.status_fields:
                return message.status_fields
        return session.status_fields

    async def _start_turn(
        self, session_id: str, action: GameSessionMessage, lock: SessionLock
    ) -> GameSessionMessage:
        session = self.storage.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")

        if action.type == "system":
            if session.ai_session is not None or self.storage.get_messages(session_id):
                raise SessionAlreadyStarted(f"Session {session_id} has already started")
            action = action.model_copy(update={
                "session_id": session_id,
                "message": session.system_message,
                "status_fields": session.status_fields,
            })
        else:
            action = action.model_copy(update={
                "session_id": session_id,
                "status_fields": self._prior_status(session),
            })

        candidates = self._candidates(session)

        # System priming lives on the session, not in the message log.
        stored_action = None
        if action.type != "system":
            stored_action = self.storage.append_message(session_id, action)
        response = self.storage.append_message(session_id, GameSessionMessage(
            session_id=session_id, type="game", stream=True, status_fields=action.status_fields,
        ))
        stream = self.streams.register(response.id)
        schema = build_response_schema(session.status_fields)

        try:
            key, usage = await self._execute_with_fallback(session, candidates, action, response, schema)
        except GameLabError as err:
            logger.warning("session %s: text step failed (%s): %s", session_id, err.code.value, err)
            stream.send_error(err.code.value, str(err), text_done=True, image_done=True, audio_done=True)
            self.streams.remove(response.id)
            self.storage.delete_message(session_id, response.id)
            if stored_action is not None:
                self.storage.delete_message(session_id, stored_action.id)
            raise

        adapter = self.platforms.get(key.platform)
        model = adapter.resolve_model_info(session.ai_model)
        response.token_usage = usage
        # an image task from the previous turn may have set this meanwhile
        stored = self.storage.get_session(session_id)
        if stored is not None:
            session.organisation_unverified = stored.organisation_unverified
        response.has_image = bool(
            model and model.supports_image
            and response.image_prompt
            and session.image_style != IMAGE_STYLE_NO_IMAGE
            and not session.organisation_unverified
        )
        response.has_audio = bool(model and model.supports_audio and session.audio)
        if response.has_image:
            response.prompt_image_generation = build_image_prompt(
                session.game_description, session.scenario, response.message,
                response.image_prompt or "", image_style_or_default(session.image_style),
            )

        self.storage.update_session_turn(session)
        self.storage.update_message(response)
        logger.debug("session %s: message %s (seq %d) ready, image=%s audio=%s",
                     session_id, response.id, response.seq, response.has_image, response.has_audio)

        self._spawn(self._complete_turn(session, key, response, stream, lock), response.id)
        return response.model_copy()

    async def _execute_with_fallback(
        self,
        session: GameSession,
        candidates: list[ResolvedKey],
        action: GameSessionMessage,
        response: GameSessionMessage,
        schema: dict[str, Any],
    ) -> tuple[ResolvedKey, TokenUsage]:
        for i, key in enumerate(candidates):
            adapter = self.platforms.get(key.platform)
            if session.ai_platform and session.ai_platform != key.platform:
                logger.info("session %s: switching platform %s -> %s, conversation restarts",
                            session.id, session.ai_platform, key.platform)
            session.api_key_id = key.api_key_id
            session.ai_platform = key.platform
            session.ai_model = key.tier

            async def call(adapter=adapter, key=key) -> TokenUsage:
                return await adapter.execute_action(session, key.api_key.key, action, response, schema)

            try:
                usage = await self.retry.run(call, label=f"session {session.id} text step")
                return key, usage
            except Exception as e:
                err = to_engine_error(e)
                self._handle_key_error(session, key, err)
                if err.code.is_key_related() and i + 1 < len(candidates):
                    logger.info("session %s: key %s failed (%s), trying next key",
                                session.id, key.api_key_id, err.code.value)
                    continue
                if err is e:
                    raise
                raise err from e
        raise NoApiKeyAvailable("No API key available. Please configure an API key in your settings.")

    def _handle_key_error(self, session: GameSession, key: ResolvedKey, err: GameLabError) -> None:
        if not err.code.is_key_related():
            return
        if session.api_key_id == key.api_key_id:
            session.api_key_id = None
        self.storage.clear_session_api_key(session.id)
        if key.source == PUBLIC_SPONSOR and key.share is not None:
            if self.storage.clear_game_public_sponsorship(session.game_id, key.share.id):
                logger.info("game %s: removed failing public sponsorship %s (%s)",
                            session.game_id, key.share.id, err.code.value)

    # ------------------------------------------------------------------
    # Background phases
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], message_id: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        self._turns[message_id] = task
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        for message_id, running in list(self._turns.items()):
            if running is task:
                del self._turns[message_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("background turn task failed", exc_info=task.exception())

    async def _complete_turn(
        self,
        session: GameSession,
        key: ResolvedKey,
        response: GameSessionMessage,
        stream: Stream,
        lock: SessionLock,
    ) -> None:
        try:
            jobs = [self._narrate(session, key, response, stream, lock)]
            if response.has_image:
                jobs.append(self._generate_image(session, key, response, stream))
            else:
                stream.send_image(None, done=True)
            await asyncio.gather(*jobs)
        except asyncio.CancelledError:
            logger.info("session %s: turn %d cancelled, committed state kept", session.id, response.seq)
            raise
        finally:
            lock.release()
            stream.close()
            response.stream = False
            self.storage.update_message(response)
        logger.debug("session %s: turn %d complete", session.id, response.seq)

    async def _narrate(
        self,
        session: GameSession,
        key: ResolvedKey,
        response: GameSessionMessage,
        stream: Stream,
        lock: SessionLock,
    ) -> None:
        """Story expansion, then audio. Releases the turn lock once state is persisted."""
        adapter = self.platforms.get(key.platform)
        text_ok = True
        try:
            try:
                if session.story_expansion:
                    usage = await adapter.expand_story(session, key.api_key.key, response, stream)
                    response.token_usage = (response.token_usage or TokenUsage()).add(usage)
                else:
                    stream.send_text(response.message, done=True)
            except Exception as e:
                text_ok = False
                err = to_engine_error(e)
                logger.warning("session %s: story expansion failed (%s): %s", session.id, err.code.value, err)
                stream.send_error(err.code.value, str(err), text_done=True)
                self._handle_key_error(session, key, err)
            self.storage.update_session_ai_state(session.id, session.ai_session)
            self.storage.update_message(response)
        finally:
            lock.release()

        if not stream.is_done(TEXT):
            stream.send_text("", done=True)
        if text_ok and response.has_audio:
            await self._generate_audio(session, key, response, stream)
        if not stream.is_done(AUDIO):
            stream.send_audio(None, done=True)

    async def _generate_audio(
        self, session: GameSession, key: ResolvedKey, response: GameSessionMessage, stream: Stream
    ) -> None:
        adapter = self.platforms.get(key.platform)
        try:
            audio = await adapter.generate_audio(session, key.api_key.key, response.message, stream)
        except Exception as e:
            err = to_engine_error(e)
            logger.warning("session %s: audio failed (%s): %s", session.id, err.code.value, err)
            stream.send_error(err.code.value, str(err), audio_done=True)
            self._handle_key_error(session, key, err)
            return
        if audio is None:
            logger.debug("session %s: %s has no audio", session.id, key.platform)
            return
        response.audio = audio
        self.storage.update_message_audio(session.id, response.id, audio)

    async def _generate_image(
        self, session: GameSession, key: ResolvedKey, response: GameSessionMessage, stream: Stream
    ) -> None:
        adapter = self.platforms.get(key.platform)
        session_id = session.id

        def save(message_id: str, image: bytes) -> None:
            self.storage.update_message_image(session_id, message_id, image)

        def on_image(image: bytes, complete: bool) -> None:
            self.image_cache.update(response.id, image, complete)

        self.image_cache.create(response.id, save)
        prompt = response.prompt_image_generation or ""
        try:
            await adapter.generate_image(session, key.api_key.key, response, prompt, stream, on_image)
        except Exception as e:
            err = to_engine_error(e)
            logger.warning("session %s: image generation failed (%s): %s", session_id, err.code.value, err)
            self.image_cache.set_error(response.id, err.code.value, str(err))
            if err.code is ErrorCode.ORG_VERIFICATION_REQUIRED:
                session.organisation_unverified = True
                self.storage.set_organisation_unverified(session_id)
                logger.info("session %s: images disabled until the organisation is verified", session_id)
            self._handle_key_error(session, key, err)
            stream.send_error(err.code.value, str(err), image_done=True)
        finally:
            if not stream.is_done(IMAGE):
                stream.send_image(None, done=True)

    # ------------------------------------------------------------------
    # Image retry
    # ------------------------------------------------------------------

    async def retry_image_generation(self, session_id: str, message_id: str) -> GameSessionMessage:
        """Regenerate a missing image. Returns the message; skips when nothing to do."""
        session = self.storage.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        message = self.storage.get_message(session_id, message_id)
        if message is None:
            raise NotFound(f"Message {message_id} not found")

        status = self.image_cache.status(message_id)
        if (message.image
                or not message.image_prompt
                or session.image_style == IMAGE_STYLE_NO_IMAGE
                or session.organisation_unverified
                or (status.exists and not status.has_error)):
            logger.debug("session %s: image retry for %s skipped", session_id, message_id)
            return message

        key = self._candidates(session)[0]
        message.has_image = True
        message.stream = True
        if not message.prompt_image_generation:
            message.prompt_image_generation = build_image_prompt(
                session.game_description, session.scenario, message.message,
                message.image_prompt, image_style_or_default(session.image_style),
            )
        self.storage.update_message(message)

        stream = self.streams.register(message_id)
        stream.send_text("", done=True)
        stream.send_audio(None, done=True)
        self._spawn(self._retry_image(session, key, message, stream), message_id)
        return message.model_copy()

    async def _retry_image(
        self, session: GameSession, key: ResolvedKey, message: GameSessionMessage, stream: Stream
    ) -> None:
        try:
            await self._generate_image(session, key, message, stream)
        finally:
            stream.close()
            message.stream = False
            self.storage.update_message(message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel_turn(self, message_id: str) -> bool:
        """Cancel the background work producing message_id, if any is still running."""
        task = self._turns.get(message_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def join(self) -> None:
        """Wait for every background task that is currently running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel background work. Committed state is kept as is."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self._turns.clear()
