"""
RelayHub: the live fan-out core behind the WebSocket transport.

Owns the session registry, the transcription bridge, the fan-out translator
and the synthesis queues, and turns client events into calls on them.
The hub never touches sockets directly: it only needs connections exposing
``id``, ``emit(event, data)`` and ``send_audio(data)``.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fanout_translator import FanoutTranslator
from providers import ProviderError, clean_text_for_tts
from session_registry import AdminSession, SessionRegistry
from synthesis_queue import GLOBAL_KEY, SynthesisQueueEntry, SynthesisQueueManager
from transcription_bridge import TranscriptionBridge

logger = logging.getLogger(__name__)


def _field(data: Any, name: str, index: int = 0, aliases=()) -> Any:
    """Read one argument from an event payload.

    Payloads may be an object, a positional list or a bare value (for the
    first argument).
    """
    if isinstance(data, dict):
        for key in (name,) + tuple(aliases):
            if data.get(key) not in (None, ""):
                return data[key]
        return None
    if isinstance(data, (list, tuple)):
        return data[index] if len(data) > index else None
    if index == 0:
        return data
    return None


class RelayHub:
    """Routes transport events to the relay components."""

    def __init__(
        self,
        recognizer,
        translator,
        synthesizer,
        queue_mode: str = "listener",
        default_voice: Optional[str] = None,
        default_listener_language: str = "en-US",
        default_admin_language: str = "en-US",
        ordered_delivery: bool = True,
        surface_interim: bool = False,
    ):
        self.queue_mode = queue_mode
        self.default_voice = default_voice
        self.default_listener_language = default_listener_language
        self.default_admin_language = default_admin_language
        self.surface_interim = surface_interim

        self.registry = SessionRegistry(
            on_admin_released=self._on_admin_released,
            on_listener_released=self._on_listener_released,
        )
        self.bridge = TranscriptionBridge(
            recognizer,
            on_transcript=self._on_transcript,
            on_error=self._on_recognition_error,
        )
        self.fanout = FanoutTranslator(self.registry, translator, ordered_delivery=ordered_delivery)
        self.synthesis = SynthesisQueueManager(
            synthesizer,
            deliver=self._deliver_audio,
            on_error=self._on_synthesis_error,
            on_empty=self._on_queue_empty,
        )
        self._segments: Set[asyncio.Task] = set()

        self._handlers = {
            "init:admin": self.on_init_admin,
            "start:admin": self.on_start_admin,
            "stop:admin": self.on_stop_admin,
            "audio": self.on_audio,
            "init:client": self.on_init_client,
            "setLanguage": self.on_set_language,
            "setVoiceModel": self.on_set_voice_model,
            "pause_listening": self.on_pause_listening,
            "resume_listening": self.on_resume_listening,
            "tts_send_text": self.on_tts_send_text,
            "stop_tts_stream": self.on_stop_tts_stream,
            "ping": self.on_ping,
        }

    @property
    def global_queue(self) -> bool:
        return self.queue_mode == "global"

    # ============== Transport Entry Points ==============

    async def handle_event(self, connection, event: str, data: Any = None) -> bool:
        """Dispatch one client event. Returns False for unknown events."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Unknown event %r from %s ignored", event, connection.id)
            return False
        await handler(connection, data)
        return True

    async def disconnect(self, connection) -> None:
        self.registry.unregister(connection)

    async def aclose(self) -> None:
        """Stop recognition and drop every synthesis queue (server shutdown)."""
        await self.bridge.aclose()
        await self.flush_segments()
        await self.synthesis.aclose()

    async def flush_segments(self) -> None:
        """Wait until every transcript segment in flight has been delivered."""
        while self._segments:
            await asyncio.gather(*list(self._segments), return_exceptions=True)

    # ============== Admin Events ==============

    async def on_init_admin(self, connection, data=None) -> None:
        self.registry.register_admin(connection)
        await self._emit_status()

    async def on_start_admin(self, connection, data=None) -> None:
        if not self.registry.is_admin(connection):
            logger.debug("start:admin from non-admin %s ignored", connection.id)
            return
        language = _field(data, "adminLanguage", aliases=("language",)) or self.default_admin_language
        self.registry.set_admin_language(connection, language)
        logger.info("Admin requested start with language: %s", language)

        try:
            started = await self.bridge.start(language)
        except ProviderError as e:
            await connection.emit("admin:status", self._status(error=str(e)))
            return
        if started:
            await self._emit_status()

    async def on_stop_admin(self, connection, data=None) -> None:
        if not self.registry.is_admin(connection):
            return
        if self.bridge.stop():
            await self._emit_status()

    async def on_audio(self, connection, data=None) -> None:
        if not self.registry.is_admin(connection) or not data:
            return
        if not isinstance(data, (bytes, bytearray, memoryview)):
            logger.debug("Non-binary audio payload from %s ignored", connection.id)
            return
        self.bridge.feed(bytes(data))

    # ============== Listener Events ==============

    async def on_init_client(self, connection, data=None) -> None:
        language = (
            _field(data, "language", aliases=("selectedLanguage",))
            or self.default_listener_language
        )
        voice_model = _field(data, "voiceModel", index=1)
        self.registry.register_listener(connection, str(language), voice_model)

    async def on_set_language(self, connection, data=None) -> None:
        language = _field(data, "language")
        if language:
            self.registry.set_listener_language(connection, str(language))

    async def on_set_voice_model(self, connection, data=None) -> None:
        self.registry.set_listener_voice(connection, _field(data, "voiceModel"))

    async def on_pause_listening(self, connection, data=None) -> None:
        self.registry.set_listener_paused(connection, True)

    async def on_resume_listening(self, connection, data=None) -> None:
        self.registry.set_listener_paused(connection, False)

    async def on_ping(self, connection, data=None) -> None:
        await connection.emit("pong", {"listenerCount": self.registry.listener_count})

    # ============== Synthesis Events ==============

    async def on_tts_send_text(self, connection, data=None) -> None:
        text = clean_text_for_tts(_field(data, "text") or "")
        if not text:
            return
        voice = _field(data, "voiceModel", index=1)
        language = _field(data, "language", index=2)

        listener = self.registry.get_listener(connection.id)
        if self.global_queue:
            if listener is None and not self.registry.is_admin(connection):
                return
            key = GLOBAL_KEY
        else:
            if listener is None:
                logger.debug("tts_send_text from unregistered connection %s ignored", connection.id)
                return
            key = connection.id

        if listener is not None:
            voice = voice or listener.voice_model
            language = language or listener.language
        if not language and self.registry.admin is not None:
            language = self.registry.admin.source_language

        entry = SynthesisQueueEntry(text, voice or self.default_voice, language, origin_id=connection.id)
        self.synthesis.enqueue(key, entry)

    async def on_stop_tts_stream(self, connection, data=None) -> None:
        if self.global_queue:
            if self.registry.is_admin(connection):
                self.synthesis.clear(GLOBAL_KEY)
            return
        if self.registry.is_listener(connection):
            self.synthesis.clear(connection.id)

    async def _deliver_audio(self, key: str, entry: SynthesisQueueEntry, audio: bytes) -> None:
        if key == GLOBAL_KEY:
            for state in self.registry.listeners():
                await state.connection.send_audio(audio)
            return
        state = self.registry.get_listener(key)
        if state is not None:
            await state.connection.send_audio(audio)

    async def _on_synthesis_error(self, key: str, entry: SynthesisQueueEntry, error: Exception) -> None:
        message = f"Speech synthesis failed: {error}"
        if key == GLOBAL_KEY:
            admin = self.registry.admin
            if admin is not None:
                await admin.connection.emit("admin:synthesisError", message)
            if admin is None or entry.origin_id != admin.connection.id:
                origin = self.registry.get_listener(entry.origin_id) if entry.origin_id else None
                if origin is not None:
                    await origin.connection.emit("tts_error", message)
            return
        state = self.registry.get_listener(key)
        if state is not None:
            await state.connection.emit("tts_error", message)

    async def _on_queue_empty(self, key: str) -> None:
        if key == GLOBAL_KEY:
            admin = self.registry.admin
            if admin is not None:
                await admin.connection.emit("admin:queueEmpty", None)
            return
        state = self.registry.get_listener(key)
        if state is not None:
            await state.connection.emit("tts_queue_empty", None)

    # ============== Component Callbacks ==============

    async def _on_transcript(self, text: str, is_final: bool, source_language: str) -> None:
        # Recognition keeps receiving while segments are translated. Tasks start
        # in creation order, so delivery chains are still linked in segment order.
        if is_final:
            coro = self.fanout.dispatch(text, source_language, is_final=True)
        elif self.surface_interim:
            coro = self.fanout.surface_interim(text, source_language)
        else:
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._segments.add(task)
        task.add_done_callback(self._segments.discard)

    async def _on_recognition_error(self, error) -> None:
        admin = self.registry.admin
        if admin is not None:
            await admin.connection.emit("admin:status", self._status(error=str(error)))

    def _on_admin_released(self, session: AdminSession) -> None:
        self.bridge.stop()

    def _on_listener_released(self, connection_id: str) -> None:
        self.synthesis.clear(connection_id)

    # ============== Status ==============

    def _status(self, error: Optional[str] = None) -> Dict[str, Any]:
        admin = self.registry.admin
        status = {
            "streaming": self.bridge.is_open,
            "state": self.bridge.state.value,
            "language": self.bridge.source_language or (admin.source_language if admin else None),
            "listenerCount": self.registry.listener_count,
        }
        if error:
            status["error"] = error
        return status

    async def _emit_status(self) -> None:
        admin = self.registry.admin
        if admin is not None:
            await admin.connection.emit("admin:status", self._status())

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "streaming": self.bridge.is_open,
            "listeners": self.registry.listener_count,
            "admin": self.registry.admin is not None,
        }
