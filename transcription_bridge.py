"""
Transcription Bridge: owns the single upstream recognition stream.

State machine per stream: IDLE -> OPENING -> OPEN -> CLOSED.

- start(language) always stops the current stream first ("last start wins")
- feed(frame) forwards audio without waiting; frames are dropped when the
  stream is not open or the previous send is still in flight
- stop() is idempotent and never waits for the upstream close
- an upstream error or unexpected close forces stop()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from providers import ProviderError

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class RecognitionStream:
    source_language: str
    state: StreamState = StreamState.OPENING
    session: Optional[object] = field(default=None, repr=False)
    send_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state is StreamState.OPEN


class TranscriptionBridge:
    """Runs at most one RecognitionStream at a time.

    Args:
        recognizer: provider with ``open(language, on_transcript, on_error, on_close)``
        on_transcript: ``async (text, is_final, source_language)`` for every
            transcript of the current stream
        on_error: ``async (error)`` after the stream was force-stopped
    """

    def __init__(
        self,
        recognizer,
        on_transcript: Callable[[str, bool, str], Awaitable[None]],
        on_error: Optional[Callable[[object], Awaitable[None]]] = None,
    ):
        self._recognizer = recognizer
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._stream: Optional[RecognitionStream] = None
        self._last_state = StreamState.IDLE
        self._background: Set[asyncio.Task] = set()
        self.dropped_frames = 0

    # ============== State ==============

    @property
    def state(self) -> StreamState:
        if self._stream is None:
            return self._last_state
        return self._stream.state

    @property
    def is_open(self) -> bool:
        return self._stream is not None and self._stream.is_open

    @property
    def source_language(self) -> Optional[str]:
        return self._stream.source_language if self._stream is not None else None

    # ============== Commands ==============

    async def start(self, source_language: str) -> bool:
        """Open a new upstream stream for ``source_language``.

        Returns False when a later start/stop superseded this one while the
        upstream was still connecting. Raises ProviderError if it can't connect.
        """
        self.stop()
        stream = RecognitionStream(source_language)
        self._stream = stream

        async def on_transcript(text: str, is_final: bool):
            await self._handle_transcript(stream, text, is_final)

        async def on_error(error):
            await self._handle_error(stream, error)

        async def on_close():
            await self._handle_close(stream)

        try:
            session = await self._recognizer.open(source_language, on_transcript, on_error, on_close)
        except Exception as e:
            stream.state = StreamState.CLOSED
            if self._stream is stream:
                self._stream = None
                self._last_state = StreamState.CLOSED
            logger.error("Could not open recognition stream (%s): %s", source_language, e)
            if isinstance(e, ProviderError):
                raise
            raise ProviderError(str(e)) from e

        if self._stream is not stream:
            logger.info("Recognition start (%s) superseded while opening", source_language)
            self._spawn(self._finish(session))
            return False

        stream.session = session
        stream.state = StreamState.OPEN
        logger.info("Recognition stream open (%s)", source_language)
        return True

    def feed(self, frame: bytes) -> bool:
        """Forward one audio frame; returns False when the frame was dropped."""
        stream = self._stream
        if stream is None or not stream.is_open:
            return False
        if stream.send_task is not None and not stream.send_task.done():
            self.dropped_frames += 1
            return False
        stream.send_task = self._spawn(self._send(stream, frame))
        return True

    def stop(self) -> bool:
        """Close the current stream. Returns False if there was nothing to stop."""
        stream = self._stream
        if stream is None:
            return False
        self._stream = None
        self._last_state = StreamState.CLOSED
        stream.state = StreamState.CLOSED
        if stream.session is not None:
            self._spawn(self._finish(stream.session))
        logger.info("Recognition stream stopped (%s)", stream.source_language)
        return True

    async def aclose(self) -> None:
        """Stop and wait for every pending upstream send/close."""
        self.stop()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ============== Upstream Events ==============

    async def _handle_transcript(self, stream: RecognitionStream, text: str, is_final: bool) -> None:
        if stream is not self._stream or not stream.is_open:
            return
        await self._on_transcript(text, is_final, stream.source_language)

    async def _handle_error(self, stream: RecognitionStream, error) -> None:
        if stream is not self._stream:
            return
        logger.error("Recognition error (%s): %s", stream.source_language, error)
        self.stop()
        if self._on_error is not None:
            await self._on_error(error)

    async def _handle_close(self, stream: RecognitionStream) -> None:
        if stream is not self._stream:
            return
        await self._handle_error(stream, ProviderError("Recognition stream closed by upstream"))

    async def _send(self, stream: RecognitionStream, frame: bytes) -> None:
        try:
            await stream.session.send(frame)
        except Exception as e:
            await self._handle_error(stream, e)

    async def _finish(self, session) -> None:
        try:
            await session.finish()
        except Exception as e:
            logger.warning("Error closing recognition session: %s", e)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
