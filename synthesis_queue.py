"""
Synthesis Queue Manager: ordered text-to-speech work per key.

A key is a listener connection id (per-listener mode) or GLOBAL_KEY (one
queue feeding every listener). Each key has at most one worker task, and the
worker issues one synthesis call at a time, oldest entry first, until the
queue is empty. Keys drain independently of each other.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)

GLOBAL_KEY = "*"


@dataclass
class SynthesisQueueEntry:
    text: str
    voice: Optional[str]
    language_code: Optional[str]
    # Connection that asked for this audio (receives error notifications)
    origin_id: Optional[str] = None


class SynthesisQueueManager:
    """Per-key FIFO queues with a single in-flight synthesis call per key.

    Args:
        synthesizer: provider with ``synthesize(text, voice, language_code)``
        deliver: ``async (key, entry, audio)`` sends finished audio
        on_error: ``async (key, entry, error)`` reports a failed entry
        on_empty: ``async (key)`` once a key's queue has drained
    """

    def __init__(
        self,
        synthesizer,
        deliver: Callable[[str, SynthesisQueueEntry, bytes], Awaitable[None]],
        on_error: Optional[Callable[[str, SynthesisQueueEntry, Exception], Awaitable[None]]] = None,
        on_empty: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self._synthesizer = synthesizer
        self._deliver = deliver
        self._on_error = on_error
        self._on_empty = on_empty
        self._queues: Dict[str, Deque[SynthesisQueueEntry]] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        # Bumped by clear(); results from an older epoch are discarded
        self._epochs: Dict[str, int] = {}

    def enqueue(self, key: str, entry: SynthesisQueueEntry) -> int:
        """Append ``entry`` to the key's queue and start draining if idle.

        Returns the number of entries waiting (including this one).
        """
        queue = self._queues.setdefault(key, deque())
        queue.append(entry)
        if key not in self._workers:
            self._workers[key] = asyncio.get_running_loop().create_task(self._drain(key))
        return len(queue)

    def clear(self, key: str) -> int:
        """Drop pending entries for ``key``; an in-flight result will not be delivered."""
        queue = self._queues.pop(key, None)
        if key in self._workers:
            self._epochs[key] = self._epochs.get(key, 0) + 1
        else:
            self._epochs.pop(key, None)
        dropped = len(queue) if queue else 0
        if dropped:
            logger.info("Synthesis queue %s cleared (%d pending dropped)", key, dropped)
        return dropped

    def pending(self, key: str) -> int:
        return len(self._queues.get(key, ()))

    def is_draining(self, key: str) -> bool:
        return key in self._workers

    async def aclose(self) -> None:
        """Clear every queue and wait for the workers to finish."""
        for key in list(self._queues):
            self.clear(key)
        workers = list(self._workers.values())
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    async def _drain(self, key: str) -> None:
        try:
            while True:
                queue = self._queues.get(key)
                if not queue:
                    break
                entry = queue.popleft()
                epoch = self._epochs.get(key, 0)
                await self._process(key, entry, epoch)
        finally:
            self._workers.pop(key, None)
            if not self._queues.get(key):
                self._queues.pop(key, None)
                # Nothing in flight any more, the next worker starts at epoch 0
                self._epochs.pop(key, None)

        if self._on_empty is not None:
            try:
                await self._on_empty(key)
            except Exception:
                logger.exception("Queue-empty notification for %s failed", key)

    async def _process(self, key: str, entry: SynthesisQueueEntry, epoch: int) -> None:
        try:
            audio = await self._synthesizer.synthesize(entry.text, entry.voice, entry.language_code)
        except Exception as e:
            logger.warning("Synthesis failed for %s: %s", key, e)
            if self._on_error is not None and self._epochs.get(key, 0) == epoch:
                try:
                    await self._on_error(key, entry, e)
                except Exception:
                    logger.exception("Synthesis error notification for %s failed", key)
            return

        if self._epochs.get(key, 0) != epoch:
            logger.debug("Discarding synthesis result for cleared queue %s", key)
            return

        try:
            await self._deliver(key, entry, audio)
        except Exception:
            logger.exception("Delivering synthesized audio for %s failed", key)
