"""
Fan-out Translator: one finalized transcript segment -> every listener.

For each segment one translation is requested per distinct target language,
all concurrently. Each listener's delivery is its own task, so a slow or
failing translation only holds back the listeners waiting for it. When a
translation fails the listener gets the source text instead.

With ordered delivery on, every listener keeps a chain of delivery futures so
segment N+1 is never emitted to a listener before segment N.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from languages import same_language
from session_registry import ListenerState, SessionRegistry

logger = logging.getLogger(__name__)


class FanoutTranslator:
    """Translates transcript segments per listener and emits ``transcript`` events."""

    def __init__(self, registry: SessionRegistry, translator, ordered_delivery: bool = True):
        self._registry = registry
        self._translator = translator
        self.ordered_delivery = ordered_delivery

    async def translate_for(self, text: str, source_language: str, target_language: str) -> str:
        """Translate ``text``, passing it through when no translation is needed.

        Never raises: any provider failure or empty result falls back to ``text``.
        """
        if same_language(source_language, target_language):
            return text
        try:
            translated = await self._translator.translate(text, source_language, target_language)
        except Exception as e:
            logger.warning("Translation %s -> %s failed, sending source text: %s",
                           source_language, target_language, e)
            return text
        if not translated or not str(translated).strip():
            return text
        return translated

    async def dispatch(self, text: str, source_language: str, is_final: bool = True) -> int:
        """Deliver one segment to every active listener.

        Completes once every listener's delivery has finished or failed.
        Returns the number of listeners that received the segment.
        """
        listeners = [state for state in self._registry.listeners() if not state.paused]
        if not listeners:
            return 0

        loop = asyncio.get_running_loop()
        translations: Dict[str, asyncio.Task] = {}
        deliveries: List[asyncio.Task] = []

        # No awaits in this loop: delivery chains are linked in segment order
        for state in listeners:
            target = state.language
            key = target.lower()
            if key not in translations:
                translations[key] = loop.create_task(self.translate_for(text, source_language, target))

            previous: Optional[asyncio.Future] = None
            done = loop.create_future()
            if self.ordered_delivery:
                previous = state.delivery_tail
                state.delivery_tail = done

            task = loop.create_task(
                self._deliver(state, translations[key], target, is_final, previous)
            )
            task.add_done_callback(lambda _t, d=done: d.done() or d.set_result(None))
            deliveries.append(task)

        results = await asyncio.gather(*deliveries, return_exceptions=True)
        delivered = sum(1 for r in results if r is True)
        logger.debug("Segment delivered to %d/%d listeners", delivered, len(listeners))
        return delivered

    async def surface_interim(self, text: str, source_language: str) -> int:
        """Send a non-final transcript, untranslated, to listeners of the source language."""
        delivered = 0
        for state in self._registry.listeners():
            if state.paused or not same_language(state.language, source_language):
                continue
            if await state.connection.emit(
                "transcript", {"text": text, "isFinal": False, "language": state.language}
            ):
                delivered += 1
        return delivered

    async def _deliver(
        self,
        state: ListenerState,
        translation: asyncio.Task,
        target: str,
        is_final: bool,
        previous: Optional[asyncio.Future],
    ) -> bool:
        try:
            text = await translation
            if previous is not None:
                await previous

            # Disconnected (or re-registered) while translating
            if self._registry.get_listener(state.connection_id) is not state:
                return False

            return await state.connection.emit(
                "transcript", {"text": text, "isFinal": is_final, "language": target}
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Delivering transcript to %s failed", state.connection_id)
            return False
