"""
Upstream provider adapters.

The relay core only talks to three small interfaces:

- a live recognizer: ``open(language, on_transcript, on_error, on_close)`` returning
  a session with ``send(frame)`` and ``finish()``
- a translator: ``translate(text, source_language, target_language)``
- a synthesizer: ``synthesize(text, voice, language_code)`` and ``list_voices()``

This module implements them on top of Deepgram (live STT and Aura TTS),
OpenAI (chat translation and TTS) and ElevenLabs (TTS). Every provider failure
surfaces as ProviderError.
"""

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from deepgram import DeepgramClient, LiveOptions, LiveTranscriptionEvents, SpeakOptions
from elevenlabs.client import ElevenLabs
from openai import AsyncOpenAI

from config_manager import ConfigManager
from languages import (
    LanguageCatalog,
    VoiceModel,
    deepgram_voice_models,
    openai_voice_models,
    primary_subtag,
)

logger = logging.getLogger(__name__)

TranscriptHandler = Callable[[str, bool], Awaitable[None]]
ErrorHandler = Callable[[object], Awaitable[None]]
CloseHandler = Callable[[], Awaitable[None]]


class ProviderError(Exception):
    """An upstream recognizer / translator / synthesizer call failed."""


def clean_text_for_tts(text: str) -> str:
    """Normalize caption text before it is sent to a synthesizer.

    Converts '||' section markers into a spoken pause and collapses whitespace.
    """
    text = re.sub(r"\s*\|\|\s*", "... ", str(text or ""))
    text = re.sub(r"\s+", " ", text).strip()
    return text


# ============== Speech Recognition ==============

class DeepgramLiveSession:
    """One open Deepgram live-transcription websocket."""

    def __init__(self, connection):
        self._connection = connection

    async def send(self, frame: bytes) -> None:
        await self._connection.send(frame)

    async def finish(self) -> None:
        await self._connection.finish()


class DeepgramRecognizer:
    """Opens Deepgram live sessions for the admin's audio stream."""

    def __init__(self, api_key: str, model: str = "", interim_results: bool = False):
        self.client = DeepgramClient(api_key or "dummy_key")
        self.model = model
        self.interim_results = interim_results

    def model_for(self, language: str) -> str:
        """nova-3 for English, nova-2 for everything else (unless overridden)."""
        if self.model:
            return self.model
        return "nova-3" if primary_subtag(language) == "en" else "nova-2"

    async def open(
        self,
        language: str,
        on_transcript: TranscriptHandler,
        on_error: ErrorHandler,
        on_close: CloseHandler,
    ) -> DeepgramLiveSession:
        connection = self.client.listen.asyncwebsocket.v("1")

        async def handle_transcript(_client, result, **kwargs):
            alternatives = result.channel.alternatives
            transcript = alternatives[0].transcript if alternatives else ""
            if transcript:
                await on_transcript(transcript, bool(result.is_final))

        async def handle_error(_client, error, **kwargs):
            await on_error(error)

        async def handle_close(_client, close, **kwargs):
            await on_close()

        connection.on(LiveTranscriptionEvents.Transcript, handle_transcript)
        connection.on(LiveTranscriptionEvents.Error, handle_error)
        connection.on(LiveTranscriptionEvents.Close, handle_close)

        options = LiveOptions(
            model=self.model_for(language),
            language=language,
            smart_format=True,
            punctuate=True,
            interim_results=self.interim_results,
        )

        try:
            connected = await connection.start(options)
        except Exception as e:
            raise ProviderError(f"Deepgram connection failed: {e}") from e
        if connected is False:
            raise ProviderError("Failed to connect to Deepgram")

        logger.info("Deepgram live session opened (%s, %s)", language, options.model)
        return DeepgramLiveSession(connection)


# ============== Translation ==============

TRANSLATION_PROMPT = """You are an expert simultaneous interpreter producing live captions.

**INPUT FORMAT:**
- [CONTEXT]: Previous sentences from the same speaker (for continuity - read only)
- [TARGET_BATCH]: The current text to translate

**INSTRUCTIONS:**
1. Translate accurately but naturally - balance faithfulness with fluency.
2. Keep names, numbers and technical terms intact.
3. Never add commentary, notes or quotation marks.

**Output:** Provide ONLY the translation of [TARGET_BATCH]."""


def construct_payload(history: List[str], current: str) -> str:
    """Construct a structured payload with context for translation.

    Args:
        history: Previous source segments, oldest first
        current: The segment to translate

    Returns:
        Formatted string with bracketed delimiters
    """
    payload_parts = []

    if history:
        payload_parts.append("[CONTEXT]")
        payload_parts.extend(history)
        payload_parts.append("[/CONTEXT]")
        payload_parts.append("")

    payload_parts.append("[TARGET_BATCH]")
    payload_parts.append(current)
    payload_parts.append("[/TARGET_BATCH]")

    return "\n".join(payload_parts)


class OpenAITranslator:
    """Chat-completion translator with a rolling per-direction context."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        context_size: int = 3,
        catalog: Optional[LanguageCatalog] = None,
        client=None,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key or "dummy_key")
        self.model = model
        self.context_size = max(0, int(context_size))
        self.catalog = catalog or LanguageCatalog()
        self._history: Dict[Tuple[str, str], Deque[str]] = {}

    def _system_prompt(self, source_language: str, target_language: str) -> str:
        source_name = self.catalog.name_for(source_language)
        target_name = self.catalog.name_for(target_language)
        return (
            f"**TRANSLATION DIRECTION:** {source_name} ({source_language}) -> "
            f"{target_name} ({target_language})\n\n"
            f"{TRANSLATION_PROMPT}\n\n"
            f"**CRITICAL:** Output ONLY in {target_name}."
        )

    async def translate(self, text: str, source_language: str, target_language: str) -> str:
        key = (source_language.lower(), target_language.lower())
        history = self._history.setdefault(key, deque(maxlen=self.context_size or None))

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self._system_prompt(source_language, target_language)},
                    {"role": "user", "content": construct_payload(list(history), text)},
                ],
                temperature=0.3,
                max_tokens=500,
            )
        except Exception as e:
            raise ProviderError(f"Translation to {target_language} failed: {e}") from e

        translation = (response.choices[0].message.content or "").strip()
        if not translation:
            raise ProviderError(f"Empty translation to {target_language}")

        if self.context_size:
            history.append(text)
        return translation


# ============== Speech Synthesis ==============

class DeepgramSynthesizer:
    """Deepgram Aura TTS (mp3)."""

    def __init__(self, api_key: str, default_voice: str = "aura-2-thalia-en"):
        self.client = DeepgramClient(api_key or "dummy_key")
        self.default_voice = default_voice

    async def synthesize(self, text: str, voice: Optional[str], language_code: Optional[str]) -> bytes:
        options = SpeakOptions(model=voice or self.default_voice, encoding="mp3")
        try:
            response = await self.client.speak.asyncrest.v("1").stream_memory(
                {"text": text},
                options,
            )
        except Exception as e:
            raise ProviderError(f"Deepgram TTS failed: {e}") from e
        return response.stream_memory.getvalue()

    async def list_voices(self) -> List[VoiceModel]:
        return deepgram_voice_models()


class OpenAISynthesizer:
    """OpenAI TTS. Voices are multilingual, so the language is not sent."""

    def __init__(self, api_key: str, default_voice: str = "alloy", model: str = "tts-1", client=None):
        self.client = client or AsyncOpenAI(api_key=api_key or "dummy_key")
        self.model = model
        self.voices = {v.name for v in openai_voice_models()}
        self.default_voice = default_voice if default_voice in self.voices else "alloy"

    async def synthesize(self, text: str, voice: Optional[str], language_code: Optional[str]) -> bytes:
        voice_id = voice if voice in self.voices else self.default_voice
        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=voice_id,
                input=text,
            )
        except Exception as e:
            raise ProviderError(f"OpenAI TTS failed: {e}") from e
        return response.content

    async def list_voices(self) -> List[VoiceModel]:
        return openai_voice_models()


class ElevenLabsSynthesizer:
    """ElevenLabs TTS. The SDK client is synchronous, so calls run in a thread."""

    def __init__(self, api_key: str, default_voice: str = "29vD33N1CtxCmqQRPOHJ",
                 model: str = "eleven_multilingual_v2"):
        self.client = ElevenLabs(api_key=api_key or "dummy_key")
        self.default_voice = default_voice
        self.model = model

    def _convert(self, text: str, voice_id: str) -> bytes:
        # convert() returns a generator - must collect all chunks
        audio = self.client.text_to_speech.convert(
            voice_id=voice_id,
            text=text,
            model_id=self.model,
            output_format="mp3_44100_128",
        )
        return b"".join(audio)

    async def synthesize(self, text: str, voice: Optional[str], language_code: Optional[str]) -> bytes:
        # Deepgram voice names can arrive from clients built for the default catalog
        if not voice or voice.startswith("aura-"):
            voice = self.default_voice
        try:
            return await asyncio.to_thread(self._convert, text, voice)
        except Exception as e:
            raise ProviderError(f"ElevenLabs TTS failed: {e}") from e

    async def list_voices(self) -> List[VoiceModel]:
        try:
            response = await asyncio.to_thread(self.client.voices.get_all)
        except Exception as e:
            raise ProviderError(f"ElevenLabs voice listing failed: {e}") from e

        voices = []
        for voice in response.voices:
            labels = voice.labels or {}
            gender = str(labels.get("gender", "neutral")).upper()
            voices.append(VoiceModel(voice.voice_id, voice.name or voice.voice_id, gender))
        return voices


# ============== Factory ==============

@dataclass
class Providers:
    recognizer: object
    translator: object
    synthesizer: object


def build_synthesizer(config: ConfigManager):
    service = config.tts_service
    default_voice = config.get("synthesis", "default_voice_model", "")

    if service == "openai":
        return OpenAISynthesizer(config.get_api_key("openai"), default_voice=default_voice)
    if service == "elevenlabs":
        if not default_voice or default_voice.startswith("aura-"):
            return ElevenLabsSynthesizer(config.get_api_key("elevenlabs"))
        return ElevenLabsSynthesizer(config.get_api_key("elevenlabs"), default_voice=default_voice)
    return DeepgramSynthesizer(config.get_api_key("deepgram"), default_voice=default_voice)


def build_providers(config: ConfigManager, catalog: Optional[LanguageCatalog] = None) -> Providers:
    """Create the SDK-backed providers for the configured services."""
    recognizer = DeepgramRecognizer(
        config.get_api_key("deepgram"),
        model=config.get("recognition", "model", ""),
        interim_results=bool(config.get("recognition", "interim_results", False)),
    )
    translator = OpenAITranslator(
        config.get_api_key("openai"),
        model=config.get("translation", "model", "gpt-4o-mini"),
        context_size=config.get("translation", "context_size", 3),
        catalog=catalog,
    )
    return Providers(recognizer, translator, build_synthesizer(config))
