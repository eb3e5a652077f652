import asyncio
from typing import Dict, List, Optional, Set

import pytest

from languages import VoiceModel
from providers import ProviderError


class FakeConnection:
    def __init__(self, cid: str):
        self.id = cid
        self.connected = True
        self.events: List[tuple] = []
        self.audio: List[bytes] = []

    async def emit(self, event, data=None):
        if not self.connected:
            return False
        self.events.append((event, data))
        return True

    async def send_audio(self, audio):
        if not self.connected:
            return False
        self.audio.append(audio)
        return True

    def of(self, event):
        return [data for name, data in self.events if name == event]


class FakeLiveSession:
    def __init__(self, language, on_transcript, on_error, on_close):
        self.language = language
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.on_close = on_close
        self.frames: List[bytes] = []
        self.finished = False
        self.send_gate: Optional[asyncio.Event] = None

    async def send(self, frame):
        if self.send_gate is not None:
            await self.send_gate.wait()
        self.frames.append(frame)

    async def finish(self):
        self.finished = True

    async def transcript(self, text, is_final=True):
        await self.on_transcript(text, is_final)

    @property
    def is_open(self):
        return not self.finished


class FakeRecognizer:
    def __init__(self):
        self.sessions: List[FakeLiveSession] = []
        self.open_gate: Optional[asyncio.Event] = None
        self.fail = False

    async def open(self, language, on_transcript, on_error, on_close):
        if self.open_gate is not None:
            await self.open_gate.wait()
        if self.fail:
            raise ProviderError("recognizer unavailable")
        session = FakeLiveSession(language, on_transcript, on_error, on_close)
        self.sessions.append(session)
        return session

    @property
    def open_sessions(self):
        return [s for s in self.sessions if s.is_open]


class FakeTranslator:
    def __init__(self, table: Optional[Dict[tuple, str]] = None):
        self.table = table or {}
        self.failing: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[tuple] = []

    async def translate(self, text, source_language, target_language):
        self.calls.append((text, source_language, target_language))
        gate = self.gates.get(target_language)
        if gate is not None:
            await gate.wait()
        if target_language in self.failing:
            raise ProviderError(f"cannot translate to {target_language}")
        return self.table.get((text, target_language), f"[{target_language}] {text}")


class FakeSynthesizer:
    def __init__(self):
        self.calls: List[tuple] = []
        self.failing: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}
        self.in_flight = 0
        self.peak_in_flight = 0
        self.voices = [
            VoiceModel("aura-2-thalia-en", "Thalia", "FEMALE", ("en-US",)),
            VoiceModel("aura-2-apollo-en", "Apollo", "MALE", ("en-US",)),
            VoiceModel("aura-2-celeste-es", "Celeste", "FEMALE", ("es-CO",)),
        ]

    async def synthesize(self, text, voice, language_code):
        self.calls.append((text, voice, language_code))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            gate = self.gates.get(text)
            if gate is not None:
                await gate.wait()
            if text in self.failing:
                raise ProviderError(f"cannot speak {text!r}")
            return f"audio:{text}".encode()
        finally:
            self.in_flight -= 1

    async def list_voices(self):
        return list(self.voices)


async def settle(rounds: int = 20):
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def translator():
    return FakeTranslator()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()
