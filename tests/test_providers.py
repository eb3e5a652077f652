import asyncio
from types import SimpleNamespace

import pytest

from providers import (
    DeepgramRecognizer,
    OpenAISynthesizer,
    OpenAITranslator,
    ProviderError,
    clean_text_for_tts,
    construct_payload,
)


class _FakeCompletions:
    def __init__(self, reply="bonjour", error=None):
        self.reply = reply
        self.error = error
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _openai_client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_construct_payload_with_and_without_history():
    assert construct_payload([], "hello") == "[TARGET_BATCH]\nhello\n[/TARGET_BATCH]"
    payload = construct_payload(["one", "two"], "three")
    assert payload.startswith("[CONTEXT]\none\ntwo\n[/CONTEXT]\n\n[TARGET_BATCH]")


def test_clean_text_for_tts():
    assert clean_text_for_tts("  hello \n  world || next ") == "hello world... next"
    assert clean_text_for_tts(None) == ""


def test_recognition_model_choice():
    recognizer = DeepgramRecognizer("key")
    assert recognizer.model_for("en-US") == "nova-3"
    assert recognizer.model_for("fr") == "nova-2"
    assert DeepgramRecognizer("key", model="nova-3").model_for("fr") == "nova-3"


def test_translator_keeps_rolling_context_per_direction():
    completions = _FakeCompletions()
    translator = OpenAITranslator("key", context_size=2, client=_openai_client(completions))

    async def scenario():
        for text in ("one", "two", "three"):
            await translator.translate(text, "en-US", "fr")
        await translator.translate("solo", "en-US", "de")

    asyncio.run(scenario())
    fr_last = completions.requests[2]["messages"][1]["content"]
    de_only = completions.requests[3]["messages"][1]["content"]
    assert "[CONTEXT]\none\ntwo\n[/CONTEXT]" in fr_last
    assert "[CONTEXT]" not in de_only
    assert "French" in completions.requests[0]["messages"][0]["content"]


def test_translator_wraps_failures():
    translator = OpenAITranslator("key", client=_openai_client(_FakeCompletions(error=RuntimeError("429"))))
    with pytest.raises(ProviderError):
        asyncio.run(translator.translate("hello", "en-US", "fr"))


def test_translator_rejects_empty_output():
    translator = OpenAITranslator("key", client=_openai_client(_FakeCompletions(reply="  ")))
    with pytest.raises(ProviderError):
        asyncio.run(translator.translate("hello", "en-US", "fr"))


def test_openai_synthesizer_falls_back_to_default_voice():
    requests = []

    async def create(**kwargs):
        requests.append(kwargs)
        return SimpleNamespace(content=b"mp3")

    client = SimpleNamespace(audio=SimpleNamespace(speech=SimpleNamespace(create=create)))
    synthesizer = OpenAISynthesizer("key", default_voice="nova", client=client)

    audio = asyncio.run(synthesizer.synthesize("hi", "aura-2-thalia-en", "en-US"))

    assert audio == b"mp3"
    assert requests[0]["voice"] == "nova"
