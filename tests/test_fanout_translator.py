import asyncio

from conftest import FakeConnection, FakeTranslator, settle

from fanout_translator import FanoutTranslator
from session_registry import SessionRegistry


def _setup(translator, *listeners, ordered=True):
    registry = SessionRegistry()
    connections = []
    for cid, language in listeners:
        conn = FakeConnection(cid)
        registry.register_listener(conn, language)
        connections.append(conn)
    return registry, FanoutTranslator(registry, translator, ordered_delivery=ordered), connections


def test_same_language_passthrough_and_translation():
    translator = FakeTranslator({("hello", "fr"): "bonjour"})
    _, fanout, (a, b) = _setup(translator, ("a", "en-US"), ("b", "fr"))

    delivered = asyncio.run(fanout.dispatch("hello", "en-US"))

    assert delivered == 2
    assert a.of("transcript") == [{"text": "hello", "isFinal": True, "language": "en-US"}]
    assert b.of("transcript") == [{"text": "bonjour", "isFinal": True, "language": "fr"}]
    assert translator.calls == [("hello", "en-US", "fr")]


def test_bare_language_matches_regional_source():
    translator = FakeTranslator()
    _, fanout, (a,) = _setup(translator, ("a", "en"))

    asyncio.run(fanout.dispatch("hello", "en-US"))

    assert a.of("transcript")[0]["text"] == "hello"
    assert translator.calls == []


def test_failed_translation_falls_back_to_source_text():
    translator = FakeTranslator()
    translator.failing.add("fr")
    _, fanout, (a, b) = _setup(translator, ("a", "en-US"), ("b", "fr"))

    asyncio.run(fanout.dispatch("hello", "en-US"))

    assert b.of("transcript") == [{"text": "hello", "isFinal": True, "language": "fr"}]
    assert a.of("transcript")[0]["text"] == "hello"


def test_empty_translation_falls_back_to_source_text():
    translator = FakeTranslator({("hello", "fr"): "   "})
    _, fanout, (b,) = _setup(translator, ("b", "fr"))

    asyncio.run(fanout.dispatch("hello", "en-US"))

    assert b.of("transcript")[0]["text"] == "hello"


def test_slow_translation_does_not_block_other_listeners():
    translator = FakeTranslator()
    _, fanout, (slow, fast) = _setup(translator, ("slow", "de"), ("fast", "fr"))

    async def scenario():
        translator.gates["de"] = asyncio.Event()
        task = asyncio.ensure_future(fanout.dispatch("hello", "en-US"))
        await settle()
        assert fast.of("transcript") == [{"text": "[fr] hello", "isFinal": True, "language": "fr"}]
        assert slow.of("transcript") == []
        assert not task.done()

        translator.gates["de"].set()
        assert await task == 2

    asyncio.run(scenario())
    assert slow.of("transcript")[0]["text"] == "[de] hello"


def test_one_translation_per_distinct_language():
    translator = FakeTranslator()
    _, fanout, conns = _setup(translator, ("a", "fr"), ("b", "fr"), ("c", "es"))

    asyncio.run(fanout.dispatch("hello", "en-US"))

    assert sorted(call[2] for call in translator.calls) == ["es", "fr"]
    assert all(len(c.of("transcript")) == 1 for c in conns)


def test_listener_removed_during_translation_gets_nothing():
    translator = FakeTranslator()
    registry, fanout, (gone,) = _setup(translator, ("gone", "fr"))

    async def scenario():
        translator.gates["fr"] = asyncio.Event()
        task = asyncio.ensure_future(fanout.dispatch("hello", "en-US"))
        await settle()
        registry.unregister(gone)
        translator.gates["fr"].set()
        return await task

    assert asyncio.run(scenario()) == 0
    assert gone.events == []


def test_paused_listener_is_skipped():
    translator = FakeTranslator()
    registry, fanout, (paused, active) = _setup(translator, ("p", "fr"), ("a", "fr"))
    registry.set_listener_paused(paused, True)

    asyncio.run(fanout.dispatch("hello", "en-US"))

    assert paused.events == []
    assert len(active.of("transcript")) == 1


class _FirstCallSlowTranslator:
    def __init__(self):
        self.release = None
        self.calls = 0

    async def translate(self, text, source_language, target_language):
        self.calls += 1
        if self.calls == 1:
            await self.release.wait()
        return text.upper()


def _run_out_of_order(ordered):
    translator = _FirstCallSlowTranslator()
    _, fanout, (listener,) = _setup(translator, ("l", "fr"), ordered=ordered)

    async def scenario():
        translator.release = asyncio.Event()
        first = asyncio.ensure_future(fanout.dispatch("one", "en-US"))
        second = asyncio.ensure_future(fanout.dispatch("two", "en-US"))
        await settle()
        early = [d["text"] for d in listener.of("transcript")]
        translator.release.set()
        await asyncio.gather(first, second)
        return early

    early = asyncio.run(scenario())
    return early, [d["text"] for d in listener.of("transcript")]


def test_ordered_delivery_keeps_segment_order():
    early, final = _run_out_of_order(ordered=True)
    assert early == []
    assert final == ["ONE", "TWO"]


def test_unordered_delivery_emits_as_translations_finish():
    early, final = _run_out_of_order(ordered=False)
    assert early == ["TWO"]
    assert final == ["TWO", "ONE"]


def test_interim_results_only_reach_source_language_listeners():
    translator = FakeTranslator()
    _, fanout, (same, other) = _setup(translator, ("s", "en-US"), ("o", "fr"))

    asyncio.run(fanout.surface_interim("hel", "en-US"))

    assert same.of("transcript") == [{"text": "hel", "isFinal": False, "language": "en-US"}]
    assert other.events == []
    assert translator.calls == []
