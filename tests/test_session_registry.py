from conftest import FakeConnection

from session_registry import SessionRegistry


def _registry():
    released = {"admins": [], "listeners": []}
    registry = SessionRegistry(
        on_admin_released=released["admins"].append,
        on_listener_released=released["listeners"].append,
    )
    return registry, released


def test_register_admin_replaces_previous_admin():
    registry, released = _registry()
    first, second = FakeConnection("a1"), FakeConnection("a2")

    registry.register_admin(first)
    assert released["admins"] == []

    registry.register_admin(second)
    assert registry.is_admin(second)
    assert not registry.is_admin(first)
    assert [s.connection_id for s in released["admins"]] == ["a1"]


def test_register_listener_overwrites_state():
    registry, _ = _registry()
    conn = FakeConnection("l1")

    registry.register_listener(conn, "fr", "aura-2-thalia-en")
    registry.register_listener(conn, "de")

    state = registry.get_listener("l1")
    assert state.language == "de"
    assert state.voice_model is None
    assert registry.listener_count == 1


def test_set_listener_language_unknown_connection_is_noop():
    registry, _ = _registry()
    assert registry.set_listener_language(FakeConnection("ghost"), "fr") is False
    assert registry.listeners() == []


def test_set_listener_language_updates_state():
    registry, _ = _registry()
    conn = FakeConnection("l1")
    registry.register_listener(conn, "fr")

    assert registry.set_listener_language(conn, "es") is True
    assert registry.get_listener("l1").language == "es"


def test_unregister_admin_releases_stream():
    registry, released = _registry()
    admin = FakeConnection("a1")
    registry.register_admin(admin)

    registry.unregister(admin)

    assert registry.admin is None
    assert len(released["admins"]) == 1
    assert released["listeners"] == []


def test_unregister_listener_releases_queue():
    registry, released = _registry()
    conn = FakeConnection("l1")
    registry.register_listener(conn, "fr")

    registry.unregister(conn)

    assert registry.get_listener("l1") is None
    assert released["listeners"] == ["l1"]


def test_admin_can_also_be_listener():
    registry, released = _registry()
    conn = FakeConnection("a1")
    registry.register_admin(conn)
    registry.register_listener(conn, "en-US")

    registry.unregister(conn)

    assert registry.admin is None
    assert registry.listener_count == 0
    assert len(released["admins"]) == 1
    assert released["listeners"] == ["a1"]


def test_unregister_unknown_connection_is_noop():
    registry, released = _registry()
    registry.unregister(FakeConnection("ghost"))
    assert released == {"admins": [], "listeners": []}
