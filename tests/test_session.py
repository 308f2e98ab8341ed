"""Tests for the session command surface and the read-isolation hook."""

import pytest

from realm_rpc import RemoteObject
from realm_rpc import RpcProtocolError
from realm_rpc import RpcSession
from realm_rpc import RpcSessionError
from tests.conftest import HOST
from tests.fixtures.fake_remote import ManualTimerFactory
from tests.fixtures.fake_remote import ScriptedRemote


def _hook_index(session: RpcSession) -> object:
    """Return the callback handle of the session's read-isolation hook.

    :param session: Session under test.
    :returns: Callback handle.
    """
    return session.serialize(None, session.before_notify_hook)["value"]


def _fire_hook(remote: ScriptedRemote, session: RpcSession, realm_id: int) -> None:
    """Deliver one ``beforenotify`` callback for ``realm_id`` through a poll.

    :param remote: Scripted remote.
    :param session: Session under test.
    :param realm_id: Realm whose snapshot is about to advance.
    """
    remote.queue(
        {
            "callback": _hook_index(session),
            "this": {"value": None},
            "arguments": {"value": [{"type": "realm", "id": realm_id}, {"value": "beforenotify"}]},
        },
        {"result": None},
    )
    session.poll()


def test_create_session_binds_host_and_session_id(remote: ScriptedRemote, timers: ManualTimerFactory) -> None:
    """Later requests carry the server issued session id."""
    session = RpcSession(transport=remote.make_transport(), timer_factory=timers)
    try:

        def refresh_access_token() -> None:
            """No-op credential refresh."""

        remote.queue({"result": "session-42"}, {"result": {"value": []}})
        assert session.create_session(refresh_access_token, HOST) == "session-42"
        assert session.host == HOST
        assert session.session_id == "session-42"

        token_envelope: object = remote.payload(0)["refreshAccessToken"]
        assert token_envelope == session.serialize(None, refresh_access_token)
        assert token_envelope["type"] == "function"
        assert "sessionId" not in remote.payload(0)

        assert session.get_all_users() == []
        assert remote.payload(1) == {"sessionId": "session-42"}
    finally:
        session.close()


def test_create_realm_always_sends_the_same_hook(session: RpcSession, remote: ScriptedRemote) -> None:
    """Every realm gets one stable ``beforeNotify`` handle."""
    session.create_realm([{"path": "default.realm"}])
    session.create_realm()

    first: dict[str, object] = remote.payload(0)
    second: dict[str, object] = remote.payload(1)
    assert first["beforeNotify"] == {"type": "function", "value": _hook_index(session)}
    assert second["beforeNotify"] == first["beforeNotify"]
    assert first["arguments"] == [{"type": "dict", "keys": ["path"], "values": [{"value": "default.realm"}]}]
    assert "arguments" not in second


def test_clear_test_state_keeps_persistent_callbacks(remote: ScriptedRemote, timers: ManualTimerFactory) -> None:
    """The token refresher and the hook survive a test-state reset."""
    session = RpcSession(transport=remote.make_transport(), timer_factory=timers)
    try:

        def refresh_access_token() -> None:
            """No-op credential refresh."""

        def listener() -> None:
            """No-op listener."""

        session.create_session(refresh_access_token, HOST)
        token_index: object = session.serialize(None, refresh_access_token)["value"]
        listener_index: object = session.serialize(None, listener)["value"]

        session.clear_test_state()
        assert remote.commands[-1] == "clear_test_state"
        assert session.callbacks.resolve_function(token_index) is refresh_access_token
        assert session.callbacks.resolve_function(_hook_index(session)) is session.before_notify_hook
        assert session.callbacks.resolve_function(listener_index) is None
    finally:
        session.close()


def test_property_reads_are_cached_until_hook_fires(session: RpcSession, remote: ScriptedRemote) -> None:
    """A snapshot advance announced by the hook drops cached reads."""
    remote.queue({"result": {"value": 30}})
    assert session.get_property(5, 9, "age") == 30
    assert session.get_property(5, 9, "age") == 30
    assert remote.commands == ["get_property"]

    _fire_hook(remote, session, 5)
    assert remote.commands == ["get_property", "callbacks_poll", "callback_poll_result"]

    remote.queue({"result": {"value": 31}})
    assert session.get_property(5, 9, "age") == 31
    assert remote.commands[-1] == "get_property"


def test_hook_only_invalidates_its_realm(session: RpcSession, remote: ScriptedRemote) -> None:
    """Reads cached for other realms are kept."""
    remote.queue({"result": {"value": "a"}}, {"result": {"value": "b"}})
    session.get_property(5, 1, "name")
    session.get_property(6, 1, "name")

    _fire_hook(remote, session, 5)
    request_count: int = len(remote.requests)
    assert session.get_property(6, 1, "name") == "b"
    assert len(remote.requests) == request_count


def test_set_property_drops_cached_reads(session: RpcSession, remote: ScriptedRemote) -> None:
    """A write is followed by a fresh read."""
    remote.queue({"result": {"value": 30}}, {"result": None}, {"result": {"value": 40}})
    session.get_property(5, 9, "age")
    session.set_property(5, 9, "age", 40)
    assert remote.payload(1) == {"realmId": 5, "id": 9, "name": "age", "value": {"value": 40}}
    assert session.get_property(5, 9, "age") == 40
    assert remote.commands == ["get_property", "set_property", "get_property"]


def test_begin_transaction_suspends_caching_until_hook(session: RpcSession, remote: ScriptedRemote) -> None:
    """Inside a write transaction every read goes to the server."""
    remote.queue(
        {"result": {"value": None}},
        {"result": {"value": 1}},
        {"result": {"value": 2}},
    )
    session.call_method(5, 5, "beginTransaction")
    assert remote.payload(0) == {"realmId": 5, "id": 5, "name": "beginTransaction"}
    assert session.get_property(5, 9, "count") == 1
    assert session.get_property(5, 9, "count") == 2

    _fire_hook(remote, session, 5)
    remote.queue({"result": {"value": 3}})
    assert session.get_property(5, 9, "count") == 3
    assert session.get_property(5, 9, "count") == 3
    assert remote.commands.count("get_property") == 3


def test_disabled_cache_always_asks_the_server(remote: ScriptedRemote, timers: ManualTimerFactory) -> None:
    """``enable_cache=False`` turns off read caching."""
    with RpcSession(
        host=HOST,
        transport=remote.make_transport(),
        timer_factory=timers,
        enable_cache=False,
    ) as session:
        remote.queue({"result": {"value": 1}}, {"result": {"value": 2}})
        assert session.get_property(5, 9, "count") == 1
        assert session.get_property(5, 9, "count") == 2


def test_call_method_serializes_in_realm_context(session: RpcSession, remote: ScriptedRemote) -> None:
    """Remote arguments travel as handles and results are decoded."""
    remote.queue({"result": {"type": "object", "id": 12}})
    friend = RemoteObject(11, realm_id=5, remote_type="object")
    result: object = session.call_method(5, 9, "befriend", [friend, "close"])
    assert remote.payload(0) == {
        "realmId": 5,
        "id": 9,
        "name": "befriend",
        "arguments": [{"id": 11}, {"value": "close"}],
    }
    assert result == RemoteObject(12, realm_id=5, remote_type="object")
    assert result.realm_id == 5


def test_get_object_decodes_each_property(session: RpcSession, remote: ScriptedRemote) -> None:
    """Every property envelope is decoded in the object's realm."""
    remote.queue({"result": {"name": {"value": "Alice"}, "friend": {"type": "object", "id": 12}}})
    decoded: object = session.get_object(5, 9, "Person")
    assert decoded == {"name": "Alice", "friend": RemoteObject(12, realm_id=5, remote_type="object")}


def test_get_object_passes_empty_results_through(session: RpcSession, remote: ScriptedRemote) -> None:
    """A missing object is returned as the falsy result itself."""
    remote.queue({"result": None}, {"result": [1]})
    assert session.get_object(5, 9, "Person") is None
    with pytest.raises(RpcProtocolError):
        session.get_object(5, 9, "Person")


def test_user_commands_decode_results(session: RpcSession, remote: ScriptedRemote) -> None:
    """User lookups return proxies for remote users."""
    remote.queue(
        {"result": {"type": "user", "id": 4}},
        {"result": {"value": [{"type": "user", "id": 4}, {"type": "user", "id": 7}]}},
        {"result": {"value": None}},
        {"result": {"type": "user", "id": 2}},
    )
    assert session.create_user(["https://auth.test", "alice", "secret"]) == RemoteObject(4, remote_type="user")
    assert session.get_all_users() == [RemoteObject(4, remote_type="user"), RemoteObject(7, remote_type="user")]
    assert session.get_existing_user(["https://auth.test", "bob"]) is None
    assert session.admin_user(["admin-token"]) == RemoteObject(2, remote_type="user")
    assert remote.commands == ["create_user", "get_all_users", "_getExistingUser", "_adminUser"]
    assert remote.payload(0) == {
        "arguments": [{"value": "https://auth.test"}, {"value": "alice"}, {"value": "secret"}],
    }


def test_sync_commands_send_expected_payloads(session: RpcSession, remote: ScriptedRemote) -> None:
    """Sync helpers map onto their wire commands."""
    remote.queue({"result": None}, {"result": {"value": True}})
    session.reconnect()
    assert session.has_existing_sessions() is True
    session.initialize_sync_manager(["client-1"])
    assert remote.commands == ["reconnect", "_hasExistingSessions", "_initializeSyncManager"]
    assert remote.payload(0) == {"arguments": []}
    assert remote.payload(2) == {"arguments": [{"value": "client-1"}]}


def test_async_open_realm_attaches_hook_before_callback(session: RpcSession, remote: ScriptedRemote) -> None:
    """The opened realm gets the listener before user code sees it."""
    opened: list[tuple[object, object]] = []

    def on_opened(realm: object, error: object) -> None:
        """Record the open result.

        :param realm: Opened realm proxy.
        :param error: Open error, if any.
        """
        opened.append((realm, error))

    def deliver_open(command: str, payload: dict[str, object]) -> dict[str, object]:
        """Invoke the wrapped open callback from the server side.

        :param command: Received command.
        :param payload: Received payload.
        :returns: Callback request.
        """
        _ = command
        return {
            "callback": payload["arguments"][1]["value"],
            "this": {"value": None},
            "arguments": {"value": [{"type": "realm", "id": 5}, {"value": None}]},
            "callback_call_counter": 1,
        }

    remote.queue(deliver_open, {"result": {"value": None}}, {"result": None})
    session.async_open_realm(3, {"path": "synced.realm"}, on_opened)

    assert remote.commands == ["call_method", "call_method", "callback_result"]
    assert remote.payload(0)["id"] == 3
    assert remote.payload(0)["name"] == "_asyncOpen"
    assert remote.payload(1) == {
        "realmId": 5,
        "id": 5,
        "name": "addListener",
        "arguments": [{"value": "beforenotify"}, {"type": "function", "value": _hook_index(session)}],
    }
    assert remote.payload(2)["callback_call_counter"] == 1
    assert opened == [(RemoteObject(5, realm_id=5, remote_type="realm"), None)]


def test_closed_session_rejects_commands(session: RpcSession, remote: ScriptedRemote, timers: ManualTimerFactory) -> None:
    """Closing stops background polling and refuses further work."""
    session.get_all_users()
    assert len(timers.live) == 1

    session.close()
    session.close()
    assert session.is_closed is True
    assert timers.live == []
    with pytest.raises(RpcSessionError, match="Session is closed"):
        session.get_all_users()
    with pytest.raises(RpcSessionError):
        session.poll()
    assert remote.commands == ["get_all_users"]


def test_exit_handler_is_registered_once_and_removed_on_close(
    remote: ScriptedRemote,
    timers: ManualTimerFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Repeated session setup never piles up exit handlers."""
    registered: list[object] = []
    unregistered: list[object] = []
    monkeypatch.setattr("realm_rpc.session.atexit.register", registered.append)
    monkeypatch.setattr("realm_rpc.session.atexit.unregister", unregistered.append)

    session = RpcSession(transport=remote.make_transport(), timer_factory=timers)
    remote.queue({"result": "session-1"}, {"result": "session-2"})
    session.create_session(None, HOST)
    session.create_session(None, HOST)
    assert registered == [session.close]

    session.close()
    session.close()
    assert unregistered == [session.close]
