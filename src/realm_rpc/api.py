"""Module-level entrypoints bound to one process-wide session."""

import threading
from collections.abc import Callable
from collections.abc import Iterable

from realm_rpc.codec import TypeConverter
from realm_rpc.session import RpcSession

_DEFAULT_SESSION_LOCK: threading.Lock = threading.Lock()
_DEFAULT_SESSION: RpcSession | None = None


def get_default_session() -> RpcSession:
    """Return the process-wide session, creating it on first use.

    :returns: Shared session.
    """
    global _DEFAULT_SESSION
    with _DEFAULT_SESSION_LOCK:
        session: RpcSession | None = _DEFAULT_SESSION
        if session is None or session.is_closed is True:
            session = RpcSession()
            _DEFAULT_SESSION = session
        return session


def set_default_session(session: RpcSession | None) -> RpcSession | None:
    """Replace the process-wide session.

    :param session: New session, or ``None`` to create one lazily later.
    :returns: Previous session, left open.
    """
    global _DEFAULT_SESSION
    with _DEFAULT_SESSION_LOCK:
        previous: RpcSession | None = _DEFAULT_SESSION
        _DEFAULT_SESSION = session
        return previous


def reset_default_session() -> None:
    """Close and forget the process-wide session."""
    previous: RpcSession | None = set_default_session(None)
    if previous is not None:
        previous.close()


def register_type_converter(tag: str, converter: TypeConverter) -> None:
    """Register a converter for one wire type tag on the default session.

    :param tag: Wire type tag.
    :param converter: Function taking ``(realm_id, envelope)``.
    """
    get_default_session().register_type_converter(tag, converter)


def create_session(refresh_access_token: Callable[..., object] | None, host: str) -> object:
    """Establish the process-wide session.

    :param refresh_access_token: Persistent credential refresh callback.
    :param host: ``host[:port]`` of the RPC server.
    :returns: Session id issued by the server.
    """
    return get_default_session().create_session(refresh_access_token, host)


def create_realm(args: Iterable[object] | None = None) -> object:
    return get_default_session().create_realm(args)


def async_open_realm(realm_handle: object, config: object, callback: Callable[[object, object], object]) -> None:
    get_default_session().async_open_realm(realm_handle, config, callback)


def create_user(args: Iterable[object]) -> object:
    return get_default_session().create_user(args)


def admin_user(args: Iterable[object]) -> object:
    return get_default_session().admin_user(args)


def get_existing_user(args: Iterable[object]) -> object:
    return get_default_session().get_existing_user(args)


def reconnect() -> None:
    get_default_session().reconnect()


def initialize_sync_manager(args: Iterable[object]) -> None:
    get_default_session().initialize_sync_manager(args)


def has_existing_sessions() -> object:
    return get_default_session().has_existing_sessions()


def call_method(realm_id: object, object_id: object, name: str, args: Iterable[object] | None = None) -> object:
    return get_default_session().call_method(realm_id, object_id, name, args)


def get_object(realm_id: object, object_id: object, name: str) -> object:
    return get_default_session().get_object(realm_id, object_id, name)


def get_property(realm_id: object, object_id: object, name: str) -> object:
    return get_default_session().get_property(realm_id, object_id, name)


def set_property(realm_id: object, object_id: object, name: str, value: object) -> None:
    get_default_session().set_property(realm_id, object_id, name, value)


def get_all_users() -> object:
    return get_default_session().get_all_users()


def clear_test_state() -> None:
    get_default_session().clear_test_state()
