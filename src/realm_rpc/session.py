"""RPC session: identity, command surface and read-isolation hook."""

import atexit
import logging
import threading
from collections.abc import Callable
from collections.abc import Iterable

from realm_rpc.cache import ReadCache
from realm_rpc.callbacks import CallbackRegistry
from realm_rpc.codec import Codec
from realm_rpc.codec import Envelope
from realm_rpc.codec import TypeConverter
from realm_rpc.codec import realm_handle_of
from realm_rpc.codec import remote_handle_of
from realm_rpc.dispatcher import DispatchState
from realm_rpc.dispatcher import RequestDispatcher
from realm_rpc.errors import RpcProtocolError
from realm_rpc.errors import RpcSessionError
from realm_rpc.poller import POLL_TIMEOUT_CEILING_MS
from realm_rpc.poller import POLL_TIMEOUT_FLOOR_MS
from realm_rpc.poller import PollScheduler
from realm_rpc.poller import TimerFactory
from realm_rpc.transport import HttpTransport
from realm_rpc.transport import Transport

logger = logging.getLogger(__name__)

BEFORE_NOTIFY_EVENT: str = "beforenotify"
BEGIN_TRANSACTION_METHOD: str = "beginTransaction"


class RpcSession:
    """Own one connection to an RPC server and every piece of shared state.

    The session holds the host and session id, the callback registry, the
    codec, the poll scheduler, the dispatcher and the property read cache.
    Every command method serializes its arguments, dispatches one blocking
    exchange and decodes the result.
    """

    _callbacks: CallbackRegistry
    _codec: Codec
    _scheduler: PollScheduler
    _transport: Transport
    _owns_transport: bool
    _dispatcher: RequestDispatcher
    _cache: ReadCache
    _before_notify_hook: Callable[..., None]
    _is_closed: bool
    _close_lock: threading.Lock

    def __init__(
        self,
        host: str | None = None,
        transport: Transport | None = None,
        timeout: float | None = None,
        poll_floor_ms: int = POLL_TIMEOUT_FLOOR_MS,
        poll_ceiling_ms: int = POLL_TIMEOUT_CEILING_MS,
        timer_factory: TimerFactory | None = None,
        enable_cache: bool = True,
    ) -> None:
        """Initialize a session without contacting the server.

        :param host: Optional default ``host[:port]``; ``create_session`` binds one otherwise.
        :param transport: Optional transport; an ``HttpTransport`` is created otherwise.
        :param timeout: Request timeout in seconds for the default transport.
        :param poll_floor_ms: Shortest background poll delay.
        :param poll_ceiling_ms: Longest background poll delay.
        :param timer_factory: Optional timer factory for the poll scheduler.
        :param enable_cache: Cache property reads between snapshot advances.
        """
        self._callbacks = CallbackRegistry()
        self._codec = Codec(self._callbacks)
        self._codec.register_remote_types()
        self._scheduler = PollScheduler(
            floor_ms=poll_floor_ms,
            ceiling_ms=poll_ceiling_ms,
            timer_factory=timer_factory,
        )
        if transport is None:
            self._transport = HttpTransport(timeout=timeout)
            self._owns_transport = True
        else:
            self._transport = transport
            self._owns_transport = False
        self._dispatcher = RequestDispatcher(self._transport, self._codec, self._scheduler, host=host)
        self._cache = ReadCache(enabled=enable_cache)
        self._before_notify_hook = self._make_before_notify_hook()
        self._callbacks.register(self._before_notify_hook, persistent=True, pass_receiver=True)
        self._is_closed = False
        self._close_lock = threading.Lock()
        atexit.register(self.close)

    def _make_before_notify_hook(self) -> Callable[..., None]:
        cache: ReadCache = self._cache

        def before_notify(receiver: object, *args: object) -> None:
            # The server holds auto-refresh until this listener has run.
            realm: object = receiver
            if len(args) > 0:
                realm = args[0]
            realm_id: object = realm_handle_of(realm)
            cache.invalidate(realm_id)
            cache.resume(realm_id)

        return before_notify

    @property
    def host(self) -> str | None:
        return self._dispatcher.host

    @property
    def session_id(self) -> object:
        return self._dispatcher.session_id

    @property
    def poll_timeout_ms(self) -> int:
        """Return the current background poll delay.

        :returns: Delay in milliseconds.
        """
        return self._scheduler.poll_timeout_ms

    @property
    def state(self) -> DispatchState:
        return self._dispatcher.state

    @property
    def callbacks(self) -> CallbackRegistry:
        return self._callbacks

    @property
    def codec(self) -> Codec:
        return self._codec

    @property
    def dispatcher(self) -> RequestDispatcher:
        return self._dispatcher

    @property
    def scheduler(self) -> PollScheduler:
        return self._scheduler

    @property
    def cache(self) -> ReadCache:
        return self._cache

    @property
    def before_notify_hook(self) -> Callable[..., None]:
        """Return the read-isolation listener sent with every realm.

        :returns: The same callable for the lifetime of the session.
        """
        return self._before_notify_hook

    @property
    def is_closed(self) -> bool:
        return self._is_closed

    def _require_open(self) -> None:
        if self._is_closed is True:
            raise RpcSessionError("Session is closed")

    def _call(self, command: str, data: dict[str, object] | None = None, host: str | None = None) -> object:
        self._require_open()
        return self._dispatcher.call(command, data, host=host)

    def _serialize_args(self, realm_id: object, args: Iterable[object] | None) -> list[Envelope] | None:
        return self._codec.serialize_args(realm_id, args)

    def serialize(self, realm_id: object, value: object) -> Envelope:
        """Encode one value in the context of a realm.

        :param realm_id: Realm handle, or ``None``.
        :param value: Native value.
        :returns: Wire envelope.
        """
        return self._codec.serialize(realm_id, value)

    def deserialize(self, realm_id: object, envelope: object) -> object:
        """Decode one envelope in the context of a realm.

        :param realm_id: Realm handle, or ``None``.
        :param envelope: Wire envelope.
        :returns: Native value.
        """
        return self._codec.deserialize(realm_id, envelope)

    def register_type_converter(self, tag: str, converter: TypeConverter) -> None:
        """Register a converter for one wire type tag.

        :param tag: Wire type tag.
        :param converter: Function taking ``(realm_id, envelope)``.
        """
        self._codec.register_type_converter(tag, converter)

    def create_session(self, refresh_access_token: Callable[..., object] | None, host: str) -> object:
        """Establish the session and bind it to ``host``.

        :param refresh_access_token: Callback the server invokes to refresh credentials.
            It is registered as a persistent callback.
        :param host: ``host[:port]`` of the RPC server.
        :returns: Session id issued by the server.
        """
        if refresh_access_token is not None:
            self._callbacks.register(refresh_access_token, persistent=True)
        token_envelope: Envelope = self._codec.serialize(None, refresh_access_token)
        session_id: object = self._call(
            "create_session",
            {"refreshAccessToken": token_envelope},
            host=host,
        )
        self._dispatcher.session_id = session_id
        self._dispatcher.host = host
        logger.debug("Created RPC session %r on %s", session_id, host)
        return session_id

    def create_realm(self, args: Iterable[object] | None = None) -> object:
        """Open a realm on the server with the read-isolation hook attached.

        :param args: Constructor arguments, typically one configuration dict.
        :returns: Raw result, the remote realm handle.
        """
        data: dict[str, object] = {"beforeNotify": self._codec.serialize(None, self._before_notify_hook)}
        serialized: list[Envelope] | None = self._serialize_args(None, args)
        if serialized is not None:
            data["arguments"] = serialized
        return self._call("create_realm", data)

    def async_open_realm(
        self,
        realm_handle: object,
        config: object,
        callback: Callable[[object, object], object],
    ) -> None:
        """Start an asynchronous realm open on the server.

        The opened realm gets the read-isolation hook as a ``beforenotify``
        listener before ``callback`` sees it.

        :param realm_handle: Remote handle of the realm constructor.
        :param config: Realm configuration.
        :param callback: Called with ``(realm, error)`` when the open finishes.
        """

        def on_open(realm: object = None, error: object = None) -> object:
            if realm:
                self.call_method(
                    realm_handle_of(realm),
                    remote_handle_of(realm),
                    "addListener",
                    [BEFORE_NOTIFY_EVENT, self._before_notify_hook],
                )
            return callback(realm, error)

        self._call(
            "call_method",
            {
                "id": realm_handle,
                "name": "_asyncOpen",
                "arguments": [
                    self._codec.serialize(None, config),
                    self._codec.serialize(None, on_open),
                ],
            },
        )

    def _call_with_args(self, command: str, args: Iterable[object] | None) -> object:
        serialized: list[Envelope] | None = self._serialize_args(None, args)
        result: object = self._call(command, {"arguments": serialized})
        return self._codec.deserialize(None, result)

    def create_user(self, args: Iterable[object]) -> object:
        """Create or log in a user on the server.

        :param args: Credential arguments.
        :returns: Decoded user.
        """
        return self._call_with_args("create_user", args)

    def admin_user(self, args: Iterable[object]) -> object:
        """Create an admin user from a token.

        :param args: Admin token arguments.
        :returns: Decoded user.
        """
        return self._call_with_args("_adminUser", args)

    def get_existing_user(self, args: Iterable[object]) -> object:
        """Look up a user that is already logged in.

        :param args: Lookup arguments.
        :returns: Decoded user, or ``None``.
        """
        return self._call_with_args("_getExistingUser", args)

    def reconnect(self) -> None:
        """Ask the server to reconnect every sync session."""
        self._call("reconnect", {"arguments": []})

    def initialize_sync_manager(self, args: Iterable[object]) -> None:
        """Initialize the server-side sync manager.

        :param args: Initialization arguments.
        """
        self._call("_initializeSyncManager", {"arguments": self._serialize_args(None, args)})

    def has_existing_sessions(self) -> object:
        """Report whether the server holds any sync sessions.

        :returns: Decoded flag.
        """
        result: object = self._call("_hasExistingSessions", {"arguments": []})
        return self._codec.deserialize(None, result)

    def call_method(
        self,
        realm_id: object,
        object_id: object,
        name: str,
        args: Iterable[object] | None = None,
    ) -> object:
        """Call a method on a remote object.

        :param realm_id: Realm handle the object belongs to.
        :param object_id: Remote object handle.
        :param name: Method name.
        :param args: Positional arguments.
        :returns: Decoded return value.
        """
        if name == BEGIN_TRANSACTION_METHOD:
            self._cache.suspend(realm_id)
        else:
            self._cache.invalidate(realm_id)
        data: dict[str, object] = {"realmId": realm_id, "id": object_id, "name": name}
        serialized: list[Envelope] | None = self._serialize_args(realm_id, args)
        if serialized is not None:
            data["arguments"] = serialized
        result: object = self._call("call_method", data)
        return self._codec.deserialize(realm_id, result)

    def get_object(self, realm_id: object, object_id: object, name: str) -> object:
        """Fetch a remote object's properties in one request.

        :param realm_id: Realm handle.
        :param object_id: Remote object handle.
        :param name: Object type name.
        :returns: Mapping of decoded property values, or the falsy result unchanged.
        :raises RpcProtocolError: If a non-empty result is not a JSON object.
        """
        result: object = self._call("get_object", {"realmId": realm_id, "id": object_id, "name": name})
        if not result:
            return result
        if isinstance(result, dict) is False:
            raise RpcProtocolError("get_object result must be a JSON object")
        decoded: dict[str, object] = {}
        for key, envelope in result.items():
            decoded[key] = self._codec.deserialize(realm_id, envelope)
        return decoded

    def get_property(self, realm_id: object, object_id: object, name: str) -> object:
        """Read one property of a remote object.

        :param realm_id: Realm handle.
        :param object_id: Remote object handle.
        :param name: Property name.
        :returns: Decoded property value.
        """
        hit, cached = self._cache.lookup(realm_id, object_id, name)
        if hit is True:
            return cached
        result: object = self._call("get_property", {"realmId": realm_id, "id": object_id, "name": name})
        value: object = self._codec.deserialize(realm_id, result)
        self._cache.store(realm_id, object_id, name, value)
        return value

    def set_property(self, realm_id: object, object_id: object, name: str, value: object) -> None:
        """Write one property of a remote object.

        :param realm_id: Realm handle.
        :param object_id: Remote object handle.
        :param name: Property name.
        :param value: New value.
        """
        envelope: Envelope = self._codec.serialize(realm_id, value)
        self._cache.invalidate(realm_id)
        self._call(
            "set_property",
            {"realmId": realm_id, "id": object_id, "name": name, "value": envelope},
        )

    def get_all_users(self) -> object:
        """Return every user known to the server.

        :returns: Decoded users.
        """
        result: object = self._call("get_all_users")
        return self._codec.deserialize(None, result)

    def clear_test_state(self) -> None:
        """Reset server test state and drop session-scoped callbacks."""
        self._call("clear_test_state")
        self._callbacks.clear()
        self._cache.clear()

    def poll(self) -> object:
        """Drain pending server-initiated callbacks now.

        :returns: Raw result of the poll.
        """
        self._require_open()
        return self._dispatcher.poll()

    def close(self) -> None:
        """Stop background polling and release the transport."""
        with self._close_lock:
            if self._is_closed is True:
                return
            self._is_closed = True
        atexit.unregister(self.close)
        with self._dispatcher.lock:
            self._scheduler.cancel()
        if self._owns_transport is True:
            self._transport.close()

    def __enter__(self) -> "RpcSession":
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()
