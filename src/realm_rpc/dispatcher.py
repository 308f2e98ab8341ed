"""Request/response dispatch loop with in-band callback execution."""

import enum
import json
import logging
import re
import threading
import traceback

from realm_rpc.callbacks import CallbackEntry
from realm_rpc.codec import Codec
from realm_rpc.codec import Envelope
from realm_rpc.codec import deserialize_json_value
from realm_rpc.errors import RealmRpcError
from realm_rpc.errors import RpcProtocolError
from realm_rpc.errors import RpcRemoteError
from realm_rpc.errors import RpcSessionError
from realm_rpc.errors import RpcTransportError
from realm_rpc.poller import POLL_COMMAND
from realm_rpc.poller import PollScheduler
from realm_rpc.transport import Transport
from realm_rpc.transport import build_url

logger = logging.getLogger(__name__)

CALLBACK_RESULT_COMMAND: str = "callback_result"
CALLBACK_POLL_RESULT_COMMAND: str = "callback_poll_result"
MISSING_HOST_MESSAGE: str = "Must first create RPC session with a valid host"
_ERROR_TYPE_PREFIX: re.Pattern[str] = re.compile(r"^[a-z]+: ", re.IGNORECASE)


class DispatchState(enum.Enum):
    """Position of the dispatcher in one call/response exchange."""

    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    CALLBACK_REQUESTED = "callback_requested"
    RESULT = "result"
    PROTOCOL_ERROR = "protocol_error"


def strip_error_prefix(message: str) -> str:
    """Remove a leading ``"<Word>: "`` type prefix from an error message.

    :param message: Raw error text, e.g. ``"Error: boom"``.
    :returns: Message without the prefix, e.g. ``"boom"``.
    """
    return _ERROR_TYPE_PREFIX.sub("", message, count=1)


def follow_up_command(command: str) -> str:
    """Choose the command that carries a callback outcome back to the remote.

    :param command: Command whose response requested the callback.
    :returns: ``callback_poll_result`` for poll-driven chains, else ``callback_result``.
    """
    is_poll_chain: bool = command == POLL_COMMAND or command == CALLBACK_POLL_RESULT_COMMAND
    if is_poll_chain is True:
        return CALLBACK_POLL_RESULT_COMMAND
    return CALLBACK_RESULT_COMMAND


def build_remote_error(command: str, response: dict[str, object], error: object) -> RpcRemoteError:
    """Rebuild the local exception for an error response.

    :param command: Command the error responds to.
    :param response: Full response object.
    :param error: Value of the response ``error`` field.
    :returns: Exception to raise.
    """
    generic_message: str = f'Invalid response for "{command}"'
    if isinstance(error, str) is True:
        return RpcRemoteError(strip_error_prefix(error))

    is_dict_error: bool = isinstance(error, dict) is True and error.get("type") == "dict"
    if is_dict_error is True:
        fields: dict[str, object] = deserialize_json_value(error)
        message_obj: object = response.get("message")
        message: str = generic_message
        if isinstance(message_obj, str) is True and len(message_obj) > 0:
            message = strip_error_prefix(message_obj)
        return RpcRemoteError(message, fields)

    return RpcRemoteError(generic_message)


class RequestDispatcher:
    """Run blocking call/response cycles against the RPC server.

    A response may ask for a local callback instead of returning a result.
    The dispatcher runs the callback, reports its outcome in a follow-up
    request and keeps going until a result or an error arrives. Requests
    never overlap: the background poll is cancelled before each request and
    re-armed once the outermost exchange is over.
    """

    _transport: Transport
    _codec: Codec
    _scheduler: PollScheduler
    _host: str | None
    _session_id: object
    _state: DispatchState
    _lock: threading.RLock

    def __init__(
        self,
        transport: Transport,
        codec: Codec,
        scheduler: PollScheduler,
        host: str | None = None,
    ) -> None:
        """Initialize a dispatcher.

        :param transport: Blocking POST primitive.
        :param codec: Envelope codec bound to the callback registry.
        :param scheduler: Background poll scheduler.
        :param host: Optional default host.
        """
        self._transport = transport
        self._codec = codec
        self._scheduler = scheduler
        self._host = host
        self._session_id = None
        self._state = DispatchState.IDLE
        self._lock = threading.RLock()

    @property
    def host(self) -> str | None:
        return self._host

    @host.setter
    def host(self, value: str | None) -> None:
        with self._lock:
            self._host = value

    @property
    def session_id(self) -> object:
        return self._session_id

    @session_id.setter
    def session_id(self, value: object) -> None:
        with self._lock:
            self._session_id = value

    @property
    def state(self) -> DispatchState:
        """Return the state of the exchange in progress.

        :returns: ``DispatchState.IDLE`` when no exchange is running.
        """
        return self._state

    @property
    def lock(self) -> threading.RLock:
        """Return the lock serializing every exchange.

        :returns: Re-entrant dispatch lock.
        """
        return self._lock

    def call(self, command: str, data: dict[str, object] | None = None, host: str | None = None) -> object:
        """Send one command and wait for its terminal result.

        :param command: Command name.
        :param data: JSON-compatible payload.
        :param host: Host overriding the session-bound one.
        :returns: Raw ``result`` field of the terminal response.
        :raises RpcSessionError: If no host is available.
        :raises RpcTransportError: If the transport fails.
        :raises RpcRemoteError: If the remote reports an error.
        """
        with self._lock:
            previous_state: DispatchState = self._state
            self._scheduler.cancel()
            try:
                return self._exchange(command, data, host)
            finally:
                self._state = previous_state
                self._scheduler.arm(self._poll_in_background)

    def poll(self) -> object:
        """Ask the remote for pending callbacks.

        :returns: Raw ``result`` field of the terminal response.
        """
        return self.call(POLL_COMMAND)

    def _exchange(self, command: str, data: dict[str, object] | None, host: str | None) -> object:
        resolved_host: str | None = host
        if resolved_host is None:
            resolved_host = self._host
        if resolved_host is None or len(resolved_host) == 0:
            self._state = DispatchState.PROTOCOL_ERROR
            raise RpcSessionError(MISSING_HOST_MESSAGE)

        current_command: str = command
        current_data: dict[str, object] = {}
        if data is not None:
            current_data = dict(data)

        while True:
            self._scheduler.cancel()
            self._state = DispatchState.AWAITING_RESPONSE
            response: object
            try:
                response = self._send(resolved_host, current_command, current_data)
            except (RpcProtocolError, RpcTransportError):
                self._scheduler.record_cycle(current_command, had_callback=False)
                raise

            callback: object = None
            if isinstance(response, dict) is True:
                callback = response.get("callback")
            has_callback: bool = callback is not None
            self._scheduler.record_cycle(current_command, has_callback)

            if response is None:
                self._state = DispatchState.PROTOCOL_ERROR
                raise RpcRemoteError(f'Invalid response for "{current_command}"')
            if isinstance(response, dict) is False:
                self._state = DispatchState.PROTOCOL_ERROR
                raise RpcProtocolError(f'Response for "{current_command}" must be a JSON object')

            error: object = response.get("error")
            if error:
                self._state = DispatchState.PROTOCOL_ERROR
                raise build_remote_error(current_command, response, error)

            if has_callback is False:
                self._state = DispatchState.RESULT
                return response.get("result")

            self._state = DispatchState.CALLBACK_REQUESTED
            realm_id: object = current_data.get("realmId")
            outcome: dict[str, object] = self._run_callback(callback, response, realm_id)
            current_command = follow_up_command(current_command)
            current_data = outcome

    def _send(self, host: str, command: str, data: dict[str, object]) -> object:
        payload: dict[str, object] = dict(data)
        if self._session_id:
            payload["sessionId"] = self._session_id
        url: str = build_url(host, command)
        logger.debug("Sending %s to %s", command, host)
        return self._transport.post(url, payload)

    def _run_callback(self, callback: object, response: dict[str, object], realm_id: object) -> dict[str, object]:
        outcome: dict[str, object] = {"callback": callback}
        try:
            this_envelope: object = response.get("this", {})
            arguments_envelope: object = response.get("arguments", {"value": []})
            receiver: object = self._codec.deserialize(realm_id, this_envelope)
            decoded_args: object = self._codec.deserialize(realm_id, arguments_envelope)
            args: list[object]
            if decoded_args is None:
                args = []
            elif isinstance(decoded_args, list) is True:
                args = decoded_args
            else:
                args = [decoded_args]

            entry: CallbackEntry | None = self._codec.callbacks.resolve(callback)
            if entry is None:
                logger.warning("Remote requested unknown callback id %r", callback)
                outcome["error"] = f"Unknown callback id: {callback}"
            else:
                logger.debug("Invoking callback %d with %d arguments", entry.index, len(args))
                returned: object = entry.invoke(receiver, args)
                result_envelope: Envelope = self._codec.serialize(realm_id, returned)
                outcome["result"] = result_envelope
        except Exception as exc:
            logger.warning("Callback %r raised %s; reporting to remote", callback, type(exc).__name__)
            message: str = str(exc)
            if len(message) == 0:
                message = type(exc).__name__
            outcome["error"] = message
            outcome["stack"] = json.dumps(traceback.format_exc())

        has_counter: bool = "callback_call_counter" in response
        if has_counter is True:
            outcome["callback_call_counter"] = response["callback_call_counter"]
        return outcome

    def _poll_in_background(self, generation: int) -> None:
        with self._lock:
            is_current: bool = self._scheduler.claim(generation)
            if is_current is False:
                return
            if self._host is None:
                logger.debug("Skipping callback poll; no session host bound")
                return
            try:
                self.poll()
            except RealmRpcError:
                logger.exception("Background callback poll failed")
