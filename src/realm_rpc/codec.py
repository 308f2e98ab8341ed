"""Envelope codec for values crossing the RPC boundary."""

import base64
import datetime
import enum
from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Mapping
from typing import Any

from realm_rpc.callbacks import CallbackRegistry
from realm_rpc.errors import RpcProtocolError
from realm_rpc.errors import UnsupportedValueError

REMOTE_ID_ATTR: str = "_rpc_id"
REMOTE_REALM_ATTR: str = "_rpc_realm_id"
Envelope = dict[str, Any]
TypeConverter = Callable[[object, Envelope], object]
_EPOCH: datetime.datetime = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


class EnvelopeType(str, enum.Enum):
    """Closed set of wire type tags understood by the codec itself."""

    UNDEFINED = "undefined"
    FUNCTION = "function"
    DATE = "date"
    BINARY = "binary"
    DICT = "dict"


REMOTE_OBJECT_TYPES: tuple[str, ...] = ("object", "list", "results", "realm", "user", "session")


class _Undefined:
    """Singleton standing in for a remote ``undefined``."""

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "UNDEFINED"


UNDEFINED: _Undefined = _Undefined()


class RemoteObject:
    """Local proxy for state owned by the remote process.

    The proxy owns nothing but the handle. It serializes back to
    ``{"id": handle}`` so the remote resolves it on its side.
    """

    _rpc_id: object
    _rpc_realm_id: object
    _rpc_type: str | None

    def __init__(self, remote_id: object, realm_id: object = None, remote_type: str | None = None) -> None:
        """Initialize a remote proxy.

        :param remote_id: Opaque remote handle.
        :param realm_id: Handle of the realm that owns this object.
        :param remote_type: Wire type tag the remote reported.
        """
        self._rpc_id = remote_id
        self._rpc_realm_id = realm_id
        self._rpc_type = remote_type

    @property
    def remote_id(self) -> object:
        """Return the opaque remote handle.

        :returns: Remote handle.
        """
        return self._rpc_id

    @property
    def realm_id(self) -> object:
        """Return the owning realm handle.

        :returns: Realm handle, or ``None`` when unknown.
        """
        return self._rpc_realm_id

    @property
    def remote_type(self) -> str | None:
        """Return the remote type tag.

        :returns: Type tag, or ``None`` when untyped.
        """
        return self._rpc_type

    def __eq__(self, other: object) -> bool:
        if isinstance(other, RemoteObject) is False:
            return NotImplemented
        return self._rpc_id == other._rpc_id and self._rpc_type == other._rpc_type

    def __hash__(self) -> int:
        return hash((self._rpc_id, self._rpc_type))

    def __repr__(self) -> str:
        return f"RemoteObject(type={self._rpc_type!r}, id={self._rpc_id!r}, realm_id={self._rpc_realm_id!r})"


def remote_handle_of(value: object) -> object:
    """Return the remote handle carried by ``value``.

    :param value: Candidate object.
    :returns: Remote handle, or ``None`` when ``value`` is not a remote reference.
    """
    return getattr(value, REMOTE_ID_ATTR, None)


def realm_handle_of(value: object) -> object:
    """Return the realm handle carried by ``value``.

    A realm proxy is its own realm, so its remote handle is used when no
    separate realm handle is set.

    :param value: Candidate object.
    :returns: Realm handle, or ``None``.
    """
    realm_id: object = getattr(value, REMOTE_REALM_ATTR, None)
    if realm_id is not None:
        return realm_id
    return remote_handle_of(value)


def _is_callback_candidate(value: object) -> bool:
    if isinstance(value, type) is True:
        return False
    if remote_handle_of(value) is not None:
        return False
    return callable(value)


def _to_epoch_millis(value: datetime.date) -> int | float:
    if isinstance(value, datetime.datetime) is False:
        raise UnsupportedValueError("Calendar dates cannot be sent; use a timezone-aware datetime")
    if value.utcoffset() is None:
        raise UnsupportedValueError("Naive datetimes cannot be sent; attach a tzinfo")
    delta: datetime.timedelta = value - _EPOCH
    millis: int = (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000
    remainder: int = delta.microseconds % 1000
    if remainder == 0:
        return millis
    return millis + remainder / 1000


def _from_epoch_millis(value: object) -> datetime.datetime:
    if isinstance(value, bool) is True or isinstance(value, (int, float)) is False:
        raise RpcProtocolError("date envelope value must be a number")
    try:
        return _EPOCH + datetime.timedelta(milliseconds=value)
    except (OverflowError, ValueError) as exc:
        raise RpcProtocolError(f"date envelope value {value!r} is out of range") from exc


def _require_envelope(envelope: object) -> Envelope:
    if isinstance(envelope, dict) is False:
        raise RpcProtocolError(f"Envelope must be a JSON object, got {type(envelope).__name__}")
    return envelope


def _require_dict_entries(info: Envelope) -> tuple[list[str], list[object]]:
    keys: object = info.get("keys", [])
    values: object = info.get("values", [])
    if isinstance(keys, list) is False or isinstance(values, list) is False:
        raise RpcProtocolError("dict envelope keys and values must be lists")
    if len(keys) != len(values):
        raise RpcProtocolError("dict envelope keys and values must have the same length")
    for key in keys:
        if isinstance(key, str) is False:
            raise RpcProtocolError(f"dict envelope keys must be strings, got {type(key).__name__}")
    return keys, values


class TypeConverterTable:
    """Mapping from wire type tag to deserialization function."""

    _converters: dict[str, TypeConverter]

    def __init__(self) -> None:
        """Initialize an empty table."""
        self._converters = {}

    def register(self, tag: str, converter: TypeConverter) -> None:
        """Register or replace the converter for ``tag``.

        :param tag: Wire type tag.
        :param converter: Function taking ``(realm_id, envelope)``.
        """
        self._converters[str(tag)] = converter

    def unregister(self, tag: str) -> None:
        """Remove the converter for ``tag`` if present.

        :param tag: Wire type tag.
        """
        self._converters.pop(str(tag), None)

    def get(self, tag: object) -> TypeConverter | None:
        """Return the converter for ``tag``.

        :param tag: Wire type tag.
        :returns: Converter, or ``None`` when unregistered.
        """
        if isinstance(tag, str) is False:
            return None
        return self._converters.get(tag)

    def __contains__(self, tag: object) -> bool:
        return self.get(tag) is not None


class Codec:
    """Convert native values to and from tagged wire envelopes."""

    _callbacks: CallbackRegistry
    _converters: TypeConverterTable

    def __init__(self, callbacks: CallbackRegistry, converters: TypeConverterTable | None = None) -> None:
        """Initialize a codec bound to one callback registry.

        :param callbacks: Registry used for function envelopes.
        :param converters: Optional converter table; a fresh one is created otherwise.
        """
        self._callbacks = callbacks
        if converters is None:
            self._converters = TypeConverterTable()
        else:
            self._converters = converters
        self._converters.register(EnvelopeType.BINARY.value, self._deserialize_binary)
        self._converters.register(EnvelopeType.DATE.value, self._deserialize_date)
        self._converters.register(EnvelopeType.DICT.value, self._deserialize_dict)
        self._converters.register(EnvelopeType.FUNCTION.value, self._deserialize_function)
        self._converters.register(EnvelopeType.UNDEFINED.value, self._deserialize_undefined)

    @property
    def callbacks(self) -> CallbackRegistry:
        """Return the callback registry used by this codec.

        :returns: Callback registry.
        """
        return self._callbacks

    @property
    def converters(self) -> TypeConverterTable:
        """Return the converter table used by this codec.

        :returns: Converter table.
        """
        return self._converters

    def register_type_converter(self, tag: str, converter: TypeConverter) -> None:
        """Register a converter for a wire type tag.

        :param tag: Wire type tag.
        :param converter: Function taking ``(realm_id, envelope)``.
        """
        self._converters.register(tag, converter)

    def register_remote_types(self, tags: Iterable[str] = REMOTE_OBJECT_TYPES) -> None:
        """Decode envelopes with the given tags into ``RemoteObject`` proxies.

        :param tags: Wire type tags naming remote-owned objects.
        """
        for tag in tags:
            self._converters.register(tag, _deserialize_remote_object)

    def serialize(self, realm_id: object, value: object) -> Envelope:
        """Encode one native value.

        :param realm_id: Realm handle the value is sent in the context of.
        :param value: Native value.
        :returns: Wire envelope.
        :raises UnsupportedValueError: If the value has no wire representation.
        """
        if value is UNDEFINED:
            return {"type": EnvelopeType.UNDEFINED.value}

        is_callback: bool = _is_callback_candidate(value)
        if is_callback is True:
            index: int = self._callbacks.register(value)
            return {"type": EnvelopeType.FUNCTION.value, "value": index}

        if value is None or isinstance(value, (bool, int, float, str)) is True:
            return {"value": value}

        remote_id: object = remote_handle_of(value)
        if remote_id is not None:
            return {"id": remote_id}

        if isinstance(value, datetime.date) is True:
            return {"type": EnvelopeType.DATE.value, "value": _to_epoch_millis(value)}

        if isinstance(value, (bytes, bytearray, memoryview)) is True:
            encoded: str = base64.b64encode(bytes(value)).decode("ascii")
            return {"type": EnvelopeType.BINARY.value, "value": encoded}

        if isinstance(value, (list, tuple)) is True:
            return {"value": [self.serialize(realm_id, item) for item in value]}

        if isinstance(value, Mapping) is True:
            keys: list[str] = []
            values: list[Envelope] = []
            for key, item in value.items():
                if isinstance(key, str) is False:
                    raise UnsupportedValueError(f"Dictionary keys must be strings, got {type(key).__name__}")
                keys.append(key)
                values.append(self.serialize(realm_id, item))
            return {"type": EnvelopeType.DICT.value, "keys": keys, "values": values}

        raise UnsupportedValueError(f"Cannot serialize value of type {type(value).__name__}")

    def serialize_args(self, realm_id: object, args: Iterable[object] | None) -> list[Envelope] | None:
        """Encode a positional argument list.

        :param realm_id: Realm handle for the call.
        :param args: Arguments, or ``None``.
        :returns: Encoded list, or ``None`` when ``args`` is ``None``.
        """
        if args is None:
            return None
        return [self.serialize(realm_id, item) for item in args]

    def deserialize(self, realm_id: object, envelope: object) -> object:
        """Decode one wire envelope.

        :param realm_id: Realm handle the value was received in the context of.
        :param envelope: Wire envelope.
        :returns: Native value.
        :raises RpcProtocolError: If the envelope is not a JSON object.
        """
        info: Envelope = _require_envelope(envelope)
        converter: TypeConverter | None = self._converters.get(info.get("type"))
        if converter is not None:
            return converter(realm_id, info)

        value: object = info.get("value")
        if isinstance(value, list) is True:
            return [self.deserialize(realm_id, item) for item in value]
        return value

    def _deserialize_binary(self, realm_id: object, info: Envelope) -> bytes:
        _ = realm_id
        value: object = info.get("value")
        if isinstance(value, str) is False:
            raise RpcProtocolError("binary envelope value must be base64 text")
        return base64.b64decode(value)

    def _deserialize_date(self, realm_id: object, info: Envelope) -> datetime.datetime:
        _ = realm_id
        return _from_epoch_millis(info.get("value"))

    def _deserialize_dict(self, realm_id: object, info: Envelope) -> dict[str, object]:
        keys, values = _require_dict_entries(info)
        result: dict[str, object] = {}
        for key, item in zip(keys, values):
            result[key] = self.deserialize(realm_id, item)
        return result

    def _deserialize_function(self, realm_id: object, info: Envelope) -> object:
        _ = realm_id
        return self._callbacks.resolve_function(info.get("value"))

    def _deserialize_undefined(self, realm_id: object, info: Envelope) -> object:
        _ = realm_id
        _ = info
        return UNDEFINED


def _deserialize_remote_object(realm_id: object, info: Envelope) -> RemoteObject:
    remote_type: object = info.get("type")
    remote_id: object = info.get("id")
    if remote_id is None:
        raise RpcProtocolError(f"{remote_type} envelope is missing its id")
    owner: object = realm_id
    if remote_type == "realm":
        owner = remote_id
    return RemoteObject(remote_id, realm_id=owner, remote_type=str(remote_type))


def deserialize_json_value(envelope: object) -> dict[str, object]:
    """Flatten a ``dict`` envelope of plain values into a dictionary.

    Only nested ``dict`` envelopes are recursed into; every other entry
    contributes its raw ``value``. Used to rebuild structured remote errors.

    :param envelope: ``dict`` envelope.
    :returns: Plain dictionary.
    :raises RpcProtocolError: If the envelope shape is invalid.
    """
    info: Envelope = _require_envelope(envelope)
    keys, values = _require_dict_entries(info)
    result: dict[str, object] = {}
    for key, item in zip(keys, values):
        entry: Envelope = _require_envelope(item)
        is_nested_dict: bool = entry.get("type") == EnvelopeType.DICT.value
        if is_nested_dict is True:
            result[key] = deserialize_json_value(entry)
        else:
            result[key] = entry.get("value")
    return result
