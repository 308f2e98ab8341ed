"""Custom error types for realm-rpc."""


class RealmRpcError(Exception):
    """Base class for all realm-rpc errors."""


class RpcTransportError(RealmRpcError):
    """Raised when the HTTP transport fails or returns a non-success status."""

    status_code: int | None
    body: str

    def __init__(self, status_code: int | None, body: str) -> None:
        """Initialize a transport failure.

        :param status_code: HTTP status code, or ``None`` when no response arrived.
        :param body: Raw response body or client failure description.
        """
        self.status_code = status_code
        self.body = body
        super().__init__(body)


class RpcSessionError(RealmRpcError):
    """Raised when a command is issued without a resolvable host."""


class RpcProtocolError(RealmRpcError):
    """Raised for malformed responses or envelopes on the RPC channel."""


_RESERVED_FIELD_NAMES: frozenset[str] = frozenset({"message", "fields"})


def _is_settable_field(key: object) -> bool:
    if isinstance(key, str) is False or key.isidentifier() is False:
        return False
    if key.startswith("__") is True or key in _RESERVED_FIELD_NAMES:
        return False
    return hasattr(RpcRemoteError, key) is False


class RpcRemoteError(RealmRpcError):
    """Raised when the remote process reports an error for a command."""

    message: str
    fields: dict[str, object]

    def __init__(self, message: str, fields: dict[str, object] | None = None) -> None:
        """Initialize a remote error.

        Extra fields reported alongside the message are copied onto the
        error as attributes. Names that are not plain identifiers, dunder
        names and names the exception type already defines stay in
        ``fields`` only.

        :param message: Normalized error message.
        :param fields: Additional structured fields reported by the remote.
        """
        self.message = message
        if fields is None:
            self.fields = {}
        else:
            self.fields = dict(fields)
        for key, value in self.fields.items():
            if _is_settable_field(key) is False:
                continue
            setattr(self, key, value)
        super().__init__(message)


class UnsupportedValueError(RealmRpcError):
    """Raised when a value cannot be represented as a wire envelope."""
