"""Tests for remote error reconstruction."""

from realm_rpc import RpcRemoteError


def test_plain_fields_become_attributes() -> None:
    """Identifier-like field names are readable as attributes."""
    error = RpcRemoteError("boom", {"code": 611, "isFatal": True})
    assert error.message == "boom"
    assert str(error) == "boom"
    assert getattr(error, "code") == 611
    assert getattr(error, "isFatal") is True


def test_unsafe_field_names_stay_in_fields() -> None:
    """Remote field names never replace the exception's own attributes."""
    fields: dict[object, object] = {
        "__class__": "str",
        "__dict__": {},
        "args": ["spoofed"],
        "with_traceback": 1,
        "message": "other",
        "fields": "other",
        "not an identifier": 2,
        7: "numeric",
        "code": 3,
    }
    error = RpcRemoteError("boom", fields)

    assert type(error) is RpcRemoteError
    assert error.args == ("boom",)
    assert error.message == "boom"
    assert error.fields == fields
    assert callable(error.with_traceback) is True
    assert getattr(error, "code") == 3
    assert hasattr(error, "not an identifier") is False
