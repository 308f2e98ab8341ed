"""Public package API for realm-rpc."""

from realm_rpc.api import get_default_session
from realm_rpc.api import reset_default_session
from realm_rpc.api import set_default_session
from realm_rpc.callbacks import CallbackRegistry
from realm_rpc.codec import UNDEFINED
from realm_rpc.codec import Codec
from realm_rpc.codec import EnvelopeType
from realm_rpc.codec import RemoteObject
from realm_rpc.codec import TypeConverterTable
from realm_rpc.dispatcher import DispatchState
from realm_rpc.dispatcher import RequestDispatcher
from realm_rpc.errors import RealmRpcError
from realm_rpc.errors import RpcProtocolError
from realm_rpc.errors import RpcRemoteError
from realm_rpc.errors import RpcSessionError
from realm_rpc.errors import RpcTransportError
from realm_rpc.errors import UnsupportedValueError
from realm_rpc.poller import PollScheduler
from realm_rpc.session import RpcSession
from realm_rpc.transport import HttpTransport

__all__: list[str] = [
    "get_default_session",
    "reset_default_session",
    "set_default_session",
    "CallbackRegistry",
    "Codec",
    "DispatchState",
    "EnvelopeType",
    "HttpTransport",
    "PollScheduler",
    "RealmRpcError",
    "RemoteObject",
    "RequestDispatcher",
    "RpcProtocolError",
    "RpcRemoteError",
    "RpcSession",
    "RpcSessionError",
    "RpcTransportError",
    "TypeConverterTable",
    "UNDEFINED",
    "UnsupportedValueError",
]
