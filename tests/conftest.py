"""Shared fixtures for realm-rpc tests."""

from collections.abc import Iterator

import pytest

from realm_rpc import RpcSession
from realm_rpc import reset_default_session
from tests.fixtures.fake_remote import ManualTimerFactory
from tests.fixtures.fake_remote import ScriptedRemote

HOST: str = "rpc.test:8083"


@pytest.fixture
def remote() -> ScriptedRemote:
    """Provide an empty scripted remote.

    :returns: Scripted remote.
    """
    return ScriptedRemote()


@pytest.fixture
def timers() -> ManualTimerFactory:
    """Provide a timer factory whose timers never fire on their own.

    :returns: Manual timer factory.
    """
    return ManualTimerFactory()


@pytest.fixture
def session(remote: ScriptedRemote, timers: ManualTimerFactory) -> Iterator[RpcSession]:
    """Provide a session bound to ``HOST`` and served by ``remote``.

    :yields: Open session.
    """
    rpc_session = RpcSession(host=HOST, transport=remote.make_transport(), timer_factory=timers)
    yield rpc_session
    rpc_session.close()


@pytest.fixture(autouse=True)
def _forget_default_session() -> Iterator[None]:
    """Keep the process-wide session from leaking between tests.

    :yields: Control to the active test.
    """
    yield
    reset_default_session()
