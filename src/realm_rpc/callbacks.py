"""Local callback registry exposed to the remote process via integer handles."""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CallbackEntry:
    """One registered callback."""

    index: int
    function: Callable[..., object]
    persistent: bool
    pass_receiver: bool

    def __init__(
        self,
        index: int,
        function: Callable[..., object],
        persistent: bool,
        pass_receiver: bool,
    ) -> None:
        """Initialize a registry entry.

        :param index: Remote-visible callback handle.
        :param function: Local callable.
        :param persistent: Whether the entry survives ``clear()``.
        :param pass_receiver: Whether the remote ``this`` is passed as the first argument.
        """
        self.index = index
        self.function = function
        self.persistent = persistent
        self.pass_receiver = pass_receiver

    def invoke(self, receiver: object, args: list[object]) -> object:
        """Call the wrapped function with decoded remote arguments.

        :param receiver: Decoded remote ``this`` value.
        :param args: Decoded positional arguments.
        :returns: Callback return value.
        """
        if self.pass_receiver is True:
            return self.function(receiver, *args)
        return self.function(*args)


class CallbackRegistry:
    """Map integer handles to local callables.

    Handles are list positions and are never reassigned. Registering the same
    function object twice returns the same handle, so the remote side can
    recognise a listener that was registered again.
    """

    _entries: list[CallbackEntry | None]
    _lock: threading.RLock

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._entries = []
        self._lock = threading.RLock()

    def _find(self, function: Callable[..., object]) -> CallbackEntry | None:
        for entry in self._entries:
            if entry is None:
                continue
            if entry.function is function:
                return entry
        return None

    def register(
        self,
        function: Callable[..., object],
        persistent: bool = False,
        pass_receiver: bool = False,
    ) -> int:
        """Register a callable and return its handle.

        :param function: Local callable.
        :param persistent: Keep the entry across ``clear()``.
        :param pass_receiver: Pass the remote ``this`` as first positional argument.
        :returns: Stable integer handle.
        :raises TypeError: If ``function`` is not callable.
        """
        is_callable: bool = callable(function)
        if is_callable is False:
            raise TypeError("Only callables can be registered as callbacks")

        with self._lock:
            existing: CallbackEntry | None = self._find(function)
            if existing is not None:
                if persistent is True:
                    existing.persistent = True
                return existing.index

            index: int = len(self._entries)
            entry = CallbackEntry(index, function, persistent, pass_receiver)
            self._entries.append(entry)
            logger.debug("Registered callback %d (persistent=%s)", index, persistent)
            return index

    def resolve(self, index: object) -> CallbackEntry | None:
        """Look up one handle.

        :param index: Handle received from the remote.
        :returns: Matching entry, or ``None`` when unknown or cleared.
        """
        if isinstance(index, bool) is True or isinstance(index, int) is False:
            return None
        with self._lock:
            in_range: bool = 0 <= index < len(self._entries)
            if in_range is False:
                return None
            return self._entries[index]

    def resolve_function(self, index: object) -> Callable[..., object] | None:
        """Look up the callable behind one handle.

        :param index: Handle received from the remote.
        :returns: Registered callable, or ``None`` when unresolved.
        """
        entry: CallbackEntry | None = self.resolve(index)
        if entry is None:
            return None
        return entry.function

    def clear(self) -> int:
        """Drop every non-persistent entry.

        Persistent entries keep their handles. Cleared slots stay empty so a
        stale handle never resolves to a different callable.

        :returns: Number of entries removed.
        """
        removed: int = 0
        with self._lock:
            for position, entry in enumerate(self._entries):
                if entry is None:
                    continue
                if entry.persistent is True:
                    continue
                self._entries[position] = None
                removed += 1
        logger.debug("Cleared %d non-persistent callbacks", removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries if entry is not None)

    def __contains__(self, function: object) -> bool:
        with self._lock:
            for entry in self._entries:
                if entry is not None and entry.function is function:
                    return True
            return False
