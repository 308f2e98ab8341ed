"""Client-side cache of remote property reads, scoped per realm."""

import threading

_MISSING: object = object()


class ReadCache:
    """Cache property values until the remote may have advanced its snapshot.

    Entries for a realm are dropped when the read-isolation hook fires for it,
    when a property is written, and when a method is called on it. Caching for
    a realm is suspended while it is inside a write transaction.
    """

    _enabled: bool
    _entries: dict[object, dict[tuple[object, str], object]]
    _suspended: set[object]
    _lock: threading.Lock

    def __init__(self, enabled: bool = True) -> None:
        """Initialize an empty cache.

        :param enabled: ``False`` turns every lookup into a miss.
        """
        self._enabled = enabled
        self._entries = {}
        self._suspended = set()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def is_caching(self, realm_id: object) -> bool:
        """Report whether reads for ``realm_id`` may be served from cache.

        :param realm_id: Realm handle.
        :returns: ``True`` when caching is active for the realm.
        """
        if self._enabled is False or realm_id is None:
            return False
        with self._lock:
            return realm_id not in self._suspended

    def lookup(self, realm_id: object, object_id: object, name: str) -> tuple[bool, object]:
        """Look up one cached property.

        :param realm_id: Realm handle.
        :param object_id: Remote object handle.
        :param name: Property name.
        :returns: Tuple of ``(hit, value)``.
        """
        is_caching: bool = self.is_caching(realm_id)
        if is_caching is False:
            return False, None
        with self._lock:
            realm_entries: dict[tuple[object, str], object] | None = self._entries.get(realm_id)
            if realm_entries is None:
                return False, None
            value: object = realm_entries.get((object_id, name), _MISSING)
        if value is _MISSING:
            return False, None
        return True, value

    def store(self, realm_id: object, object_id: object, name: str, value: object) -> None:
        """Store one property value.

        :param realm_id: Realm handle.
        :param object_id: Remote object handle.
        :param name: Property name.
        :param value: Decoded property value.
        """
        is_caching: bool = self.is_caching(realm_id)
        if is_caching is False:
            return
        with self._lock:
            realm_entries: dict[tuple[object, str], object] = self._entries.setdefault(realm_id, {})
            realm_entries[(object_id, name)] = value

    def invalidate(self, realm_id: object) -> None:
        """Drop every entry of one realm.

        :param realm_id: Realm handle.
        """
        with self._lock:
            self._entries.pop(realm_id, None)

    def suspend(self, realm_id: object) -> None:
        """Drop a realm's entries and stop caching it until ``resume``.

        :param realm_id: Realm handle.
        """
        with self._lock:
            self._entries.pop(realm_id, None)
            if realm_id is not None:
                self._suspended.add(realm_id)

    def resume(self, realm_id: object) -> None:
        """Re-enable caching for one realm.

        :param realm_id: Realm handle.
        """
        with self._lock:
            self._suspended.discard(realm_id)

    def clear(self) -> None:
        """Drop every entry and suspension."""
        with self._lock:
            self._entries.clear()
            self._suspended.clear()
