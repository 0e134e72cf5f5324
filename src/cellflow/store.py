"""ReactiveStore — the registry of named reactive values.

The store is the single shared mutable resource of a notebook session. Every
write goes through ``define`` or ``set``; reads through ``get_value`` are
attributed to the evaluation currently being tracked.

Names are never deleted individually. Exporting cells tag the names they
author (``claim``/``release``); the tag records authorship only, the value
outlives it because other nodes may already depend on it.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Mapping

from cellflow._tracking import batched, record_read
from cellflow.value import ReactiveValue, Subscriber, Unsubscribe

logger = logging.getLogger("cellflow.store")


class _ParkedSubscription:
    """A subscription to a name that has not been defined yet."""

    __slots__ = ("callback", "_unsubscribe", "_cancelled")

    def __init__(self, callback: Subscriber) -> None:
        self.callback = callback
        self._unsubscribe: Unsubscribe | None = None
        self._cancelled = False

    def activate(self, value: ReactiveValue) -> None:
        if not self._cancelled:
            self._unsubscribe = value.subscribe(self.callback)

    def cancel(self) -> None:
        self._cancelled = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


class ReactiveStore:
    """Name-keyed ReactiveValue container with tolerant reads and writes."""

    def __init__(self) -> None:
        self._values: dict[str, ReactiveValue] = {}
        self._parked: dict[str, list[_ParkedSubscription]] = {}
        self._owners: dict[str, str] = {}

    @batched
    def define(self, name: str, initial_value: Any = None) -> None:
        """Create name if absent. A name already defined keeps its value."""
        if name not in self._values:
            self._create(name, initial_value)

    def get(self, name: str) -> ReactiveValue | None:
        return self._values.get(name)

    def get_value(self, name: str) -> Any:
        """Read name (None if undefined), recording the read for tracking."""
        record_read(name)
        value = self._values.get(name)
        return value.peek() if value is not None else None

    def peek(self, name: str) -> Any:
        value = self._values.get(name)
        return value.peek() if value is not None else None

    @batched
    def set(self, name: str, value: Any) -> None:
        """Write name, creating it if needed. Unchanged values notify nobody.

        Every subscriber is notified before any formula that depends on name
        recomputes.
        """
        existing = self._values.get(name)
        if existing is None:
            self._create(name, value)
        else:
            existing.set_value(value)

    @batched
    def update(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self.set(name, value)

    def subscribe(self, name: str, callback: Subscriber) -> Unsubscribe:
        """Subscribe to name. Undefined names park the subscription until defined."""
        value = self._values.get(name)
        if value is not None:
            return value.subscribe(callback)

        parked = _ParkedSubscription(callback)
        self._parked.setdefault(name, []).append(parked)

        def _unsubscribe() -> None:
            parked.cancel()
            waiting = self._parked.get(name)
            if waiting and parked in waiting:
                waiting.remove(parked)

        return _unsubscribe

    def _create(self, name: str, value: Any) -> None:
        reactive = ReactiveValue(name, value)
        self._values[name] = reactive
        waiting = self._parked.pop(name, [])
        for parked in waiting:
            parked.activate(reactive)
        logger.debug("Defined %r (%d waiting subscribers)", name, len(waiting))
        # Waiting subscribers last saw None; tell them the name now has a value.
        if waiting and value is not None:
            reactive._notify()

    # --- authorship tags ---

    def claim(self, name: str, owner: str) -> None:
        previous = self._owners.get(name)
        if previous is not None and previous != owner:
            logger.warning("%r now exported by %r (was %r)", name, owner, previous)
        self._owners[name] = owner

    def release(self, name: str, owner: str) -> None:
        if self._owners.get(name) == owner:
            del self._owners[name]

    def owner_of(self, name: str) -> str | None:
        return self._owners.get(name)

    # --- introspection / lifecycle ---

    def has(self, name: str) -> bool:
        return name in self._values

    def names(self) -> list[str]:
        return list(self._values)

    def clear(self) -> None:
        """Tear down every value, parked subscription and tag (notebook reload)."""
        for waiting in self._parked.values():
            for parked in waiting:
                parked.cancel()
        self._values.clear()
        self._parked.clear()
        self._owners.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ReactiveStore({sorted(self._values)!r})"
