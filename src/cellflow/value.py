"""Reactive values — named slots that notify subscribers on change.

A ReactiveValue is owned by the ReactiveStore that created it. Writes go
through ``set_value``, which drops writes that don't change anything:
primitives compare by value, everything else by identity, so mutating a list
in place and setting it again is not a change.
"""

from __future__ import annotations

import itertools
import logging
import math
from decimal import Decimal
from fractions import Fraction
from typing import Any, Callable, Generic, TypeVar

from cellflow._tracking import record_read

logger = logging.getLogger("cellflow.value")

T = TypeVar("T")

Subscriber = Callable[[Any], None]
Unsubscribe = Callable[[], None]

_PRIMITIVES = (type(None), bool, int, float, complex, str, bytes, Decimal, Fraction)


def values_equal(old: object, new: object) -> bool:
    """Equality used to suppress redundant notifications."""
    if old is new:
        return True
    if type(old) is not type(new):
        return False
    if isinstance(old, float) and math.isnan(old) and math.isnan(new):  # type: ignore[arg-type]
        return True
    if isinstance(old, _PRIMITIVES):
        return old == new
    if isinstance(old, tuple):
        return len(old) == len(new) and all(  # type: ignore[arg-type]
            values_equal(a, b) for a, b in zip(old, new)  # type: ignore[call-overload]
        )
    return False


class ReactiveValue(Generic[T]):
    """A single named value with an ordered subscriber list."""

    __slots__ = ("name", "_value", "_version", "_subscribers", "_keys")

    def __init__(self, name: str, value: T) -> None:
        self.name = name
        self._value = value
        self._version = 0
        self._subscribers: dict[int, Subscriber] = {}
        self._keys = itertools.count()

    @property
    def version(self) -> int:
        return self._version

    def get(self) -> T:
        """Read the value. If inside a tracked evaluation, records the read."""
        record_read(self.name)
        return self._value

    def peek(self) -> T:
        """Read the value without recording a dependency."""
        return self._value

    def set_value(self, value: T) -> bool:
        """Write a new value; returns False (and notifies nobody) if unchanged."""
        if values_equal(self._value, value):
            return False
        self._value = value
        self._version += 1
        self._notify()
        return True

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Register a callback. Returns an idempotent function that removes it.

        Each call is an independent subscription, even for the same callback.
        """
        key = next(self._keys)
        self._subscribers[key] = callback

        def _unsubscribe() -> None:
            self._subscribers.pop(key, None)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _notify(self) -> None:
        """Call every subscriber, in subscription order, with the new value."""
        value = self._value
        for callback in list(self._subscribers.values()):
            try:
                callback(value)
            except Exception:
                logger.exception("Subscriber of %r failed", self.name)

    def __repr__(self) -> str:
        return f"ReactiveValue({self.name!r}, {self._value!r}, version={self._version})"
