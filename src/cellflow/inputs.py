"""Input cells — user-editable reactive variables.

An input defines its variable once (a value already present, e.g. restored
from a notebook, wins over the default) and clamps numeric writes to its
bounds. Sliders and other high-frequency sources should write through a
``ThrottledCommitter`` so dependents recompute at a bounded rate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from numbers import Real
from typing import Any, Callable

from cellflow._errors import InvalidDefinitionError
from cellflow.store import ReactiveStore

logger = logging.getLogger("cellflow.inputs")


class InputCell:
    """A named input bound to the store, with optional numeric bounds."""

    def __init__(
        self,
        store: ReactiveStore,
        name: str,
        min: float | None = None,
        max: float | None = None,
        step: float | None = None,
    ) -> None:
        self.store = store
        self.name = name
        self.min = min
        self.max = max
        self.step = step

    @property
    def value(self) -> Any:
        return self.store.peek(self.name)

    def clamp(self, value: Any) -> Any:
        if not isinstance(value, Real) or isinstance(value, bool):
            return value
        if self.min is not None and value < self.min:
            return self.min
        if self.max is not None and value > self.max:
            return self.max
        return value

    def set(self, value: Any) -> None:
        self.store.set(self.name, self.clamp(value))

    def __repr__(self) -> str:
        return f"InputCell({self.name!r}, value={self.value!r})"


def define_input(
    store: ReactiveStore,
    name: str,
    default_value: Any = None,
    min: float | None = None,
    max: float | None = None,
    step: float | None = None,
) -> InputCell:
    """Define an input variable once and return its handle."""
    name = name.strip() if isinstance(name, str) else ""
    if not name:
        raise InvalidDefinitionError("Input variable name must not be empty")
    cell = InputCell(store, name, min=min, max=max, step=step)
    store.define(name, cell.clamp(default_value))
    logger.debug("Defined input %r = %r", name, store.peek(name))
    return cell


class ThrottledCommitter:
    """Commit a rapidly changing value at most once per interval.

    ``update`` commits right away when the interval has elapsed since the
    last commit; otherwise it keeps the value as pending and, when an event
    loop is running, schedules a trailing commit for the end of the interval.
    ``release`` commits immediately regardless of timing (pointer-up).
    """

    def __init__(
        self,
        store: ReactiveStore,
        name: str,
        interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.name = name
        self.interval = interval
        self._clock = clock
        self._last_commit: float | None = None
        self._pending: Any = None
        self._has_pending = False
        self._timer: asyncio.TimerHandle | None = None

    @property
    def has_pending(self) -> bool:
        return self._has_pending

    def update(self, value: Any) -> None:
        now = self._clock()
        if self._last_commit is None or now - self._last_commit >= self.interval:
            self._commit(value)
            return
        self._pending = value
        self._has_pending = True
        self._schedule_trailing(self.interval - (now - self._last_commit))

    def release(self, value: Any) -> None:
        self._commit(value)

    def flush(self) -> None:
        """Commit the pending value, if any."""
        if self._has_pending:
            self._commit(self._pending)

    def _schedule_trailing(self, delay: float) -> None:
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self.flush()

    def _commit(self, value: Any) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        self._has_pending = False
        self._last_commit = self._clock()
        self.store.set(self.name, value)

    def cancel(self) -> None:
        """Drop the pending value without committing it."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        self._has_pending = False
