"""What a script cell sees while it runs.

A cell body executes with a fresh ``CellNamespace`` as its globals. Names the
body assigns stay local to that run; names it does not define resolve, in
order, to what it exported earlier in the same run, to reactive variables
(recorded as dependencies), to builtins, and finally to ``None``.

Host capabilities are plain entries in the namespace: ``exports``,
``console``/``print``, ``storage``, ``output``/``display``/``out_el`` and the
configured capability table.
"""

from __future__ import annotations

import builtins
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Protocol, runtime_checkable

from cellflow.store import ReactiveStore

console_logger = logging.getLogger("cellflow.console")

_BUILTIN_NAMES = frozenset(dir(builtins))

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "log": logging.INFO,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class Exports:
    """Attribute bag whose assignments become reactive variables.

    Supports ``exports.total = 3`` and ``exports["total"] = 3``. It has no
    public methods so any attribute name can be exported.
    """

    __slots__ = ("_values",)

    def __init__(self) -> None:
        object.__setattr__(self, "_values", {})

    def __setattr__(self, name: str, value: Any) -> None:
        self._values[name] = value

    def __getattr__(self, name: str) -> Any:
        try:
            return self._values[name]
        except KeyError:
            raise AttributeError(name) from None

    def __delattr__(self, name: str) -> None:
        try:
            del self._values[name]
        except KeyError:
            raise AttributeError(name) from None

    __setitem__ = __setattr__

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __repr__(self) -> str:
        return f"Exports({self._values!r})"


def exported_values(exports: Exports) -> dict[str, Any]:
    """Names assigned on exports, in assignment order."""
    return dict(object.__getattribute__(exports, "_values"))


@dataclass(frozen=True, slots=True)
class ConsoleEntry:
    timestamp: datetime
    level: str
    payload: tuple[Any, ...]

    @property
    def message(self) -> str:
        return " ".join(str(part) for part in self.payload)


class CellConsole:
    """Structured console capture for one run of one cell."""

    def __init__(self, entries: list[ConsoleEntry], cell_id: str, echo: bool = True) -> None:
        self._entries = entries
        self._cell_id = cell_id
        self._echo = echo

    def _capture(self, level: str, args: tuple[Any, ...]) -> None:
        entry = ConsoleEntry(datetime.now(), level, args)
        self._entries.append(entry)
        if self._echo:
            console_logger.log(_LOG_LEVELS[level], "[%s] %s", self._cell_id, entry.message)

    def log(self, *args: Any) -> None:
        self._capture("log", args)

    def info(self, *args: Any) -> None:
        self._capture("info", args)

    def warn(self, *args: Any) -> None:
        self._capture("warn", args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._capture("error", args)

    def debug(self, *args: Any) -> None:
        self._capture("debug", args)

    def print(self, *args: Any, sep: str = " ", end: str = "\n", file: Any = None, flush: bool = False) -> None:
        """Drop-in ``print`` that lands in the console log unless a file is given."""
        if file is not None:
            builtins.print(*args, sep=sep, end=end, file=file, flush=flush)
            return
        self._capture("log", (sep.join(str(a) for a in args),))


@runtime_checkable
class OutputContainer(Protocol):
    """Where a cell's rich output goes. Supplied by the presentation layer."""

    def clear(self) -> None: ...

    def append(self, item: Any) -> None: ...


class OutputBuffer:
    """In-memory OutputContainer, used headless and in tests."""

    def __init__(self) -> None:
        self.items: list[Any] = []

    def clear(self) -> None:
        self.items.clear()

    def append(self, item: Any) -> None:
        self.items.append(item)

    def __len__(self) -> int:
        return len(self.items)

    def __repr__(self) -> str:
        return f"OutputBuffer({self.items!r})"


@dataclass(frozen=True, slots=True)
class TabularOutput:
    """Rows the presentation layer should render as a table."""

    data: Any


def is_renderable(value: Any) -> bool:
    """Rich elements (anything with ``_repr_html_``) go to the output container."""
    return hasattr(type(value), "_repr_html_")


@dataclass
class Output:
    """The ``output`` capability: collect values, route rich elements to the container."""

    values: list[Any]
    container: OutputContainer | None = None

    def __call__(self, *values: Any) -> Any:
        for value in values:
            if is_renderable(value):
                self.display(value)
            else:
                self.values.append(value)
        return values[0] if len(values) == 1 else values

    def table(self, data: Any) -> TabularOutput:
        tabular = TabularOutput(data)
        self.values.append(tabular)
        return tabular

    def display(self, element: Any) -> Any:
        if self.container is None:
            console_logger.warning("No output container; dropped %r", type(element).__name__)
        else:
            self.container.append(element)
        return element


class CellNamespace(dict):
    """Globals for one run: explicit entries first, then exports, store, builtins."""

    __slots__ = ("_store", "_exports")

    def __init__(self, store: ReactiveStore, exports: Exports, entries: Mapping[str, Any]) -> None:
        super().__init__(entries)
        self._store = store
        self._exports = exports

    def __missing__(self, name: str) -> Any:
        if name in self._exports:
            return self._exports[name]
        if name in self._store:
            return self._store.get_value(name)
        if name in _BUILTIN_NAMES or name.startswith("__"):
            # KeyError lets the interpreter fall through to builtins.
            raise KeyError(name)
        # Undefined references read as None and are still tracked.
        return self._store.get_value(name)
