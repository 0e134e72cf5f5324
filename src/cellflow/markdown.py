"""Markdown interpolation — ``{{ name | filter, args }}`` placeholders.

Rendering is a pure function of the text and a mapping of values; the
``MarkdownBinding`` keeps a rendered copy current by subscribing to every
variable the text references.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Iterable, Mapping

from cellflow.store import ReactiveStore
from cellflow.value import Unsubscribe

logger = logging.getLogger("cellflow.markdown")

PLACEHOLDER = "—"

_EXPRESSION = re.compile(r"\{\{([^}]+)\}\}")
_VARIABLE = re.compile(r"\{\{\s*([A-Za-z_]\w*)\s*(\|[^}]*)?\}\}")


def _currency(value: Any) -> str:
    amount = float(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _round(value: Any, decimals: float = 0) -> str:
    return f"{float(value):.{int(decimals)}f}"


def _percent(value: Any) -> str:
    return f"{float(value) * 100:.1f}%"


FILTERS: dict[str, Callable[..., str]] = {
    "currency": _currency,
    "round": _round,
    "percent": _percent,
}


def apply_filter(value: Any, filter_spec: str) -> str:
    """Apply ``name, arg, ...`` to value. Unknown filters render the raw value."""
    filter_name, *args = [part.strip() for part in filter_spec.split(",")]
    fn = FILTERS.get(filter_name)
    if fn is None:
        logger.warning("Unknown filter: %s", filter_name)
        return str(value)
    try:
        return fn(value, *(float(arg) for arg in args if arg))
    except (TypeError, ValueError) as exc:
        logger.warning("Filter %s failed on %r: %s", filter_name, value, exc)
        return str(value)


def render_markdown_with_values(text: str, values: Mapping[str, Any]) -> str:
    """Replace each ``{{ name | filter }}`` with the formatted value."""

    def _replace(match: re.Match[str]) -> str:
        name, _, filter_spec = match.group(1).partition("|")
        value = values.get(name.strip())
        if value is None:
            return PLACEHOLDER
        filter_spec = filter_spec.strip()
        if filter_spec:
            return apply_filter(value, filter_spec)
        return str(value)

    return _EXPRESSION.sub(_replace, text)


def extract_variables(content: str) -> list[str]:
    """Variable names referenced by placeholders, in first-use order."""
    return list(dict.fromkeys(m.group(1) for m in _VARIABLE.finditer(content)))


class MarkdownBinding:
    """A markdown cell kept in sync with the store.

    ``on_render`` receives the re-rendered text once at bind time and again
    whenever a referenced variable changes.
    """

    def __init__(
        self,
        store: ReactiveStore,
        content: str,
        on_render: Callable[[str], None] | None = None,
        variables: Iterable[str] | None = None,
    ) -> None:
        self.store = store
        self.content = content
        self.variables = list(variables) if variables else extract_variables(content)
        self._on_render = on_render
        self._subscriptions: list[Unsubscribe] = [
            store.subscribe(name, self._on_change) for name in self.variables
        ]
        self.rendered = ""
        self.render()

    def render(self) -> str:
        values = {name: self.store.peek(name) for name in self.variables}
        self.rendered = render_markdown_with_values(self.content, values)
        if self._on_render is not None:
            self._on_render(self.rendered)
        return self.rendered

    def _on_change(self, _value: Any) -> None:
        self.render()

    def dispose(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()

    def __repr__(self) -> str:
        return f"MarkdownBinding(variables={self.variables!r})"
