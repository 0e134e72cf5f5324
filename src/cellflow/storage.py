"""NotebookStorage — the persistent key/value handle given to script cells.

Unlike reactive variables, storage entries are explicit persistence: writing
one never re-runs anything. The notebook seeds it at load time
(``load``) and snapshots it at save time (``export``); a change handler lets
the host mark the document dirty.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any, Callable, Iterator, Mapping

logger = logging.getLogger("cellflow.storage")


class NotebookStorage(MutableMapping):
    """Dict-like storage with the ``get/set/has/delete/keys/clear`` script API."""

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(data) if data else {}
        self._change_handler: Callable[[], None] | None = None

    def set_change_handler(self, handler: Callable[[], None] | None) -> None:
        self._change_handler = handler
        logger.debug("Storage change handler set: %s", handler is not None)

    def _changed(self) -> None:
        if self._change_handler is not None:
            self._change_handler()

    # --- MutableMapping ---

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value
        logger.debug("Storage set: %s", key)
        self._changed()

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        logger.debug("Storage deleted: %s", key)
        self._changed()

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    # --- script-facing API ---

    def set(self, key: str, value: Any) -> None:
        self[key] = value

    def has(self, key: str) -> bool:
        return key in self._data

    def delete(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self[key]
        return True

    def clear(self) -> None:
        self._data.clear()
        logger.debug("Storage cleared")
        self._changed()

    # --- notebook bridge ---

    def load(self, blob: Mapping[str, Any] | None) -> None:
        """Replace contents with a notebook's serialized storage section."""
        self._data = dict(blob or {})
        logger.debug("Loaded %d storage entries from notebook", len(self._data))

    def export(self) -> dict[str, Any]:
        return dict(self._data)

    def __repr__(self) -> str:
        return f"NotebookStorage({self._data!r})"
