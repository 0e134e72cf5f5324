"""Textual integration for cellflow. Opt-in, requires textual.

Pushes reactive values and cell lifecycle slots into a Textual app. Every
effect is guarded here rather than at call sites: it is skipped while the app
is not running or is paused for widget replacement, ``NoMatches`` from widget
queries is swallowed, and calls from worker threads are marshalled with
``call_from_thread``.
"""

import threading
from contextlib import contextmanager

from textual.css.query import NoMatches

from cellflow.cells import CodeCellEngine, state_slot

# Module-owned pause state, keyed by id(app) so multiple apps work in tests.
_paused_apps: set[int] = set()


@contextmanager
def pause(app):
    """Suspend guarded effects during widget replacement."""
    key = id(app)
    _paused_apps.add(key)
    try:
        yield
    finally:
        _paused_apps.discard(key)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused_apps


def guard(app, effect):
    """Wrap effect(value) with the pause, NoMatches and thread guards."""
    main = threading.get_ident()

    def _safe(value):
        try:
            effect(value)
        except NoMatches:
            pass

    def _guarded(value):
        if not is_safe(app):
            return
        if threading.get_ident() != main:
            app.call_from_thread(_safe, value)
        else:
            _safe(value)

    return _guarded


def subscribe(app, store, name, effect, *, fire_immediately=False):
    """store.subscribe() that safely bridges to Textual widgets.

    Returns the unsubscribe function.
    """
    guarded = guard(app, effect)
    unsubscribe = store.subscribe(name, guarded)
    if fire_immediately:
        guarded(store.peek(name))
    return unsubscribe


def watch_cell(app, engine: CodeCellEngine, cell_id, effect, *, fire_immediately=False):
    """Call effect(state) with "running", "succeeded", ... as cell_id changes state."""
    return subscribe(
        app, engine.store, state_slot(cell_id), effect, fire_immediately=fire_immediately
    )
