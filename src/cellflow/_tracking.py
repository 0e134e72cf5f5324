"""Dependency tracking engine — the heart of cellflow.

Uses contextvars to record which reactive names are read while a formula or
script cell evaluates, so every pass computes a fresh dependency set. Because
the scope lives in a contextvar, each asyncio task sees its own scope and a
cell suspended at an ``await`` keeps attributing reads to itself.

Scheduling: dependency-triggered formula runs go through a FIFO work list.
Every store write is a batch, so a write notifies all of its subscribers
before any dependent formula runs, and a chain A -> B -> C is drained by a
loop rather than by nested calls. ``transaction()`` widens the batch to
several writes, so a cell that exports several names gives dependents a
single coalesced recomputation.

Cycle detection: each queued run carries the evaluation chain that caused
it; a derivation whose own key is already on that chain is reported instead
of run again.
"""

from __future__ import annotations

import contextvars
import functools
from contextlib import contextmanager
from typing import Callable, Iterator, ParamSpec, Protocol, TypeVar

P = ParamSpec("P")
R = TypeVar("R")


class Derivation(Protocol):
    """Anything the scheduler can re-run."""

    def _run(self) -> None: ...


class DependencyScope:
    """Names read during one evaluation pass, in first-read order."""

    __slots__ = ("owner", "_reads", "_closed")

    def __init__(self, owner: str) -> None:
        self.owner = owner
        self._reads: dict[str, None] = {}
        self._closed = False

    def record(self, name: str) -> None:
        # Reads from tasks the body spawned and left running don't count.
        if not self._closed:
            self._reads[name] = None

    @property
    def reads(self) -> list[str]:
        return list(self._reads)

    def close(self) -> None:
        self._closed = True

    def __repr__(self) -> str:
        return f"DependencyScope({self.owner!r}, reads={self.reads!r})"


# The scope of the currently-evaluating node (formula or script cell).
# When set, any ReactiveStore.get_value() call records the name it read.
current_scope: contextvars.ContextVar[DependencyScope | None] = contextvars.ContextVar(
    "current_scope", default=None
)

# Keys of the derivations that led to the current evaluation, outermost first.
_evaluation_chain: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "evaluation_chain", default=()
)


@contextmanager
def tracking(owner: str) -> Iterator[DependencyScope]:
    """Attribute every store read inside the block to a new scope for owner."""
    scope = DependencyScope(owner)
    token = current_scope.set(scope)
    try:
        yield scope
    finally:
        current_scope.reset(token)
        scope.close()


@contextmanager
def untracked() -> Iterator[None]:
    """Suspend read tracking (introspection, peeking)."""
    token = current_scope.set(None)
    try:
        yield
    finally:
        current_scope.reset(token)


def record_read(name: str) -> None:
    scope = current_scope.get()
    if scope is not None:
        scope.record(name)


@contextmanager
def evaluating(key: str) -> Iterator[None]:
    """Push key on the evaluation chain for the duration of the block."""
    token = _evaluation_chain.set(_evaluation_chain.get() + (key,))
    try:
        yield
    finally:
        _evaluation_chain.reset(token)


def cycle_through(key: str) -> tuple[str, ...] | None:
    """Return the chain closing a cycle at key, or None if key is not evaluating."""
    chain = _evaluation_chain.get()
    if key not in chain:
        return None
    return chain[chain.index(key):] + (key,)


# Batch depth counter. When > 0, scheduled derivations are deferred.
_batch_depth: int = 0

# Derivations waiting to run, each with the evaluation chain that scheduled it.
# Dict keeps FIFO order and coalesces repeats.
_pending: dict[Derivation, tuple[str, ...]] = {}

# True while _flush_pending drains the work list; nested schedules only enqueue.
_flushing: bool = False


def begin_batch() -> None:
    """Enter a batching scope. Nested batches are supported."""
    global _batch_depth
    _batch_depth += 1


def end_batch() -> None:
    """Exit a batching scope. When the outermost scope exits, flush pending derivations."""
    global _batch_depth
    _batch_depth -= 1
    if _batch_depth == 0 and not _flushing:
        _flush_pending()


def in_batch() -> bool:
    return _batch_depth > 0


def schedule(derivation: Derivation) -> None:
    """Queue a derivation for re-evaluation.

    Inside a batch or an ongoing flush the derivation is only enqueued;
    otherwise the work list is drained before returning. The current
    evaluation chain travels with the entry so a derivation that
    re-triggers itself is still seen as a cycle.
    """
    chain = _evaluation_chain.get()
    queued = _pending.get(derivation)
    if queued is None or len(chain) > len(queued):
        _pending[derivation] = chain
    if _batch_depth == 0 and not _flushing:
        _flush_pending()


def _flush_pending() -> None:
    """Run pending derivations one at a time until the work list is empty.

    Derivations scheduled while a derivation runs are appended rather than
    run inline, so a long chain of formulas is an iteration, not a recursion.
    """
    global _flushing
    _flushing = True
    try:
        while _pending:
            derivation = next(iter(_pending))
            chain = _pending.pop(derivation)
            token = _evaluation_chain.set(chain)
            try:
                derivation._run()
            finally:
                _evaluation_chain.reset(token)
    finally:
        _flushing = False


def get_pending_count() -> int:
    """Number of derivations waiting to run. Useful for testing."""
    return len(_pending)


def batched(fn: Callable[P, R]) -> Callable[P, R]:
    """Decorator: defer formula recomputation until fn returns.

    Usage:
        @batched
        def swap(store):
            a, b = store.peek("a"), store.peek("b")
            store.set("a", b)
            store.set("b", a)
            # formulas on a and b see both changes at once
    """

    @functools.wraps(fn)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        begin_batch()
        try:
            return fn(*args, **kwargs)
        finally:
            end_batch()

    return wrapper


@contextmanager
def transaction() -> Iterator[None]:
    """Group store writes so dependents recompute once, at the outermost exit.

    Subscribers are still notified on every ``set``; only scheduled formula
    runs wait. A script cell commits all of its exports in one transaction.

    Usage:
        with transaction():
            store.set("width", 3)
            store.set("height", 4)
            # "area = width * height" recomputes here, once
    """
    begin_batch()
    try:
        yield
    finally:
        end_batch()
