"""Formulas — derived reactive values defined by an expression.

A formula evaluates a Python expression against the store and writes the
result under its own name. It re-runs when created, when any dependency
changes, and when its text is updated. Dependencies are rediscovered on every
run and subscriptions are diffed against the previous set.

Evaluation failures never escape: the message is kept on the formula and
published at ``__formula_<name>_error`` while the value stays at its last
successful result, so dependents degrade instead of failing in a cascade.

FormulaEngine uses explicit ``$name`` markers. The natural-syntax variant
lives in ``cellflow.enhanced``.
"""

from __future__ import annotations

import builtins
import logging
import math
from dataclasses import dataclass
from types import CodeType
from typing import Any, Callable, Mapping, NamedTuple

from cellflow._errors import CellflowError, CycleError, FormulaError, InvalidDefinitionError
from cellflow._tracking import cycle_through, evaluating, schedule, tracking, untracked
from cellflow.identifiers import marked_identifiers, strip_markers
from cellflow.store import ReactiveStore
from cellflow.value import Unsubscribe

logger = logging.getLogger("cellflow.formula")


def _sum(*args: Any) -> Any:
    return sum(args)


def _avg(*args: Any) -> Any:
    return sum(args) / len(args) if args else 0


def _count(*args: Any) -> int:
    return len(args)


def _when(condition: Any, if_true: Any, if_false: Any) -> Any:
    return if_true if condition else if_false


def default_functions() -> dict[str, Callable[..., Any]]:
    """Helpers every formula can call without importing anything."""
    functions: dict[str, Callable[..., Any]] = {
        name: fn
        for name, fn in vars(math).items()
        if callable(fn) and not name.startswith("_")
    }
    functions.update(
        min=min, max=max, abs=abs, round=round,
        sum=_sum, avg=_avg, count=_count, when=_when,
    )
    return functions


# Builtins visible inside formula expressions.
SAFE_BUILTINS: Mapping[str, Any] = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "float", "int",
        "isinstance", "len", "list", "max", "min", "pow", "range", "reversed",
        "round", "set", "sorted", "str", "sum", "tuple", "zip",
    )
}


def error_slot(name: str) -> str:
    return f"__formula_{name}_error"


@dataclass(frozen=True)
class FormulaInfo:
    name: str
    formula: str
    dependencies: list[str]


class FormulaValidation(NamedTuple):
    valid: bool
    error: str | None = None


def describe(exc: BaseException) -> str:
    if isinstance(exc, CellflowError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


class Formula:
    """One registered formula. Re-evaluated by the scheduler on dependency change."""

    __slots__ = (
        "name", "formula", "_engine", "_code", "_compile_error", "_static",
        "_subscriptions", "error", "runs", "_disposed",
    )

    def __init__(self, engine: BaseFormulaEngine, name: str, formula: str) -> None:
        self.name = name
        self.formula = formula
        self._engine = engine
        self._static = engine._dependencies_of(formula)
        self._subscriptions: dict[str, Unsubscribe] = {}
        self.error: str | None = None
        self.runs = 0
        self._disposed = False
        self._code: CodeType | None = None
        self._compile_error: SyntaxError | None = None
        try:
            self._code = compile(engine._rewrite(formula), f"<formula {name}>", "eval")
        except SyntaxError as exc:
            self._compile_error = exc

    @property
    def dependencies(self) -> list[str]:
        return list(self._subscriptions)

    @property
    def _key(self) -> str:
        return f"formula:{self.name}"

    def _run(self) -> None:
        """Evaluate, rediscover dependencies, publish the value or the error."""
        if self._disposed:
            return
        chain = cycle_through(self._key)
        if chain is not None:
            names = tuple(key.partition(":")[2] for key in chain)
            self._fail(CycleError(names))
            return

        with evaluating(self._key):
            failure: BaseException | None = None
            value: Any = None
            with tracking(self._key) as scope:
                try:
                    if self._compile_error is not None:
                        raise self._compile_error
                    value = eval(self._code, self._engine._namespace(self._static))
                except Exception as exc:
                    failure = exc
            self._resubscribe(self._static + [n for n in scope.reads if n not in self._static])
            self.runs += 1

            if failure is not None:
                logger.debug("Formula %r failed: %s", self.name, failure)
                self._fail(failure)
                return
            self.error = None
            store = self._engine.store
            store.set(error_slot(self.name), None)
            store.set(self.name, value)
            logger.debug("Formula %r = %r", self.name, value)

    def _fail(self, exc: BaseException) -> None:
        self.error = describe(exc)
        self._engine.store.set(error_slot(self.name), self.error)

    def _resubscribe(self, names: list[str]) -> None:
        wanted = [n for n in names if n != self.name]
        for name in list(self._subscriptions):
            if name not in wanted:
                self._subscriptions.pop(name)()
        for name in wanted:
            if name not in self._subscriptions:
                self._subscriptions[name] = self._engine.store.subscribe(
                    name, self._on_dependency_changed
                )

    def _on_dependency_changed(self, _value: Any) -> None:
        schedule(self)

    def dispose(self) -> None:
        self._disposed = True
        for unsubscribe in self._subscriptions.values():
            unsubscribe()
        self._subscriptions.clear()

    def __repr__(self) -> str:
        state = f"error={self.error!r}" if self.error else f"runs={self.runs}"
        return f"Formula({self.name!r}, {self.formula!r}, {state})"


class BaseFormulaEngine:
    """Shared registry and lifecycle for both formula syntaxes."""

    def __init__(
        self,
        store: ReactiveStore,
        custom_functions: Mapping[str, Callable[..., Any]] | None = None,
    ) -> None:
        self.store = store
        self._formulas: dict[str, Formula] = {}
        self._functions = default_functions()
        self._functions.update(custom_functions or {})

    # --- syntax hooks ---

    def _dependencies_of(self, formula: str) -> list[str]:
        raise NotImplementedError

    def _rewrite(self, formula: str) -> str:
        return formula

    def _namespace(self, dependencies: list[str]) -> dict[str, Any]:
        namespace: dict[str, Any] = {"__builtins__": SAFE_BUILTINS}
        namespace.update(self._functions)
        for name in dependencies:
            namespace[name] = self.store.get_value(name)
        return namespace

    # --- public API ---

    def create_formula(self, name: str, formula: str) -> FormulaInfo:
        """Register (or replace) the formula for name and evaluate it once."""
        name = name.strip() if isinstance(name, str) else ""
        if not name:
            raise InvalidDefinitionError("Formula variable name must not be empty")

        previous = self._formulas.pop(name, None)
        if previous is not None:
            previous.dispose()
        node = Formula(self, name, formula)
        self._formulas[name] = node
        node._run()
        return FormulaInfo(name, formula, node.dependencies)

    def update_formula(self, name: str, formula: str) -> FormulaInfo:
        return self.create_formula(name, formula)

    def remove_formula(self, name: str) -> None:
        """Stop recomputing name. The last value stays in the store."""
        node = self._formulas.pop(name, None)
        if node is not None:
            node.dispose()

    def get_formula(self, name: str) -> str | None:
        node = self._formulas.get(name)
        return node.formula if node is not None else None

    def get_all_formulas(self) -> dict[str, str]:
        return {name: node.formula for name, node in self._formulas.items()}

    def get_dependencies(self, name: str) -> list[str]:
        node = self._formulas.get(name)
        return node.dependencies if node is not None else []

    def get_error(self, name: str) -> str | None:
        node = self._formulas.get(name)
        return node.error if node is not None else None

    def get_run_count(self, name: str) -> int:
        node = self._formulas.get(name)
        return node.runs if node is not None else 0

    def evaluate(self, formula: str) -> Any:
        """Evaluate once against current values without registering anything."""
        try:
            code = compile(self._rewrite(formula), "<formula>", "eval")
            with untracked():
                return eval(code, self._namespace(self._dependencies_of(formula)))
        except Exception as exc:
            raise FormulaError(f"Error evaluating formula: {describe(exc)}") from exc

    def validate_formula(self, formula: str) -> FormulaValidation:
        try:
            compile(self._rewrite(formula), "<formula>", "eval")
        except SyntaxError as exc:
            return FormulaValidation(False, describe(exc))
        return FormulaValidation(True)

    def add_custom_function(self, name: str, fn: Callable[..., Any]) -> None:
        self._functions[name] = fn

    def remove_custom_function(self, name: str) -> None:
        self._functions.pop(name, None)

    def clear(self) -> None:
        for node in self._formulas.values():
            node.dispose()
        self._formulas.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._formulas


class FormulaEngine(BaseFormulaEngine):
    """Formulas whose references are marked with ``$``: ``$price * $qty``."""

    def _dependencies_of(self, formula: str) -> list[str]:
        return marked_identifiers(formula)

    def _rewrite(self, formula: str) -> str:
        return strip_markers(formula)
