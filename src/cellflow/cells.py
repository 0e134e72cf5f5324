"""CodeCellEngine — executes script cells and keeps them reactive.

A script cell is a block of Python statements. Each run gets a fresh
namespace in which reactive variables are readable by plain name; what the
body assigns on ``exports`` is written back to the store once the run
completes. Every reactive name the body read becomes a dependency, and a
change to any of them schedules the cell to run again (unless it is static).

Per-cell lifecycle: IDLE -> RUNNING -> SUCCEEDED | FAILED. A trigger that
arrives while the cell is RUNNING is dropped. A failing body is contained:
the error is recorded and published, the exports of the last successful run
stay in the store, and nothing else is aborted. A cell re-triggered by the
cascade its own run started is failed with a CycleError instead of re-run.

Lifecycle slots are published as ordinary reactive variables so presentation
code can subscribe to them:

    __cell_<id>_execution   execution counter
    __cell_<id>_error       exception of the last run, or None
    __cell_<id>_state       "idle" | "running" | "succeeded" | "failed"
"""

from __future__ import annotations

import ast
import asyncio
import contextvars
import functools
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from cellflow._errors import CellExecutionError, CellNotFoundError, CycleError
from cellflow._scope import (
    CellConsole,
    CellNamespace,
    ConsoleEntry,
    Exports,
    Output,
    OutputContainer,
    exported_values,
)
from cellflow._tracking import tracking, transaction, untracked
from cellflow.config import RuntimeConfig
from cellflow.storage import NotebookStorage
from cellflow.store import ReactiveStore
from cellflow.value import Unsubscribe

logger = logging.getLogger("cellflow.cells")

_COMPILE_FLAGS = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT

# Ids of the cells whose runs led to the current one. Copied into every rerun
# task, so a cell that re-triggers itself through other cells is detected.
_cascade: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "cell_cascade", default=()
)


class CellState(str, Enum):
    """Execution state of a script cell."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def execution_slot(cell_id: str) -> str:
    return f"__cell_{cell_id}_execution"


def error_slot(cell_id: str) -> str:
    return f"__cell_{cell_id}_error"


def state_slot(cell_id: str) -> str:
    return f"__cell_{cell_id}_state"


@dataclass
class CellRecord:
    """Everything the engine remembers about one script cell."""
    cell_id: str
    code: str
    exports: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    execution_count: int = 0
    state: CellState = CellState.IDLE
    last_error: BaseException | None = None
    output_container: OutputContainer | None = None
    output_values: list[Any] = field(default_factory=list)
    console_log: list[ConsoleEntry] = field(default_factory=list)
    is_static: bool = False
    last_export_values: dict[str, Any] = field(default_factory=dict)
    subscriptions: dict[str, Unsubscribe] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of ``evaluate_in_cell_context``; errors are data, not exceptions."""
    success: bool
    result: Any = None
    error: str | None = None


def _compile(code: str, filename: str) -> Any:
    return compile(code, filename, "exec", flags=_COMPILE_FLAGS)


async def _execute(code_object: Any, namespace: dict) -> Any:
    """Run compiled code, awaiting it if it used top-level ``await``."""
    result = eval(code_object, namespace)
    if code_object.co_flags & inspect.CO_COROUTINE:
        result = await result
    return result


class CodeCellEngine:
    """Runs script cells against a ReactiveStore."""

    def __init__(
        self,
        store: ReactiveStore,
        config: RuntimeConfig | None = None,
        storage: NotebookStorage | None = None,
    ) -> None:
        self.store = store
        self.config = config or RuntimeConfig()
        self.storage = storage if storage is not None else NotebookStorage()
        self._cells: dict[str, CellRecord] = {}
        # Per-cell in-flight flags (re-entrancy guard) and scheduled reruns.
        self._running: set[str] = set()
        self._pending: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    # --- records ---

    def _record(self, cell_id: str, code: str) -> CellRecord:
        record = self._cells.get(cell_id)
        if record is None:
            record = CellRecord(cell_id, code)
            self._cells[cell_id] = record
            self.store.define(execution_slot(cell_id), 0)
            self.store.define(error_slot(cell_id), None)
            self.store.define(state_slot(cell_id), CellState.IDLE.value)
            logger.debug("Created record for cell %s", cell_id)
        return record

    def update_code_cell(self, cell_id: str, code: str) -> None:
        """Replace the code a cell re-runs with, without running it."""
        self._record(cell_id, code).code = code
        logger.debug("Updated code of cell %s (%d chars)", cell_id, len(code))

    def cleanup_cell(self, cell_id: str) -> None:
        """Forget a deleted cell: drop subscriptions and authorship, keep values."""
        record = self._cells.pop(cell_id, None)
        self._pending.discard(cell_id)
        if record is None:
            return
        for unsubscribe in record.subscriptions.values():
            unsubscribe()
        record.subscriptions.clear()
        for name in record.exports:
            self.store.release(name, cell_id)
        logger.debug("Cleaned up cell %s", cell_id)

    def clear(self) -> None:
        for cell_id in list(self._cells):
            self.cleanup_cell(cell_id)

    # --- execution ---

    async def execute_code_cell(
        self,
        cell_id: str,
        code: str,
        output_container: OutputContainer | None = None,
        is_static: bool = False,
    ) -> list[str]:
        """Run a cell and return the names it exports.

        Script errors never propagate; inspect ``get_cell_error`` or the
        published error slot instead.
        """
        if cell_id in self._running:
            logger.debug("Cell %s is already running, trigger dropped", cell_id)
            return self.get_cell_exports(cell_id)

        record = self._record(cell_id, code)
        record.code = code
        record.is_static = is_static
        if output_container is not None:
            record.output_container = output_container

        self._running.add(cell_id)
        token = _cascade.set(_cascade.get() + (cell_id,))
        try:
            await self._run(record)
        finally:
            _cascade.reset(token)
            self._running.discard(cell_id)
        return list(record.exports)

    async def re_execute_code_cell(self, cell_id: str) -> list[str]:
        record = self._cells.get(cell_id)
        if record is None:
            raise CellNotFoundError(f"Code cell {cell_id} has not been executed before")
        return await self.execute_code_cell(
            cell_id, record.code, record.output_container, record.is_static
        )

    async def _run(self, record: CellRecord) -> None:
        cell_id = record.cell_id
        record.state = CellState.RUNNING
        self.store.set(state_slot(cell_id), CellState.RUNNING.value)

        if record.output_container is not None:
            record.output_container.clear()
        record.output_values = []
        record.console_log = []

        exports = Exports()
        console = CellConsole(record.console_log, cell_id, echo=self.config.console_echo)
        output = Output(record.output_values, record.output_container)
        namespace = CellNamespace(self.store, exports, self._scope(record, exports, console, output))

        failure: Exception | None = None
        with tracking(f"cell:{cell_id}") as scope:
            try:
                await _execute(_compile(record.code, f"<cell {cell_id}>"), namespace)
            except Exception as exc:
                failure = exc

        exported = exported_values(exports)
        record.execution_count += 1
        if failure is None:
            self._harvest(record, exported)
            own = set(exported)
        else:
            record.state = CellState.FAILED
            record.last_error = failure
            record.output_values.clear()
            console.error(f"Execution error in cell {cell_id}:", failure)
            logger.error("Error executing code cell %s", cell_id, exc_info=failure)
            own = set(exported) | set(record.exports)

        self._resubscribe(record, [name for name in scope.reads if name not in own])
        self._publish(record)
        logger.debug(
            "Cell %s %s: exports=%s dependencies=%s",
            cell_id, record.state.value, record.exports, record.dependencies,
        )

    def _scope(
        self, record: CellRecord, exports: Exports, console: CellConsole, output: Output
    ) -> Mapping[str, Any]:
        scope: dict[str, Any] = dict(self.config.capabilities)
        scope.update(
            __name__=f"cell_{record.cell_id}",
            exports=exports,
            console=console,
            print=console.print,
            storage=self.storage,
            output=output,
            display=output.display,
            out_el=record.output_container,
        )
        return scope

    def _harvest(self, record: CellRecord, exported: dict[str, Any]) -> None:
        """Commit this run's exports together and retract the stale ones."""
        cell_id = record.cell_id
        stale = [name for name in record.exports if name not in exported]
        with transaction():
            for name in stale:
                self.store.release(name, cell_id)
            for name, value in exported.items():
                self.store.claim(name, cell_id)
                self.store.set(name, value)
        if stale:
            logger.debug("Cell %s no longer exports %s", cell_id, stale)
        record.exports = list(exported)
        record.last_export_values = exported
        record.last_error = None
        record.state = CellState.SUCCEEDED

    def _publish(self, record: CellRecord) -> None:
        with transaction():
            self.store.set(execution_slot(record.cell_id), record.execution_count)
            self.store.set(error_slot(record.cell_id), record.last_error)
            self.store.set(state_slot(record.cell_id), record.state.value)

    # --- reactivity ---

    def _resubscribe(self, record: CellRecord, dependencies: list[str]) -> None:
        record.dependencies = dependencies
        wanted = set() if record.is_static else set(dependencies)
        for name in list(record.subscriptions):
            if name not in wanted:
                record.subscriptions.pop(name)()
        for name in dependencies:
            if name in wanted and name not in record.subscriptions:
                record.subscriptions[name] = self.store.subscribe(
                    name, functools.partial(self._on_dependency_changed, record.cell_id)
                )

    def _on_dependency_changed(self, cell_id: str, _value: Any) -> None:
        record = self._cells.get(cell_id)
        if record is None or record.is_static or cell_id in self._pending:
            return
        self._pending.add(cell_id)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (synchronous caller): drive the cascade to completion now.
            asyncio.run(self._rerun_and_drain(cell_id))
            return
        task = loop.create_task(self._rerun(cell_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _rerun(self, cell_id: str) -> None:
        self._pending.discard(cell_id)
        record = self._cells.get(cell_id)
        if record is None:
            return
        chain = _cascade.get()
        if cell_id in chain:
            self._report_cycle(record, chain[chain.index(cell_id):] + (cell_id,))
            return
        logger.debug("Dependency changed, re-executing cell %s", cell_id)
        try:
            await self.execute_code_cell(
                cell_id, record.code, record.output_container, record.is_static
            )
        except Exception:
            logger.exception("Error re-executing code cell %s", cell_id)

    def _report_cycle(self, record: CellRecord, chain: tuple[str, ...]) -> None:
        """Fail a cell re-triggered by its own cascade instead of running it again."""
        error = CycleError(chain)
        record.state = CellState.FAILED
        record.last_error = error
        console = CellConsole(record.console_log, record.cell_id, echo=self.config.console_echo)
        console.error(str(error))
        logger.warning("Cell %s not re-run: %s", record.cell_id, error)
        self._publish(record)

    async def _rerun_and_drain(self, cell_id: str) -> None:
        await self._rerun(cell_id)
        await self.drain()

    async def drain(self) -> None:
        """Wait until every scheduled rerun, including cascades, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- introspection ---

    async def evaluate_in_cell_context(self, cell_id: str, code: str) -> EvaluationResult:
        """Evaluate code against current values, untracked and without side effects
        on the cell's record. Meant for completions and live previews."""
        if cell_id in self._running:
            return EvaluationResult(False, error=f"Cell {cell_id} is currently executing")

        exports = Exports()
        console = CellConsole([], cell_id, echo=False)
        output = Output([], None)
        record = self._cells.get(cell_id) or CellRecord(cell_id, "")
        namespace = CellNamespace(self.store, exports, self._scope(record, exports, console, output))
        try:
            with untracked():
                try:
                    code_object = compile(code, f"<eval {cell_id}>", "eval", flags=_COMPILE_FLAGS)
                except SyntaxError:
                    code_object = _compile(code, f"<eval {cell_id}>")
                result = await _execute(code_object, namespace)
        except Exception as exc:
            return EvaluationResult(False, error=f"{type(exc).__name__}: {exc}")
        return EvaluationResult(True, result=result)

    def get_cell_exports(self, cell_id: str) -> list[str]:
        record = self._cells.get(cell_id)
        return list(record.exports) if record else []

    def get_cell_dependencies(self, cell_id: str) -> list[str]:
        record = self._cells.get(cell_id)
        return list(record.dependencies) if record else []

    def get_current_code(self, cell_id: str) -> str | None:
        record = self._cells.get(cell_id)
        return record.code if record else None

    def get_cell_output_values(self, cell_id: str) -> list[Any]:
        record = self._cells.get(cell_id)
        return list(record.output_values) if record else []

    def get_cell_return_value(self, cell_id: str) -> Any:
        values = self.get_cell_output_values(cell_id)
        if not values:
            return None
        return values[0] if len(values) == 1 else values

    def get_cell_execution_count(self, cell_id: str) -> int:
        record = self._cells.get(cell_id)
        return record.execution_count if record else 0

    def get_cell_error(self, cell_id: str) -> BaseException | None:
        record = self._cells.get(cell_id)
        return record.last_error if record else None

    def raise_for_error(self, cell_id: str) -> None:
        """Raise CellExecutionError if the last run of cell_id failed."""
        error = self.get_cell_error(cell_id)
        if error is not None:
            raise CellExecutionError(
                f"Cell {cell_id} failed: {type(error).__name__}: {error}"
            ) from error

    def get_cell_state(self, cell_id: str) -> CellState:
        record = self._cells.get(cell_id)
        return record.state if record else CellState.IDLE

    def get_cell_console(self, cell_id: str) -> list[ConsoleEntry]:
        record = self._cells.get(cell_id)
        return list(record.console_log) if record else []

    def get_cell_output_text(self, cell_id: str) -> str:
        lines = []
        for entry in self.get_cell_console(cell_id):
            prefix = "" if entry.level == "log" else f"[{entry.level.upper()}] "
            lines.append(prefix + entry.message)
        return "\n".join(lines)

    def is_running(self, cell_id: str) -> bool:
        return cell_id in self._running

    # --- storage bridge ---

    def load_storage_from_notebook(self, blob: Mapping[str, Any] | None) -> None:
        self.storage.load(blob)

    def export_storage_to_notebook(self) -> dict[str, Any]:
        return self.storage.export()

    def set_storage_change_handler(self, handler: Callable[[], None] | None) -> None:
        self.storage.set_change_handler(handler)
