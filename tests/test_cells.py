"""Tests for CodeCellEngine — script cells, exports and reactive reruns."""

import asyncio
import logging

import pytest

from cellflow import (
    CellExecutionError,
    CellNotFoundError,
    CellState,
    CodeCellEngine,
    CycleError,
    EnhancedFormulaEngine,
    OutputBuffer,
    ReactiveStore,
    RuntimeConfig,
)
from cellflow.cells import error_slot, execution_slot, state_slot


class _Html:
    def __init__(self, body):
        self.body = body

    def _repr_html_(self):
        return self.body


@pytest.fixture
def store():
    return ReactiveStore()


@pytest.fixture
def engine(store):
    return CodeCellEngine(store)


class TestExports:
    @pytest.mark.asyncio
    async def test_exports_become_variables(self, store, engine):
        names = await engine.execute_code_cell("c1", "exports.a = 1\nexports.b = a + 1")
        assert names == ["a", "b"]
        assert store.peek("a") == 1
        assert store.peek("b") == 2
        assert engine.get_cell_dependencies("c1") == []
        assert store.owner_of("a") == "c1"

    @pytest.mark.asyncio
    async def test_item_syntax(self, store, engine):
        await engine.execute_code_cell("c1", "exports['total'] = 3")
        assert store.peek("total") == 3

    @pytest.mark.asyncio
    async def test_locals_are_not_exported_or_tracked(self, store, engine):
        await engine.execute_code_cell("c1", "t = 3\nexports.u = t * 2")
        assert engine.get_cell_exports("c1") == ["u"]
        assert engine.get_cell_dependencies("c1") == []
        assert not store.has("t")

    @pytest.mark.asyncio
    async def test_stale_export_retracted_value_kept(self, store, engine):
        await engine.execute_code_cell("c1", "exports.a = 1\nexports.b = 2")
        await engine.execute_code_cell("c1", "exports.a = 1")
        assert engine.get_cell_exports("c1") == ["a"]
        assert store.peek("b") == 2
        assert store.owner_of("b") is None

    @pytest.mark.asyncio
    async def test_exports_commit_as_one_transaction(self, store, engine):
        formulas = EnhancedFormulaEngine(store)
        formulas.create_formula("area", "w * h")
        await engine.execute_code_cell("c1", "exports.w = 2\nexports.h = 3")
        assert store.peek("area") == 6
        assert formulas.get_run_count("area") == 2


class TestScope:
    @pytest.mark.asyncio
    async def test_reads_become_dependencies(self, store, engine):
        store.define("x", 5)
        await engine.execute_code_cell("c1", "exports.y = x * 2")
        assert store.peek("y") == 10
        assert engine.get_cell_dependencies("c1") == ["x"]

    @pytest.mark.asyncio
    async def test_undefined_name_reads_none_and_is_tracked(self, store, engine):
        await engine.execute_code_cell("c1", "exports.y = (z or 0) + 1")
        assert store.peek("y") == 1
        assert engine.get_cell_dependencies("c1") == ["z"]
        store.set("z", 5)
        await engine.drain()
        assert store.peek("y") == 6

    @pytest.mark.asyncio
    async def test_builtins_resolve(self, store, engine):
        await engine.execute_code_cell("c1", "exports.n = len([1, 2])")
        assert store.peek("n") == 2
        assert engine.get_cell_dependencies("c1") == []

    @pytest.mark.asyncio
    async def test_functions_see_reactive_names(self, store, engine):
        store.define("x", 4)
        await engine.execute_code_cell("c1", "def f():\n    return x + 1\nexports.y = f()")
        assert store.peek("y") == 5
        assert engine.get_cell_dependencies("c1") == ["x"]

    @pytest.mark.asyncio
    async def test_default_capabilities(self, store, engine):
        await engine.execute_code_cell("c1", "exports.r = math.sqrt(16)")
        assert store.peek("r") == 4.0

    @pytest.mark.asyncio
    async def test_configured_capabilities(self, store):
        engine = CodeCellEngine(store, RuntimeConfig(capabilities={"answer": 42}))
        await engine.execute_code_cell("c1", "exports.v = answer")
        assert store.peek("v") == 42

    @pytest.mark.asyncio
    async def test_top_level_await(self, store, engine):
        code = "import asyncio\nawait asyncio.sleep(0)\nexports.done = True"
        await engine.execute_code_cell("c1", code)
        assert store.peek("done") is True


class TestReactivity:
    @pytest.mark.asyncio
    async def test_rerun_on_dependency_change(self, store, engine):
        store.define("x", 5)
        await engine.execute_code_cell("c1", "exports.y = x * 2")
        store.set("x", 6)
        await engine.drain()
        assert store.peek("y") == 12
        assert engine.get_cell_execution_count("c1") == 2

    @pytest.mark.asyncio
    async def test_cascade_between_cells(self, store, engine):
        await engine.execute_code_cell("c1", "exports.a = 1\nexports.b = a + 1")
        await engine.execute_code_cell("c2", "exports.c = b * 10")
        assert store.peek("c") == 20
        await engine.execute_code_cell("c1", "exports.a = 5\nexports.b = a + 1")
        await engine.drain()
        assert store.peek("c") == 60
        assert engine.get_cell_dependencies("c2") == ["b"]

    @pytest.mark.asyncio
    async def test_reruns_coalesce(self, store, engine):
        store.update({"x": 1, "y": 1})
        await engine.execute_code_cell("c1", "exports.s = x + y")
        store.set("x", 2)
        store.set("y", 2)
        await engine.drain()
        assert store.peek("s") == 4
        assert engine.get_cell_execution_count("c1") == 2

    @pytest.mark.asyncio
    async def test_static_cell_does_not_rerun(self, store, engine):
        store.define("x", 1)
        await engine.execute_code_cell("c1", "exports.y = x + 1", is_static=True)
        assert engine.get_cell_dependencies("c1") == ["x"]
        store.set("x", 10)
        await engine.drain()
        assert store.peek("y") == 2
        assert engine.get_cell_execution_count("c1") == 1

    @pytest.mark.asyncio
    async def test_trigger_while_running_is_dropped(self, store, engine):
        code = "import asyncio\nawait asyncio.sleep(0.01)\nexports.n = 1"
        first = asyncio.create_task(engine.execute_code_cell("c1", code))
        await asyncio.sleep(0)
        assert engine.is_running("c1")
        assert engine.get_cell_state("c1") is CellState.RUNNING
        assert await engine.execute_code_cell("c1", code) == []
        assert await first == ["n"]
        assert engine.get_cell_execution_count("c1") == 1

    @pytest.mark.asyncio
    async def test_cleanup_stops_reruns(self, store, engine):
        store.define("x", 1)
        await engine.execute_code_cell("c1", "exports.y = x")
        engine.cleanup_cell("c1")
        store.set("x", 2)
        await engine.drain()
        assert store.peek("y") == 1
        assert engine.get_cell_exports("c1") == []
        assert store.owner_of("y") is None

    @pytest.mark.asyncio
    async def test_cycle_between_cells_is_reported(self, store, engine):
        await engine.execute_code_cell("c1", "exports.a = (b or 0) + 1")
        await engine.execute_code_cell("c2", "exports.b = (a or 0) + 1")
        await asyncio.wait_for(engine.drain(), 1.0)
        error = engine.get_cell_error("c2")
        assert isinstance(error, CycleError)
        assert str(error) == "circular dependency: c2 -> c1 -> c2"
        assert engine.get_cell_state("c2") is CellState.FAILED
        assert store.peek(state_slot("c2")) == "failed"
        assert engine.get_cell_execution_count("c1") == 2

    @pytest.mark.asyncio
    async def test_cycle_through_formula_is_reported(self, store, engine):
        formulas = EnhancedFormulaEngine(store)
        await engine.execute_code_cell("c1", "exports.a = (f or 0) + 1")
        formulas.create_formula("f", "a * 2")
        await asyncio.wait_for(engine.drain(), 1.0)
        assert isinstance(engine.get_cell_error("c1"), CycleError)

    @pytest.mark.asyncio
    async def test_external_change_after_cycle_runs_again(self, store, engine):
        await engine.execute_code_cell("c1", "exports.a = (b or 0) + 1")
        await engine.execute_code_cell("c2", "exports.b = (a or 0) + 1")
        await asyncio.wait_for(engine.drain(), 1.0)
        count = engine.get_cell_execution_count("c1")
        await engine.execute_code_cell("c2", "exports.b = 100")
        await asyncio.wait_for(engine.drain(), 1.0)
        assert store.peek("a") == 101
        assert engine.get_cell_execution_count("c1") == count + 1

    def test_rerun_without_running_loop(self, store, engine):
        store.define("x", 1)
        asyncio.run(engine.execute_code_cell("c1", "exports.y = x + 1"))
        store.set("x", 2)
        assert store.peek("y") == 3


class TestFailure:
    @pytest.mark.asyncio
    async def test_error_is_contained(self, store, engine, caplog):
        await engine.execute_code_cell("c1", "exports.v = 1")
        with caplog.at_level(logging.ERROR, logger="cellflow.cells"):
            names = await engine.execute_code_cell("c1", "exports.v = 2\nexports.w = 1 / 0")
        assert names == ["v"]
        assert store.peek("v") == 1
        assert not store.has("w")
        assert engine.get_cell_state("c1") is CellState.FAILED
        assert isinstance(engine.get_cell_error("c1"), ZeroDivisionError)
        assert isinstance(store.peek(error_slot("c1")), ZeroDivisionError)
        assert "Error executing code cell c1" in caplog.text

    @pytest.mark.asyncio
    async def test_error_logged_to_console(self, engine):
        await engine.execute_code_cell("c1", "raise ValueError('bad input')")
        entry = engine.get_cell_console("c1")[-1]
        assert entry.level == "error"
        assert "bad input" in entry.message

    @pytest.mark.asyncio
    async def test_failed_cell_reruns_when_upstream_fixed(self, store, engine):
        store.define("d", 0)
        await engine.execute_code_cell("c1", "exports.v = 10 / d")
        assert engine.get_cell_dependencies("c1") == ["d"]
        store.set("d", 2)
        await engine.drain()
        assert store.peek("v") == 5
        assert engine.get_cell_state("c1") is CellState.SUCCEEDED
        assert engine.get_cell_error("c1") is None

    @pytest.mark.asyncio
    async def test_syntax_error_is_a_failed_run(self, engine):
        await engine.execute_code_cell("c1", "exports.v = (")
        assert isinstance(engine.get_cell_error("c1"), SyntaxError)
        assert engine.get_cell_execution_count("c1") == 1

    @pytest.mark.asyncio
    async def test_raise_for_error(self, engine):
        await engine.execute_code_cell("c1", "exports.v = 1")
        engine.raise_for_error("c1")
        await engine.execute_code_cell("c1", "1 / 0")
        with pytest.raises(CellExecutionError, match="ZeroDivisionError") as info:
            engine.raise_for_error("c1")
        assert isinstance(info.value.__cause__, ZeroDivisionError)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_published_slots(self, store, engine):
        states = []
        store.subscribe(state_slot("c1"), states.append)
        await engine.execute_code_cell("c1", "exports.v = 1")
        assert states == ["idle", "running", "succeeded"]
        assert store.peek(execution_slot("c1")) == 1
        assert store.peek(error_slot("c1")) is None

    @pytest.mark.asyncio
    async def test_failed_state_published(self, store, engine):
        await engine.execute_code_cell("c1", "1 / 0")
        assert store.peek(state_slot("c1")) == "failed"

    def test_update_code_cell_defines_slots(self, store, engine):
        engine.update_code_cell("c1", "exports.v = 1")
        assert engine.get_current_code("c1") == "exports.v = 1"
        assert engine.get_cell_state("c1") is CellState.IDLE
        assert store.peek(execution_slot("c1")) == 0

    @pytest.mark.asyncio
    async def test_re_execute_uses_updated_code(self, store, engine):
        await engine.execute_code_cell("c1", "exports.v = 1")
        engine.update_code_cell("c1", "exports.v = 2")
        assert await engine.re_execute_code_cell("c1") == ["v"]
        assert store.peek("v") == 2
        assert engine.get_cell_execution_count("c1") == 2

    @pytest.mark.asyncio
    async def test_re_execute_unknown_cell(self, engine):
        with pytest.raises(CellNotFoundError):
            await engine.re_execute_code_cell("nope")

    def test_unknown_cell_queries(self, engine):
        assert engine.get_cell_exports("nope") == []
        assert engine.get_current_code("nope") is None
        assert engine.get_cell_execution_count("nope") == 0
        assert engine.get_cell_state("nope") is CellState.IDLE


class TestOutput:
    @pytest.mark.asyncio
    async def test_output_values(self, engine):
        await engine.execute_code_cell("c1", "output(1)\noutput('two')")
        assert engine.get_cell_output_values("c1") == [1, "two"]
        assert engine.get_cell_return_value("c1") == [1, "two"]

    @pytest.mark.asyncio
    async def test_single_return_value(self, engine):
        await engine.execute_code_cell("c1", "output(42)")
        assert engine.get_cell_return_value("c1") == 42

    @pytest.mark.asyncio
    async def test_table(self, engine):
        await engine.execute_code_cell("c1", "output.table([{'a': 1}])")
        (table,) = engine.get_cell_output_values("c1")
        assert table.data == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_rich_output_goes_to_container(self, store):
        engine = CodeCellEngine(store, RuntimeConfig(capabilities={"Html": _Html}))
        buffer = OutputBuffer()
        await engine.execute_code_cell("c1", "display(Html('<b>hi</b>'))\noutput(Html('x'))", buffer)
        assert [item.body for item in buffer.items] == ["<b>hi</b>", "x"]
        assert engine.get_cell_output_values("c1") == []

    @pytest.mark.asyncio
    async def test_container_cleared_each_run(self, store):
        engine = CodeCellEngine(store, RuntimeConfig(capabilities={"Html": _Html}))
        buffer = OutputBuffer()
        await engine.execute_code_cell("c1", "display(Html('a'))", buffer)
        await engine.re_execute_code_cell("c1")
        assert len(buffer) == 1

    @pytest.mark.asyncio
    async def test_out_el_is_the_container(self, store, engine):
        buffer = OutputBuffer()
        await engine.execute_code_cell("c1", "out_el.append('raw')", buffer)
        assert buffer.items == ["raw"]

    @pytest.mark.asyncio
    async def test_output_cleared_on_failure(self, engine):
        await engine.execute_code_cell("c1", "output(1)\n1 / 0")
        assert engine.get_cell_output_values("c1") == []


class TestConsole:
    @pytest.mark.asyncio
    async def test_print_and_console(self, engine):
        await engine.execute_code_cell("c1", "print('hi', 1)\nconsole.warn('careful')")
        assert engine.get_cell_output_text("c1") == "hi 1\n[WARN] careful"
        assert [e.level for e in engine.get_cell_console("c1")] == ["log", "warn"]

    @pytest.mark.asyncio
    async def test_console_echoes_to_logging(self, engine, caplog):
        with caplog.at_level(logging.INFO, logger="cellflow.console"):
            await engine.execute_code_cell("c1", "console.info('loaded', 3)")
        assert "[c1] loaded 3" in caplog.text

    @pytest.mark.asyncio
    async def test_echo_disabled(self, store, caplog):
        engine = CodeCellEngine(store, RuntimeConfig(console_echo=False))
        with caplog.at_level(logging.DEBUG, logger="cellflow.console"):
            await engine.execute_code_cell("c1", "print('quiet')")
        assert "quiet" not in caplog.text
        assert engine.get_cell_output_text("c1") == "quiet"

    @pytest.mark.asyncio
    async def test_console_reset_each_run(self, engine):
        await engine.execute_code_cell("c1", "print('once')")
        await engine.re_execute_code_cell("c1")
        assert engine.get_cell_output_text("c1") == "once"


class TestStorage:
    @pytest.mark.asyncio
    async def test_storage_round_trip(self, store, engine):
        changes = []
        engine.load_storage_from_notebook({"k": 1})
        engine.set_storage_change_handler(lambda: changes.append(True))
        await engine.execute_code_cell("c1", "exports.v = storage.get('k')\nstorage.set('k2', 2)")
        assert store.peek("v") == 1
        assert engine.export_storage_to_notebook() == {"k": 1, "k2": 2}
        assert changes == [True]

    @pytest.mark.asyncio
    async def test_storage_writes_do_not_rerun(self, store, engine):
        await engine.execute_code_cell("c1", "storage['n'] = storage.get('n', 0) + 1")
        await engine.drain()
        assert engine.get_cell_execution_count("c1") == 1


class TestEvaluateInContext:
    @pytest.mark.asyncio
    async def test_expression(self, store, engine):
        store.define("x", 3)
        result = await engine.evaluate_in_cell_context("c1", "x * 2")
        assert result.success
        assert result.result == 6

    @pytest.mark.asyncio
    async def test_error_is_reported(self, engine):
        result = await engine.evaluate_in_cell_context("c1", "1 / 0")
        assert not result.success
        assert result.error.startswith("ZeroDivisionError")

    @pytest.mark.asyncio
    async def test_does_not_touch_cell(self, store, engine):
        store.define("x", 1)
        await engine.execute_code_cell("c1", "exports.y = 1")
        await engine.evaluate_in_cell_context("c1", "x")
        assert engine.get_cell_dependencies("c1") == []
        assert engine.get_cell_execution_count("c1") == 1

    @pytest.mark.asyncio
    async def test_statements(self, engine):
        result = await engine.evaluate_in_cell_context("c1", "y = 1")
        assert result.success
        assert result.result is None
