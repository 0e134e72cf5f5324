"""ReactiveSystem — one notebook session's engines wired to one store.

``create_reactive_system`` builds the store, both formula engines and the code
cell engine from a single ``RuntimeConfig``. ``load_notebook`` turns a list of
declarative cell definitions into live reactive state.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Union

from cellflow._errors import InvalidDefinitionError
from cellflow.cells import CodeCellEngine
from cellflow.config import RuntimeConfig
from cellflow.enhanced import EnhancedFormulaEngine
from cellflow.formula import FormulaEngine
from cellflow.inputs import InputCell, ThrottledCommitter, define_input
from cellflow.markdown import MarkdownBinding
from cellflow.storage import NotebookStorage
from cellflow.store import ReactiveStore

logger = logging.getLogger("cellflow.system")


@dataclass(frozen=True)
class InputCellDefinition:
    id: str
    variable_name: str
    default_value: Any = None
    min: float | None = None
    max: float | None = None
    step: float | None = None


@dataclass(frozen=True)
class MarkdownCellDefinition:
    id: str
    content: str
    variables: tuple[str, ...] | None = None


@dataclass(frozen=True)
class FormulaCellDefinition:
    id: str
    variable_name: str
    formula: str


@dataclass(frozen=True)
class CodeCellDefinition:
    id: str
    code: str
    is_static: bool = False


CellDefinition = Union[
    InputCellDefinition, MarkdownCellDefinition, FormulaCellDefinition, CodeCellDefinition
]


def cell_from_dict(data: Mapping[str, Any]) -> CellDefinition:
    """Build a definition from a notebook document entry (camelCase keys)."""
    kind = data.get("type")
    cell_id = data.get("id", "")
    if kind == "input":
        props = data.get("props") or {}
        return InputCellDefinition(
            cell_id,
            data.get("variableName", ""),
            data.get("defaultValue"),
            min=props.get("min"),
            max=props.get("max"),
            step=props.get("step"),
        )
    if kind == "markdown":
        variables = data.get("variables")
        return MarkdownCellDefinition(
            cell_id, data.get("content", ""), tuple(variables) if variables else None
        )
    if kind == "formula":
        return FormulaCellDefinition(cell_id, data.get("variableName", ""), data.get("formula", ""))
    if kind == "code":
        return CodeCellDefinition(cell_id, data.get("code", ""), bool(data.get("isStatic", False)))
    raise InvalidDefinitionError(f"Unknown cell type {kind!r} for cell {cell_id!r}")


@dataclass
class ReactiveSystem:
    """The engines of one notebook session, sharing one store."""

    store: ReactiveStore
    formula_engine: FormulaEngine
    enhanced_formula_engine: EnhancedFormulaEngine
    code_cell_engine: CodeCellEngine
    config: RuntimeConfig
    inputs: dict[str, InputCell] = field(default_factory=dict)
    markdown_bindings: dict[str, MarkdownBinding] = field(default_factory=dict)

    @property
    def storage(self) -> NotebookStorage:
        return self.code_cell_engine.storage

    def throttled(self, name: str) -> ThrottledCommitter:
        """A committer for name using the configured throttle interval."""
        return ThrottledCommitter(self.store, name, self.config.throttle_interval)

    def reset(self) -> None:
        """Tear down every cell, formula, binding and value."""
        for binding in self.markdown_bindings.values():
            binding.dispose()
        self.markdown_bindings.clear()
        self.inputs.clear()
        self.code_cell_engine.clear()
        self.formula_engine.clear()
        self.enhanced_formula_engine.clear()
        self.store.clear()
        logger.debug("Reactive system reset")

    async def load_notebook(
        self,
        cells: Iterable[CellDefinition | Mapping[str, Any]],
        storage: Mapping[str, Any] | None = None,
        on_render: Callable[[str, str], None] | None = None,
    ) -> dict[str, MarkdownBinding]:
        """Initialize a notebook from its cell definitions.

        Inputs are defined first, then formulas are created, then code cells
        run in document order, and finally markdown cells are bound. Returns
        the markdown bindings keyed by cell id; ``on_render(cell_id, text)``
        is called whenever one re-renders.
        """
        definitions = [
            cell if not isinstance(cell, Mapping) else cell_from_dict(cell) for cell in cells
        ]
        self.reset()
        self.code_cell_engine.load_storage_from_notebook(storage)

        for cell in definitions:
            if isinstance(cell, InputCellDefinition):
                self.inputs[cell.id] = define_input(
                    self.store, cell.variable_name, cell.default_value,
                    min=cell.min, max=cell.max, step=cell.step,
                )
        for cell in definitions:
            if isinstance(cell, FormulaCellDefinition):
                self.enhanced_formula_engine.create_formula(cell.variable_name, cell.formula)
        for cell in definitions:
            if isinstance(cell, CodeCellDefinition):
                await self.code_cell_engine.execute_code_cell(
                    cell.id, cell.code, is_static=cell.is_static
                )
        await self.code_cell_engine.drain()
        for cell in definitions:
            if isinstance(cell, MarkdownCellDefinition):
                callback = functools.partial(on_render, cell.id) if on_render else None
                self.markdown_bindings[cell.id] = MarkdownBinding(
                    self.store, cell.content, callback, cell.variables
                )

        logger.info(
            "Loaded notebook: %d cells (%d code, %d markdown)",
            len(definitions),
            sum(isinstance(c, CodeCellDefinition) for c in definitions),
            len(self.markdown_bindings),
        )
        return dict(self.markdown_bindings)


def create_reactive_system(config: RuntimeConfig | None = None) -> ReactiveSystem:
    """Build a store and the three engines around it."""
    config = config or RuntimeConfig()
    store = ReactiveStore()
    return ReactiveSystem(
        store=store,
        formula_engine=FormulaEngine(store, config.custom_functions),
        enhanced_formula_engine=EnhancedFormulaEngine(store, config.custom_functions),
        code_cell_engine=CodeCellEngine(store, config),
        config=config,
    )
