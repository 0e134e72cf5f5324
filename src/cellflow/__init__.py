"""cellflow: reactive notebook runtime — variables, formulas and script cells."""

from importlib.metadata import version as _version

__version__ = _version("cellflow")

from cellflow._errors import (
    CellExecutionError,
    CellflowError,
    CellNotFoundError,
    CycleError,
    FormulaError,
    InvalidDefinitionError,
)
from cellflow._scope import OutputBuffer, OutputContainer
from cellflow._tracking import batched, get_pending_count, transaction
from cellflow.cells import CellState, CodeCellEngine, EvaluationResult
from cellflow.config import RuntimeConfig
from cellflow.enhanced import EnhancedFormulaEngine
from cellflow.formula import FormulaEngine
from cellflow.inputs import InputCell, ThrottledCommitter, define_input
from cellflow.markdown import MarkdownBinding, extract_variables, render_markdown_with_values
from cellflow.storage import NotebookStorage
from cellflow.store import ReactiveStore
from cellflow.system import (
    CodeCellDefinition,
    FormulaCellDefinition,
    InputCellDefinition,
    MarkdownCellDefinition,
    ReactiveSystem,
    create_reactive_system,
)
from cellflow.value import ReactiveValue
# textual bridge NOT auto-imported, opt-in only

__all__ = [
    "ReactiveValue",
    "ReactiveStore",
    "batched",
    "transaction",
    "get_pending_count",
    "FormulaEngine",
    "EnhancedFormulaEngine",
    "CodeCellEngine",
    "CellState",
    "EvaluationResult",
    "OutputBuffer",
    "OutputContainer",
    "NotebookStorage",
    "InputCell",
    "ThrottledCommitter",
    "define_input",
    "MarkdownBinding",
    "extract_variables",
    "render_markdown_with_values",
    "RuntimeConfig",
    "ReactiveSystem",
    "create_reactive_system",
    "InputCellDefinition",
    "MarkdownCellDefinition",
    "FormulaCellDefinition",
    "CodeCellDefinition",
    "CellflowError",
    "InvalidDefinitionError",
    "FormulaError",
    "CycleError",
    "CellNotFoundError",
    "CellExecutionError",
]
