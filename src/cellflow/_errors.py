"""cellflow error hierarchy.

All cellflow-specific errors inherit from CellflowError for easy catching.
Evaluation failures are recovered at the node that raised them; these types
describe them, they rarely escape the engines.
"""


class CellflowError(Exception):
    """Base error for all cellflow operations."""


class InvalidDefinitionError(CellflowError, ValueError):
    """A cell or formula definition was rejected before any state changed."""


class FormulaError(CellflowError):
    """A formula expression failed to parse or evaluate."""


class CycleError(CellflowError):
    """A formula or cell was re-triggered by its own recomputation."""

    def __init__(self, chain: tuple[str, ...]) -> None:
        self.chain = chain
        super().__init__("circular dependency: " + " -> ".join(chain))


class CellNotFoundError(CellflowError, KeyError):
    """No execution record exists for the requested cell id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "cell not found"


class CellExecutionError(CellflowError):
    """A script cell body raised. The original exception is ``__cause__``."""
