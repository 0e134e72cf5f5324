"""Enhanced formulas — natural expressions without reference markers.

``price * 1.08`` depends on ``price`` because ``price`` is a free identifier
that is not a keyword, builtin, well-known module or formula helper. An
existing variable named like one of those (``count``, ``id``) shadows it.
Legacy ``$price`` text is accepted and read the same way.
"""

from __future__ import annotations

import datetime
import decimal
import fractions
import json
import math
import random
import statistics
from typing import Any

from cellflow.formula import BaseFormulaEngine
from cellflow.identifiers import free_identifiers, strip_markers

_MODULES = {
    "math": math,
    "statistics": statistics,
    "datetime": datetime,
    "json": json,
    "random": random,
    "decimal": decimal,
    "fractions": fractions,
}


class EnhancedFormulaEngine(BaseFormulaEngine):
    """Formulas in plain Python expression syntax: ``price * qty``."""

    def _dependencies_of(self, formula: str) -> list[str]:
        return free_identifiers(
            strip_markers(formula), exclude=self._functions, defined=self.store
        )

    def _rewrite(self, formula: str) -> str:
        return strip_markers(formula)

    def _namespace(self, dependencies: list[str]) -> dict[str, Any]:
        namespace = super()._namespace([])
        namespace.update(_MODULES)
        for name in dependencies:
            namespace[name] = self.store.get_value(name)
        return namespace
