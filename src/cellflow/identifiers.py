"""Free-identifier extraction for natural expressions.

Dependencies of an expression without reference markers are inferred
statically: collect every name token, then subtract keywords, literals,
builtins and well-known modules. What remains is treated as a reactive
variable reference. A subtracted name that already exists as a reactive
variable is kept: the variable shadows the builtin. The result is
conservative — a name used only in a dead branch, or bound by a lambda,
still counts.
"""

from __future__ import annotations

import builtins
import io
import keyword
import re
import token
import tokenize
from typing import Container, Iterable

KNOWN_MODULES = frozenset(
    {"math", "statistics", "datetime", "json", "random", "decimal", "fractions"}
)

EXCLUDED = (
    frozenset(keyword.kwlist)
    | frozenset(keyword.softkwlist)
    | frozenset(dir(builtins))
    | KNOWN_MODULES
)

_WORD = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")
_MARKER = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


def name_tokens(expression: str) -> list[str]:
    """Name tokens of expression in order, skipping attribute names and strings.

    Text the tokenizer rejects (unbalanced brackets, stray quotes) falls back
    to a plain word-boundary scan so half-typed formulas still get a
    dependency set.
    """
    names: list[str] = []
    previous: tokenize.TokenInfo | None = None
    try:
        for tok in tokenize.generate_tokens(io.StringIO(expression).readline):
            if tok.type == token.NAME and not (
                previous is not None and previous.type == token.OP and previous.string == "."
            ):
                names.append(tok.string)
            if tok.type not in (token.NL, token.NEWLINE, token.COMMENT):
                previous = tok
    except (tokenize.TokenError, SyntaxError):
        return _WORD.findall(expression)
    return names


def free_identifiers(
    expression: str,
    exclude: Iterable[str] = (),
    defined: Container[str] = (),
) -> list[str]:
    """Ordered, de-duplicated candidate dependencies of a natural expression.

    A name in ``defined`` (an existing reactive variable) is kept even when it
    shadows a builtin, module or helper, the same precedence script cells use.
    Hard keywords are never dependencies.
    """
    skip = EXCLUDED | frozenset(exclude)
    seen: dict[str, None] = {}
    for name in name_tokens(expression):
        if name not in skip or (name in defined and not keyword.iskeyword(name)):
            seen[name] = None
    return list(seen)


def marked_identifiers(expression: str) -> list[str]:
    """Ordered, de-duplicated ``$name`` references."""
    return list(dict.fromkeys(_MARKER.findall(expression)))


def strip_markers(expression: str) -> str:
    """Rewrite ``$name`` references as plain ``name``."""
    return _MARKER.sub(r"\1", expression)
