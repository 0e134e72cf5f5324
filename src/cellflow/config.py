"""cellflow configuration.

RuntimeConfig is the central configuration object, frozen after creation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Any, Callable, Mapping

from cellflow._errors import InvalidDefinitionError


def _default_capabilities() -> Mapping[str, Any]:
    return MappingProxyType({"math": math})


def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """Configuration for a reactive notebook session.

    Attributes:
        capabilities: Names injected into every script cell namespace
            (the curated library surface), e.g. ``{"np": numpy}``.
        custom_functions: Extra helpers made available to formula expressions.
        throttle_interval: Minimum seconds between intermediate commits of a
            high-frequency input (see ``ThrottledCommitter``).
        console_echo: Forward captured cell console output to the
            ``cellflow.console`` logger as well as the cell's console log.

    """

    capabilities: Mapping[str, Any] = field(default_factory=_default_capabilities)
    custom_functions: Mapping[str, Callable[..., Any]] = field(default_factory=_empty)
    throttle_interval: float = 0.05
    console_echo: bool = True

    def __post_init__(self) -> None:
        if self.throttle_interval < 0:
            raise InvalidDefinitionError(
                f"throttle_interval must be >= 0, got {self.throttle_interval!r}"
            )
        # Freeze caller-supplied dicts so a shared config can't be mutated.
        object.__setattr__(self, "capabilities", MappingProxyType(dict(self.capabilities)))
        object.__setattr__(
            self, "custom_functions", MappingProxyType(dict(self.custom_functions))
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RuntimeConfig:
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidDefinitionError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**dict(data))
