"""
Bus configuration.

DataBus takes a BusConfig plus keyword overrides:

    bus = DataBus(max_retained_deltas=10, raise_on_double_dispose=True)

    config = BusConfig.from_mapping({"late_registration": "reject"})
    bus = DataBus(config)
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Mapping


class LateRegistration(Enum):
    """What register_provider does when subscriptions already exist beneath the node."""

    RETROFIT = "retrofit"
    REJECT = "reject"


@dataclass(frozen=True)
class BusConfig:
    """
    Tunables for a DataBus.

    Attributes:
        max_retained_deltas: Deltas kept per node before the oldest are evicted
        separator: Joins path segments into canonical keys
        prune_empty_nodes: Drop nodes left with no value, subscribers or providers
        raise_on_double_dispose: Raise DoubleDisposeError instead of warning
        late_registration: Policy for providers registered under live paths
    """

    max_retained_deltas: int = 100
    separator: str = "/"
    prune_empty_nodes: bool = True
    raise_on_double_dispose: bool = False
    late_registration: LateRegistration = LateRegistration.RETROFIT

    def __post_init__(self):
        if not isinstance(self.max_retained_deltas, int) or self.max_retained_deltas < 1:
            raise ValueError(
                f"max_retained_deltas must be a positive integer, got {self.max_retained_deltas!r}"
            )
        if not isinstance(self.separator, str) or not self.separator:
            raise ValueError("separator must be a non-empty string")
        if self.separator == "\\":
            raise ValueError("separator cannot be the escape character '\\'")
        if not isinstance(self.late_registration, LateRegistration):
            # Accept the enum's string value, e.g. "reject"
            object.__setattr__(
                self, "late_registration", LateRegistration(self.late_registration)
            )

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "BusConfig":
        """Build a config from a plain mapping, e.g. a parsed JSON or TOML section."""
        known = {f.name for f in fields(cls)}
        unknown = set(mapping) - known
        if unknown:
            raise ValueError(f"Unknown bus config option(s): {sorted(unknown)}")
        return cls(**dict(mapping))


DEFAULT_CONFIG = BusConfig()
