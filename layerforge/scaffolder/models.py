"""Value types shared across the scaffolder.

``FeatureSpec`` and ``PropertySpec`` are frozen dataclasses: once the
:class:`~layerforge.scaffolder.spec.SpecResolver` has produced one it is never
mutated, and edits produce a new spec.  Types that are read from
configuration files (option definitions) are Pydantic v2 models so they are
validated on load.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .naming import NamingVariantSet, derive

OptionValue = Union[bool, str]


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Operation(str, Enum):
    """Operations a feature can expose."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    SEARCH = "search"


OPERATION_ORDER: tuple[Operation, ...] = tuple(Operation)


class PropertyKind(str, Enum):
    """Scalar kinds a feature property may have."""

    STRING = "string"
    INT = "int"
    LONG = "long"
    DECIMAL = "decimal"
    DOUBLE = "double"
    BOOL = "bool"
    DATETIME = "datetime"
    DATE = "date"
    GUID = "guid"


class CollisionPolicy(str, Enum):
    """What to do when an artifact's target path already has content."""

    OVERWRITE = "overwrite"
    SKIP = "skip"
    MERGE_GUARDED = "merge-guarded"


class OptionKind(str, Enum):
    BOOL = "bool"
    ENUM = "enum"


# ---------------------------------------------------------------------------
# Option definitions (catalog configuration)
# ---------------------------------------------------------------------------


class OptionDefinition(BaseModel):
    """A recognised feature option and the values it accepts."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Option key, e.g. 'softDelete'")
    kind: OptionKind = Field(default=OptionKind.BOOL)
    choices: tuple[str, ...] = Field(
        default=(), description="Allowed values for enum options"
    )
    description: str = Field(default="")

    @model_validator(mode="after")
    def _check_choices(self) -> "OptionDefinition":
        if self.kind is OptionKind.ENUM and not self.choices:
            raise ValueError(f"enum option {self.name!r} declares no choices")
        if self.kind is OptionKind.BOOL and self.choices:
            raise ValueError(f"bool option {self.name!r} must not declare choices")
        return self

    def coerce(self, raw: Any) -> OptionValue:
        """Convert a raw value (``"true"``, ``True``, ``"SqlServer"``...) to the option's type.

        Raises:
            ValueError: If the value is not acceptable for this option.
        """
        if self.kind is OptionKind.BOOL:
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in ("true", "yes", "on", "1"):
                return True
            if text in ("false", "no", "off", "0"):
                return False
            raise ValueError(f"option {self.name!r} expects a boolean, got {raw!r}")

        text = str(raw).strip()
        for choice in self.choices:
            if choice.lower() == text.lower():
                return choice
        raise ValueError(
            f"option {self.name!r} expects one of {', '.join(self.choices)}, got {raw!r}"
        )


# ---------------------------------------------------------------------------
# Feature specification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PropertySpec:
    """One field of the feature's entity."""

    name: str
    kind: PropertyKind
    required: bool = True
    default_value: Optional[str] = None

    @property
    def pascal_name(self) -> str:
        return self.name[:1].upper() + self.name[1:]

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "required": self.required,
            "default_value": self.default_value,
        }


@dataclass(frozen=True)
class FeatureSpec:
    """Canonical, immutable description of one feature to scaffold."""

    base_name: str
    properties: tuple[PropertySpec, ...] = ()
    operations: frozenset[Operation] = frozenset()
    options: Mapping[str, OptionValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "properties", tuple(self.properties))
        object.__setattr__(self, "operations", frozenset(self.operations))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    def __hash__(self) -> int:
        return hash(
            (self.base_name, self.properties, self.operations, tuple(sorted(self.options.items())))
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureSpec):
            return NotImplemented
        return (
            self.base_name == other.base_name
            and self.properties == other.properties
            and self.operations == other.operations
            and dict(self.options) == dict(other.options)
        )

    @property
    def names(self) -> NamingVariantSet:
        return derive(self.base_name)

    @property
    def ordered_operations(self) -> list[Operation]:
        return [op for op in OPERATION_ORDER if op in self.operations]

    def has(self, operation: Operation | str) -> bool:
        return Operation(operation) in self.operations

    def with_options(self, overrides: Mapping[str, OptionValue]) -> "FeatureSpec":
        """Return a new spec with *overrides* merged into the options."""
        return replace(self, options={**self.options, **overrides})

    def as_dict(self) -> dict[str, Any]:
        return {
            "base_name": self.base_name,
            "properties": [p.as_dict() for p in self.properties],
            "operations": [op.value for op in self.ordered_operations],
            "options": dict(self.options),
        }
