"""Validation and normalisation of raw feature requests.

:class:`SpecResolver` turns a loosely-typed :class:`FeatureRequest` (as it
arrives from the command line or a JSON file) into a canonical, immutable
:class:`~layerforge.scaffolder.models.FeatureSpec`.  Resolution has no side
effects; every problem found is reported in a single :class:`SpecError`.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from pydantic import BaseModel, Field

from .models import (
    FeatureSpec,
    Operation,
    OptionDefinition,
    OptionValue,
    PropertyKind,
    PropertySpec,
)
from .naming import InvalidNameError, derive, split_words, to_camel


class SpecError(ValueError):
    """Raised when a feature request is invalid or ambiguous."""

    def __init__(self, problems: Iterable[str], name: str = "") -> None:
        self.problems: list[str] = list(problems)
        self.name = name
        label = f"Feature request {name!r}" if name else "Feature request"
        detail = "; ".join(self.problems) or "invalid"
        super().__init__(f"{label} is invalid: {detail}")


# ---------------------------------------------------------------------------
# Raw request
# ---------------------------------------------------------------------------


class FeatureRequest(BaseModel):
    """Unvalidated feature request.

    ``properties`` accepts either dicts (``{"name": ..., "kind": ...}``) or the
    compact ``name:kind[?][=default]`` syntax; ``options`` accepts a mapping
    or ``key=value`` strings.
    """

    name: str = Field(default="")
    properties: list[Union[str, dict[str, Any]]] = Field(default_factory=list)
    operations: list[str] = Field(default_factory=list)
    options: Union[dict[str, Any], list[str]] = Field(default_factory=dict)


_OPERATION_SHORTHANDS: dict[str, tuple[Operation, ...]] = {
    "crud": (Operation.CREATE, Operation.READ, Operation.UPDATE, Operation.DELETE),
    "all": tuple(Operation),
}

_KIND_ALIASES: dict[str, PropertyKind] = {
    "str": PropertyKind.STRING,
    "text": PropertyKind.STRING,
    "integer": PropertyKind.INT,
    "number": PropertyKind.DECIMAL,
    "money": PropertyKind.DECIMAL,
    "float": PropertyKind.DOUBLE,
    "boolean": PropertyKind.BOOL,
    "timestamp": PropertyKind.DATETIME,
    "uuid": PropertyKind.GUID,
}

_PROPERTY_RE = re.compile(
    r"^\s*(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*"
    r"(?::\s*(?P<kind>[A-Za-z]+)\s*(?P<optional>\?)?)?\s*"
    r"(?:=\s*(?P<default>.*?))?\s*$"
)

_TRUE_FALSE = {"true", "false"}


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class SpecResolver:
    """Validates feature requests against the recognised options and reserved names.

    Args:
        option_definitions: Recognised options keyed by name (from the catalog).
        reserved_properties: Property names owned by the framework (identifier,
            audit timestamps...).  Compared after camelCase normalisation.
    """

    def __init__(
        self,
        option_definitions: Mapping[str, OptionDefinition],
        reserved_properties: Iterable[str] = (),
    ) -> None:
        self.option_definitions = dict(option_definitions)
        self.reserved_properties = frozenset(
            _normalise_property_name(name) for name in reserved_properties
        )

    def resolve(self, raw: FeatureRequest | Mapping[str, Any]) -> FeatureSpec:
        """Resolve *raw* into a canonical :class:`FeatureSpec`.

        Raises:
            SpecError: With every problem found in the request.
        """
        request = raw if isinstance(raw, FeatureRequest) else FeatureRequest.model_validate(raw)
        problems: list[str] = []

        base_name = ""
        try:
            base_name = derive(request.name).pascal_singular
        except InvalidNameError as exc:
            problems.append(str(exc))

        operations = self._resolve_operations(request.operations, problems)
        properties = self._resolve_properties(request.properties, problems)
        options = self._resolve_options(request.options, problems)

        if problems:
            raise SpecError(problems, name=request.name)

        return FeatureSpec(
            base_name=base_name,
            properties=tuple(properties),
            operations=frozenset(operations),
            options=options,
        )

    def resolve_options(self, raw_options: Mapping[str, Any] | list[str]) -> dict[str, OptionValue]:
        """Validate option values on their own, e.g. overrides chosen during recovery.

        Raises:
            SpecError: If any key or value is not recognised.
        """
        problems: list[str] = []
        raw = dict(raw_options) if isinstance(raw_options, Mapping) else list(raw_options)
        options = self._resolve_options(raw, problems)
        if problems:
            raise SpecError(problems)
        return options

    # -- Operations ---------------------------------------------------------

    @staticmethod
    def _resolve_operations(raw_ops: list[str], problems: list[str]) -> set[Operation]:
        operations: set[Operation] = set()
        for raw in raw_ops:
            for token in re.split(r"[,\s]+", raw.strip().lower()):
                if not token:
                    continue
                if token in _OPERATION_SHORTHANDS:
                    operations.update(_OPERATION_SHORTHANDS[token])
                    continue
                try:
                    operations.add(Operation(token))
                except ValueError:
                    known = ", ".join(op.value for op in Operation)
                    problems.append(f"unknown operation {token!r} (expected: {known}, crud, all)")
        if not operations:
            problems.append("at least one operation must be selected")
        return operations

    # -- Properties ---------------------------------------------------------

    def _resolve_properties(
        self, raw_props: list[str | dict[str, Any]], problems: list[str]
    ) -> list[PropertySpec]:
        properties: list[PropertySpec] = []
        seen: set[str] = set()
        for raw in raw_props:
            try:
                prop = _parse_property(raw)
            except ValueError as exc:
                problems.append(str(exc))
                continue

            key = prop.name.lower()
            if prop.name in self.reserved_properties:
                problems.append(
                    f"property {prop.name!r} collides with a framework-owned field"
                )
                continue
            if key in seen:
                problems.append(f"duplicate property {prop.name!r}")
                continue
            seen.add(key)
            properties.append(prop)
        return properties

    # -- Options ------------------------------------------------------------

    def _resolve_options(
        self, raw_options: dict[str, Any] | list[str], problems: list[str]
    ) -> dict[str, OptionValue]:
        pairs: list[tuple[str, Any]] = []
        if isinstance(raw_options, dict):
            pairs = list(raw_options.items())
        else:
            for item in raw_options:
                key, sep, value = item.partition("=")
                if not sep:
                    # A bare flag (``--option softDelete``) means true.
                    value = "true"
                pairs.append((key.strip(), value.strip()))

        options: dict[str, OptionValue] = {}
        for key, value in pairs:
            definition = self._lookup_option(key)
            if definition is None:
                known = ", ".join(sorted(self.option_definitions)) or "none"
                problems.append(f"unknown option {key!r} (recognised: {known})")
                continue
            try:
                options[definition.name] = definition.coerce(value)
            except ValueError as exc:
                problems.append(str(exc))
        return options

    def _lookup_option(self, key: str) -> OptionDefinition | None:
        if key in self.option_definitions:
            return self.option_definitions[key]
        wanted = _normalise_property_name(key)
        for name, definition in self.option_definitions.items():
            if _normalise_property_name(name) == wanted:
                return definition
        return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _normalise_property_name(name: str) -> str:
    words = split_words(name)
    return to_camel(words) if words else name


def _parse_property(raw: str | dict[str, Any]) -> PropertySpec:
    """Parse one property from a dict or ``name:kind[?][=default]``."""
    if isinstance(raw, dict):
        name = str(raw.get("name", "")).strip()
        kind_text = str(raw.get("kind", raw.get("type", "string")))
        required = bool(raw.get("required", True))
        default = raw.get("default_value", raw.get("default"))
        default_text = None if default is None else str(default)
    else:
        match = _PROPERTY_RE.match(raw)
        if not match:
            raise ValueError(f"cannot parse property {raw!r} (expected name:kind[?][=default])")
        name = match.group("name")
        kind_text = match.group("kind") or "string"
        required = match.group("optional") is None
        default_text = match.group("default")
        if default_text is not None:
            default_text = default_text.strip().strip("\"'")

    if not name:
        raise ValueError("property name must not be empty")
    if not any(ch.isalpha() for ch in name):
        raise ValueError(f"property name {name!r} must contain a letter")

    kind = _parse_kind(kind_text)
    normalised = _normalise_property_name(name)
    if default_text is not None:
        _check_default(normalised, kind, default_text)
    return PropertySpec(
        name=normalised, kind=kind, required=required, default_value=default_text
    )


def _parse_kind(text: str) -> PropertyKind:
    lowered = text.strip().lower()
    if lowered in _KIND_ALIASES:
        return _KIND_ALIASES[lowered]
    try:
        return PropertyKind(lowered)
    except ValueError:
        known = ", ".join(kind.value for kind in PropertyKind)
        raise ValueError(f"unknown property kind {text!r} (expected: {known})") from None


def _check_default(name: str, kind: PropertyKind, value: str) -> None:
    """Reject defaults that cannot be represented in the property's kind."""
    ok = True
    if kind in (PropertyKind.INT, PropertyKind.LONG):
        ok = re.fullmatch(r"[+-]?\d+", value) is not None
    elif kind in (PropertyKind.DECIMAL, PropertyKind.DOUBLE):
        try:
            Decimal(value)
        except InvalidOperation:
            ok = False
    elif kind is PropertyKind.BOOL:
        ok = value.lower() in _TRUE_FALSE
    elif kind is PropertyKind.GUID:
        ok = re.fullmatch(r"[0-9a-fA-F]{8}-([0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}", value) is not None
    if not ok:
        raise ValueError(f"default {value!r} is not a valid {kind.value} for property {name!r}")
