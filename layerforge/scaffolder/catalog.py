"""Template catalog: the read-only registry of artifact templates.

The catalog is loaded once from a JSON file (``templates/catalog.json`` by
default) and passed by reference to every component that needs it.  Loading
validates everything up front: malformed descriptors, unknown options or
provider values, template syntax errors and layering violations all abort the
load, so the engine never runs with a partially valid catalog.

Catalog file layout::

    {
      "options":   [{"name": "softDelete", "kind": "bool"}, ...],
      "providers": {"databaseProvider": {"SqlServer": {...}, "PostgreSql": {...}}},
      "templates": [
        {
          "id": "application.create-command",
          "layer": "application",
          "output": "src/Application/{{ names.pascal_plural }}/...",
          "template": "application/create_command.cs.j2",
          "operations": ["create"],
          "when": {"authEnabled": true},
          "requires_layers": ["domain"],
          "collision_policy": "skip"
        }
      ]
    }
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Callable, Optional, Union

from jinja2 import Template, TemplateError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .layers import DependencyOrderer, Layer
from .models import (
    CollisionPolicy,
    Operation,
    OptionDefinition,
    OptionKind,
    OptionValue,
    PropertyKind,
)
from ..utils import load_json
from .templates import DEFAULT_TEMPLATE_DIR, TemplateRenderer

DEFAULT_CATALOG_PATH = DEFAULT_TEMPLATE_DIR / "catalog.json"

# A ``when`` condition value of ``"*"`` matches any value of the option, as
# long as the option is present.
ANY_VALUE = "*"

ConditionValue = Union[bool, str, list[str]]


class CatalogError(Exception):
    """Raised when the catalog file or one of its descriptors is malformed."""

    def __init__(self, message: str, template_id: str = "") -> None:
        self.template_id = template_id
        prefix = f"template {template_id!r}: " if template_id else ""
        super().__init__(f"{prefix}{message}")


# ---------------------------------------------------------------------------
# Descriptor models
# ---------------------------------------------------------------------------


class ProviderProfile(BaseModel):
    """Stack details for one value of a provider option (e.g. a database)."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="")
    label: str = Field(default="")
    package: str = Field(default="", description="Package that implements the provider")
    register_call: str = Field(default="", description="Registration call, e.g. 'UseSqlServer'")
    column_types: dict[PropertyKind, str] = Field(default_factory=dict)
    identity_column: str = Field(default="")

    def column_type(self, kind: PropertyKind | str) -> str:
        return self.column_types[PropertyKind(kind)]


class TemplateDescriptor(BaseModel):
    """A parameterised, conditionally included blueprint for one generated file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    layer: Layer
    output_path_pattern: str = Field(..., alias="output", min_length=1)
    template: Optional[str] = Field(default=None, description="Body file under the template dir")
    body: Optional[str] = Field(default=None, description="Inline body source")
    when: dict[str, ConditionValue] = Field(default_factory=dict)
    operations: tuple[Operation, ...] = Field(
        default=(), description="Included when the feature has any of these operations"
    )
    requires_layers: tuple[Layer, ...] = Field(default=())
    collision_policy: CollisionPolicy = Field(default=CollisionPolicy.SKIP)
    extension_point: Optional[str] = Field(
        default=None, description="Marker name a merge-guarded artifact is inserted at"
    )
    description: str = Field(default="")

    @field_validator("layer", mode="before")
    @classmethod
    def _parse_layer(cls, value: Any) -> Any:
        return Layer.parse(value) if isinstance(value, str) else value

    @field_validator("requires_layers", mode="before")
    @classmethod
    def _parse_required_layers(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return tuple(Layer.parse(v) if isinstance(v, str) else v for v in value)
        return value

    @property
    def predicate(self) -> Callable[[Mapping[str, OptionValue]], bool]:
        """The inclusion predicate over a feature's options."""
        return self.matches_options

    def matches_options(self, options: Mapping[str, OptionValue]) -> bool:
        """True when every ``when`` condition holds.

        An option the feature does not set never satisfies a condition.
        """
        for key, expected in self.when.items():
            if key not in options:
                return False
            actual = options[key]
            if isinstance(expected, bool):
                if actual is not expected:
                    return False
            elif isinstance(expected, list):
                if actual not in expected:
                    return False
            elif expected != ANY_VALUE and actual != expected:
                return False
        return True

    def matches_operations(self, operations: Iterable[Operation] | None) -> bool:
        if operations is None or not self.operations:
            return True
        wanted = set(operations)
        return any(op in wanted for op in self.operations)


class _CatalogFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    options: list[OptionDefinition] = Field(default_factory=list)
    providers: dict[str, dict[str, ProviderProfile]] = Field(default_factory=dict)
    templates: list[TemplateDescriptor] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TemplateCatalog:
    """Immutable, validated set of template descriptors.

    Instances are built with :meth:`load` or :meth:`from_dict`; nothing
    mutates them afterwards, so concurrent readers need no locking.
    """

    def __init__(
        self,
        templates: Iterable[TemplateDescriptor],
        options: Iterable[OptionDefinition],
        providers: Mapping[str, Mapping[str, ProviderProfile]],
        renderer: TemplateRenderer,
        compiled: Mapping[str, tuple[Template, Template]],
        source: Path | None = None,
    ) -> None:
        self._templates: tuple[TemplateDescriptor, ...] = tuple(templates)
        self._by_id = {t.id: t for t in self._templates}
        self._options = {o.name: o for o in options}
        self._providers = {k: dict(v) for k, v in providers.items()}
        self._compiled = dict(compiled)
        self.renderer = renderer
        self.source = source

        dependencies: dict[Layer, set[Layer]] = {}
        for descriptor in self._templates:
            dependencies.setdefault(descriptor.layer, set()).update(descriptor.requires_layers)
        self.orderer = DependencyOrderer(dependencies)
        # Cycles are a configuration bug: surface them now, not mid-run.
        self.orderer.order()

    # -- Construction --------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path | None = None) -> "TemplateCatalog":
        """Load and validate a catalog file.

        Template files referenced by descriptors are resolved relative to the
        catalog file's directory.

        Raises:
            CatalogError: If the file or any descriptor is malformed.
            LayeringViolationError: If a descriptor requires a later layer or
                the declared layer dependencies are cyclic.
        """
        catalog_path = Path(path) if path is not None else DEFAULT_CATALOG_PATH
        try:
            raw = load_json(catalog_path)
        except FileNotFoundError:
            raise CatalogError(f"Catalog file not found: {catalog_path}") from None
        except json.JSONDecodeError as exc:
            raise CatalogError(f"Catalog file {catalog_path} is not valid JSON: {exc}") from exc
        return cls.from_dict(raw, template_dir=catalog_path.parent, source=catalog_path)

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        *,
        template_dir: str | Path | None = None,
        source: Path | None = None,
    ) -> "TemplateCatalog":
        """Build a catalog from an already-parsed catalog document."""
        try:
            parsed = _CatalogFile.model_validate(data)
        except ValidationError as exc:
            raise CatalogError(f"Malformed catalog: {exc}") from exc

        options = {o.name: o for o in parsed.options}
        if len(options) != len(parsed.options):
            raise CatalogError("Duplicate option names in catalog")

        providers = _validate_providers(parsed.providers, options)
        renderer = TemplateRenderer(template_dir)

        seen: set[str] = set()
        compiled: dict[str, tuple[Template, Template]] = {}
        for descriptor in parsed.templates:
            if descriptor.id in seen:
                raise CatalogError("duplicate template id", descriptor.id)
            seen.add(descriptor.id)
            _validate_descriptor(descriptor, options)
            for required in descriptor.requires_layers:
                DependencyOrderer.check_dependency(
                    descriptor.layer, required, template_id=descriptor.id
                )
            compiled[descriptor.id] = _compile(renderer, descriptor)

        return cls(
            parsed.templates,
            parsed.options,
            providers,
            renderer,
            compiled,
            source=Path(source) if source else None,
        )

    # -- Queries -------------------------------------------------------------

    @property
    def templates(self) -> tuple[TemplateDescriptor, ...]:
        return self._templates

    @property
    def options(self) -> dict[str, OptionDefinition]:
        return dict(self._options)

    def get(self, template_id: str) -> TemplateDescriptor:
        try:
            return self._by_id[template_id]
        except KeyError:
            raise KeyError(f"Unknown template id {template_id!r}") from None

    def layers(self) -> tuple[Layer, ...]:
        """Layers that have at least one template, in emission order."""
        present = {t.layer for t in self._templates}
        return self.orderer.order(present)

    def resolve(
        self,
        layer: Layer,
        options: Mapping[str, OptionValue],
        operations: Iterable[Operation] | None = None,
    ) -> list[TemplateDescriptor]:
        """Return the templates of *layer* whose predicate holds, in catalog order.

        When *operations* is given, templates tied to operations are kept only
        if the feature has at least one of them.
        """
        ops = set(operations) if operations is not None else None
        return [
            t
            for t in self._templates
            if t.layer is layer and t.predicate(options) and t.matches_operations(ops)
        ]

    def compiled(self, template_id: str) -> tuple[Template, Template]:
        """Return the compiled ``(output_path, body)`` templates for *template_id*."""
        return self._compiled[template_id]

    def providers_for(self, options: Mapping[str, OptionValue]) -> dict[str, ProviderProfile]:
        """Dispatch each set provider option to its profile via the lookup table."""
        selected: dict[str, ProviderProfile] = {}
        for option_name, table in self._providers.items():
            value = options.get(option_name)
            if isinstance(value, str):
                selected[option_name] = table[value]
        return selected


# ---------------------------------------------------------------------------
# Load-time validation
# ---------------------------------------------------------------------------


def _validate_providers(
    providers: Mapping[str, Mapping[str, ProviderProfile]],
    options: Mapping[str, OptionDefinition],
) -> dict[str, dict[str, ProviderProfile]]:
    """Check that every provider table covers exactly its option's choices."""
    validated: dict[str, dict[str, ProviderProfile]] = {}
    for option_name, table in providers.items():
        definition = options.get(option_name)
        if definition is None or definition.kind is not OptionKind.ENUM:
            raise CatalogError(f"Provider table {option_name!r} does not match an enum option")
        unknown = sorted(set(table) - set(definition.choices))
        missing = sorted(set(definition.choices) - set(table))
        if unknown:
            raise CatalogError(
                f"Provider table {option_name!r} has unknown value(s): {', '.join(unknown)}"
            )
        if missing:
            raise CatalogError(
                f"Provider table {option_name!r} has no profile for: {', '.join(missing)}"
            )
        profiles: dict[str, ProviderProfile] = {}
        for value, profile in table.items():
            absent = [k.value for k in PropertyKind if k not in profile.column_types]
            if absent:
                raise CatalogError(
                    f"Provider {option_name}={value} lacks column types for: {', '.join(absent)}"
                )
            profiles[value] = profile.model_copy(update={"name": value})
        validated[option_name] = profiles
    return validated


def _validate_descriptor(
    descriptor: TemplateDescriptor, options: Mapping[str, OptionDefinition]
) -> None:
    if (descriptor.template is None) == (descriptor.body is None):
        raise CatalogError("exactly one of 'template' or 'body' must be set", descriptor.id)

    if descriptor.collision_policy is CollisionPolicy.MERGE_GUARDED:
        if not descriptor.extension_point:
            raise CatalogError(
                "merge-guarded templates must name an extension_point", descriptor.id
            )
    elif descriptor.extension_point:
        raise CatalogError(
            "extension_point is only meaningful for merge-guarded templates", descriptor.id
        )

    for key, expected in descriptor.when.items():
        definition = options.get(key)
        if definition is None:
            raise CatalogError(f"condition on unknown option {key!r}", descriptor.id)
        values = expected if isinstance(expected, list) else [expected]
        for value in values:
            if definition.kind is OptionKind.BOOL:
                if not isinstance(value, bool):
                    raise CatalogError(
                        f"condition on bool option {key!r} must be true/false", descriptor.id
                    )
            elif value != ANY_VALUE and value not in definition.choices:
                raise CatalogError(
                    f"condition {key}={value!r} names an unknown value "
                    f"(expected one of {', '.join(definition.choices)})",
                    descriptor.id,
                )


def _compile(renderer: TemplateRenderer, descriptor: TemplateDescriptor) -> tuple[Template, Template]:
    try:
        path_template = renderer.compile_string(descriptor.output_path_pattern)
        if descriptor.template is not None:
            body_template = renderer.compile_file(descriptor.template)
        else:
            body_template = renderer.compile_string(descriptor.body or "")
    except TemplateError as exc:
        raise CatalogError(f"template does not compile: {exc}", descriptor.id) from exc
    return path_template, body_template
