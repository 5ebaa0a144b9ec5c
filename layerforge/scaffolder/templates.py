"""Jinja2 template rendering for artifact templates.

Provides the TemplateRenderer class which compiles catalog template bodies
and output-path patterns once, then renders them against a feature context.
Rendering uses ``StrictUndefined`` so a placeholder that cannot be resolved
raises instead of silently producing an empty string.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template

from .naming import (
    pluralize,
    singularize_name,
    split_words,
    to_camel,
    to_kebab,
    to_pascal,
    to_snake,
)


# ---------------------------------------------------------------------------
# Template directory discovery
# ---------------------------------------------------------------------------

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


# ---------------------------------------------------------------------------
# TemplateRenderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Compiles and renders Jinja2 templates for artifact generation.

    Template files are looked up under ``template_dir``; inline sources (from
    the catalog file itself) are compiled with :meth:`compile_string`.
    Compiled templates are immutable and safe to render from several threads.
    """

    def __init__(self, template_dir: str | Path | None = None) -> None:
        if template_dir is None:
            template_dir = DEFAULT_TEMPLATE_DIR
        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["pascal_case"] = _pascal_case_filter
        self.env.filters["camel_case"] = _camel_case_filter
        self.env.filters["snake_case"] = _snake_case_filter
        self.env.filters["kebab_case"] = _kebab_case_filter
        self.env.filters["pluralize"] = _pluralize_filter
        self.env.filters["singularize"] = _singularize_filter

    # -- Compilation ---------------------------------------------------------

    def compile_file(self, template_path: str) -> Template:
        """Compile a template file relative to the template directory."""
        return self.env.get_template(template_path)

    def compile_string(self, source: str) -> Template:
        """Compile an inline template source."""
        return self.env.from_string(source)

    # -- Rendering -----------------------------------------------------------

    @staticmethod
    def render(template: Template, context: dict[str, Any]) -> str:
        """Render a compiled template.

        Raises:
            jinja2.UndefinedError: If the template references a name that is
                not in *context*.
        """
        return template.render(**context)


# ---------------------------------------------------------------------------
# Jinja2 custom filters
# ---------------------------------------------------------------------------


def _pascal_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``SomeThing``."""
    return to_pascal(split_words(str(value)))


def _camel_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``SomeThing`` to ``someThing``."""
    return to_camel(split_words(str(value)))


def _snake_case_filter(value: str) -> str:
    """Convert ``SomeThing`` or ``some-thing`` to ``some_thing``."""
    return to_snake(split_words(str(value)))


def _kebab_case_filter(value: str) -> str:
    """Convert ``SomeThing`` or ``some_thing`` to ``some-thing``."""
    return to_kebab(split_words(str(value)))


def _pluralize_filter(value: str) -> str:
    """Pluralise the last word of a PascalCase name, keeping its casing."""
    words = list(split_words(str(value)))
    if not words:
        return str(value)
    words[-1] = pluralize(words[-1])
    return to_pascal(words)


def _singularize_filter(value: str) -> str:
    return singularize_name(str(value))
