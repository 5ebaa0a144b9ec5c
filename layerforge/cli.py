"""Command-line entry point.

Usage::

    layerforge scaffold-feature --name Invoice --properties total:decimal notes:string? \\
        --operations crud --option softDelete=true
    layerforge scaffold-feature --name Invoice --operations create --dry-run
    layerforge run-quality --target uncommitted --threshold 90
    layerforge catalog

Exit codes: 0 success, 1 finished with warnings, 2 failed, 3 cancelled.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError
from rich.table import Table

from .config import Config
from .pipeline import QualityOrchestrator, QualityTarget
from .recovery import RecoveryController
from .scaffolder.catalog import CatalogError, TemplateCatalog
from .scaffolder.emitter import EmitError
from .scaffolder.filesystem import LocalFileSystem
from .scaffolder.generator import (
    EXIT_CANCELLED,
    EXIT_FAILED,
    EXIT_OK,
    FeatureScaffolder,
    ScaffoldAborted,
)
from .scaffolder.layers import Layer, LayeringViolationError
from .scaffolder.spec import FeatureRequest, SpecError, SpecResolver
from .tester.review import Reviewer
from .tester.runner import CommandBuildRunner
from .utils import console, print_error, print_success


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="layerforge",
        description="layerforge -- layered feature scaffolding and coverage-gated quality runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  layerforge scaffold-feature --name Invoice --operations create\n"
            "  layerforge scaffold-feature --name Order --properties total:decimal --operations crud\n"
            "  layerforge run-quality --target feature:Invoice --threshold 90\n"
        ),
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON configuration file")
    parser.add_argument("--project-root", type=Path, default=None, help="Target project root")
    parser.add_argument(
        "--interactive", action="store_true", default=None, help="Ask before retrying/skipping failures"
    )
    parser.add_argument(
        "--on-failure",
        choices=["retry", "skip", "abort"],
        default=None,
        help="Headless recovery decision (default: abort)",
    )
    parser.add_argument("--json", action="store_true", help="Print the final result as JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    scaffold = sub.add_parser("scaffold-feature", help="Generate the artifacts for one feature")
    scaffold.add_argument("--name", required=True, help="Feature base name, e.g. Invoice")
    scaffold.add_argument(
        "--properties",
        nargs="*",
        default=[],
        help="Properties as name:kind[?][=default], space or comma separated",
    )
    scaffold.add_argument(
        "--operations", nargs="+", required=True, help="create, read, update, delete, search, crud, all"
    )
    scaffold.add_argument(
        "--option", action="append", default=[], metavar="KEY=VALUE", help="Feature option (repeatable)"
    )
    scaffold.add_argument(
        "--layers", default=None, help="Comma-separated layers to emit (default: all)"
    )
    scaffold.add_argument("--dry-run", action="store_true", help="Render and list, write nothing")

    quality = sub.add_parser("run-quality", help="Review, audit coverage and generate missing tests")
    quality.add_argument(
        "--target",
        required=True,
        help="uncommitted | last-change | feature:<name> | files:<path,...>",
    )
    quality.add_argument("--threshold", type=float, default=None, help="Coverage threshold in percent")
    quality.add_argument("--max-iterations", type=int, default=None, help="Generate -> Audit cycle cap")
    quality.add_argument("--build-command", default=None, help="Test command that writes coverage")
    quality.add_argument("--coverage-report", type=Path, default=None, help="Coverage file path or glob")

    sub.add_parser("catalog", help="List the templates in the active catalog")
    return parser


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(args: argparse.Namespace) -> Config:
    """Config file, then ``LF_*`` environment, then command-line flags."""
    base = Config.load(args.config) if args.config else None
    config = Config.from_env(base)

    updates: dict = {}
    if args.project_root is not None:
        updates["project_root"] = args.project_root

    recovery = config.recovery.model_dump()
    if args.interactive is not None:
        recovery["interactive"] = args.interactive
    if args.on_failure is not None:
        recovery["default_decision"] = args.on_failure

    quality = config.quality.model_dump()
    if args.command == "run-quality":
        for flag, key in (
            ("threshold", "threshold"),
            ("max_iterations", "max_iterations"),
            ("build_command", "build_command"),
            ("coverage_report", "coverage_report"),
        ):
            value = getattr(args, flag)
            if value is not None:
                quality[key] = value

    return Config.model_validate(
        {**config.model_dump(), **updates, "recovery": recovery, "quality": quality}
    )


def _split(values: Sequence[str]) -> list[str]:
    return [item.strip() for value in values for item in value.split(",") if item.strip()]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def scaffold_feature(args: argparse.Namespace, config: Config, catalog: TemplateCatalog) -> int:
    resolver = SpecResolver(catalog.options, config.scaffold.reserved_properties)
    try:
        spec = resolver.resolve(
            FeatureRequest(
                name=args.name,
                properties=_split(args.properties),
                operations=list(args.operations),
                options=list(args.option),
            )
        )
    except SpecError as exc:
        print_error(str(exc))
        for problem in exc.problems:
            console.print(f"  - {problem}")
        return EXIT_FAILED

    layers = None
    if args.layers:
        try:
            layers = [Layer.parse(value) for value in _split([args.layers])]
        except ValueError as exc:
            print_error(str(exc))
            return EXIT_FAILED

    scaffolder = FeatureScaffolder(
        catalog,
        LocalFileSystem(config.project_root),
        resolver=resolver,
        recovery=RecoveryController(config.recovery),
        extension_marker=config.scaffold.extension_marker,
        marker_tiebreak=config.scaffold.marker_tiebreak,
        root_namespace=config.scaffold.root_namespace,
        max_parallel_renders=config.scaffold.max_parallel_renders,
    )

    if args.dry_run:
        try:
            planned = scaffolder.plan(spec, layers)
        except EmitError as exc:
            print_error(f"{exc.template_id}: {exc}")
            return EXIT_FAILED
        table = Table(title=f"Plan for {spec.base_name}", show_header=True, header_style="bold cyan")
        table.add_column("Layer", style="cyan")
        table.add_column("Template")
        table.add_column("Path")
        table.add_column("Policy", style="dim")
        for layer, artifacts in planned.items():
            for artifact in artifacts:
                table.add_row(layer.value, artifact.template_id, artifact.path, artifact.collision_policy.value)
        console.print(table)
        return EXIT_OK

    try:
        result = await scaffolder.scaffold(spec, layers)
    except ScaffoldAborted as exc:
        print_error(str(exc))
        result = exc.result

    if args.json:
        console.print_json(result.to_json())
    else:
        console.print(scaffolder.summary_panel(result))
    return result.exit_code


async def run_quality(args: argparse.Namespace, config: Config, catalog: TemplateCatalog) -> int:
    try:
        target = QualityTarget.parse(args.target)
    except ValueError as exc:
        print_error(str(exc))
        return EXIT_FAILED

    runner = CommandBuildRunner(
        config.quality.build_command,
        config.coverage_report_path,
        cwd=config.project_root,
        timeout=config.quality.build_timeout,
        threshold=config.quality.threshold,
    )
    try:
        reviewer = Reviewer.load(config.quality.checklist_path)
    except (OSError, ValueError) as exc:
        print_error(f"Cannot load checklists from {config.quality.checklist_path}: {exc}")
        return EXIT_FAILED

    orchestrator = QualityOrchestrator(config, catalog, runner, reviewer=reviewer)
    report = await orchestrator.run(target)
    if args.json:
        console.print_json(report.to_json())
    return report.exit_code


def list_catalog(catalog: TemplateCatalog) -> int:
    table = Table(title=f"Templates ({catalog.source})", show_header=True, header_style="bold cyan")
    table.add_column("Layer", style="cyan")
    table.add_column("Id")
    table.add_column("Operations")
    table.add_column("When", style="dim")
    for layer in catalog.layers():
        for descriptor in (t for t in catalog.templates if t.layer is layer):
            when = ", ".join(f"{k}={v}" for k, v in descriptor.when.items())
            ops = ", ".join(op.value for op in descriptor.operations) or "any"
            table.add_row(layer.value, descriptor.id, ops, when or "always")
    console.print(table)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Parse *argv*, run the command and return its exit code."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except (OSError, ValueError, ValidationError) as exc:
        print_error(f"Invalid configuration: {exc}")
        return EXIT_FAILED

    try:
        catalog = TemplateCatalog.load(config.scaffold.catalog_path)
    except (CatalogError, LayeringViolationError) as exc:
        print_error(f"Invalid template catalog: {exc}")
        return EXIT_FAILED

    try:
        if args.command == "catalog":
            return list_catalog(catalog)
        if args.command == "scaffold-feature":
            code = asyncio.run(scaffold_feature(args, config, catalog))
        else:
            code = asyncio.run(run_quality(args, config, catalog))
    except KeyboardInterrupt:
        print_error("Cancelled")
        return EXIT_CANCELLED

    if code == EXIT_OK:
        print_success("Done")
    return code


def main() -> None:
    """Console-script entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
