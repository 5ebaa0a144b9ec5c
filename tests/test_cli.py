"""Unit tests for the command-line entry point (layerforge.cli).

Tests cover:
- Argument parsing for each sub-command
- Configuration layering: file, then LF_* environment, then flags
- scaffold-feature: write, dry run, JSON output, invalid input
- run-quality: invalid target, unavailable coverage
- catalog listing
- Exit code on interruption
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from layerforge.cli import build_parser, load_config, run
from layerforge.config import Config, QualityConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("LF_"):
            monkeypatch.delenv(key)
    # Wide enough that Rich tables never fold template ids.
    monkeypatch.setenv("COLUMNS", "240")


class TestParser:
    @pytest.mark.unit
    def test_scaffold_arguments(self):
        args = build_parser().parse_args(
            [
                "scaffold-feature",
                "--name", "Invoice",
                "--properties", "total:decimal", "notes:string?",
                "--operations", "create", "read",
                "--option", "softDelete",
                "--option", "databaseProvider=PostgreSql",
                "--dry-run",
            ]
        )
        assert args.command == "scaffold-feature"
        assert args.properties == ["total:decimal", "notes:string?"]
        assert args.operations == ["create", "read"]
        assert args.option == ["softDelete", "databaseProvider=PostgreSql"]
        assert args.dry_run is True

    @pytest.mark.unit
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    @pytest.mark.unit
    def test_bad_on_failure_choice(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--on-failure", "modify", "catalog"])


class TestLoadConfig:
    @pytest.mark.unit
    def test_flags_override_file_and_env(self, tmp_path: Path, monkeypatch):
        config_file = Config(quality=QualityConfig(threshold=95, max_iterations=5)).save(
            tmp_path / "layerforge.json"
        )
        monkeypatch.setenv("LF_THRESHOLD", "70")
        args = build_parser().parse_args(
            [
                "--config", str(config_file),
                "--project-root", str(tmp_path),
                "--on-failure", "skip",
                "run-quality", "--target", "uncommitted", "--threshold", "90",
            ]
        )
        config = load_config(args)
        assert config.quality.threshold == 90
        assert config.quality.max_iterations == 5
        assert config.project_root == tmp_path
        assert config.recovery.default_decision == "skip"

    @pytest.mark.unit
    def test_env_applies_without_flag(self, monkeypatch):
        monkeypatch.setenv("LF_THRESHOLD", "70")
        args = build_parser().parse_args(["run-quality", "--target", "uncommitted"])
        assert load_config(args).quality.threshold == 70

    @pytest.mark.unit
    def test_quality_flags_ignored_for_other_commands(self):
        args = build_parser().parse_args(["--interactive", "catalog"])
        config = load_config(args)
        assert config.recovery.interactive is True
        assert config.quality.threshold == 85


class TestScaffoldCommand:
    @pytest.mark.unit
    def test_writes_feature(self, tmp_project_dir: Path):
        code = run(
            [
                "--project-root", str(tmp_project_dir),
                "scaffold-feature", "--name", "Invoice",
                "--properties", "total:decimal,dueDate:date?",
                "--operations", "create",
            ]
        )
        entity = tmp_project_dir / "src" / "Domain" / "Entities" / "Invoice.cs"
        assert entity.is_file()
        assert "Total" in entity.read_text(encoding="utf-8")
        # No host DbContext to merge into: finished with warnings.
        assert code == 1

    @pytest.mark.unit
    def test_dry_run_writes_nothing(self, tmp_project_dir: Path, capsys):
        code = run(
            [
                "--project-root", str(tmp_project_dir),
                "scaffold-feature", "--name", "Invoice", "--operations", "crud", "--dry-run",
            ]
        )
        assert code == 0
        assert list(tmp_project_dir.iterdir()) == []
        assert "domain.entity" in capsys.readouterr().out

    @pytest.mark.unit
    def test_json_output(self, tmp_project_dir: Path, capsys):
        capsys.readouterr()
        code = run(
            [
                "--project-root", str(tmp_project_dir), "--json",
                "scaffold-feature", "--name", "Invoice", "--operations", "create",
                "--layers", "domain",
            ]
        )
        out = capsys.readouterr().out
        payload = json.loads(out[out.index("{"): out.rindex("}") + 1])
        assert payload["written"] == ["src/Domain/Entities/Invoice.cs"]
        assert code == 0

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "extra",
        [
            ["--name", "123", "--operations", "create"],
            ["--name", "Invoice", "--operations", "archive"],
            ["--name", "Invoice", "--operations", "create", "--option", "multiTenant=true"],
            ["--name", "Invoice", "--operations", "create", "--layers", "ui"],
        ],
    )
    def test_invalid_input(self, tmp_project_dir: Path, extra: list[str]):
        code = run(["--project-root", str(tmp_project_dir), "scaffold-feature", *extra])
        assert code == 2
        assert list(tmp_project_dir.iterdir()) == []

    @pytest.mark.unit
    def test_interrupt_is_cancelled(self, tmp_project_dir: Path):
        with patch("layerforge.cli.scaffold_feature", new=AsyncMock(side_effect=KeyboardInterrupt())):
            code = run(
                ["--project-root", str(tmp_project_dir), "scaffold-feature", "--name", "A", "--operations", "create"]
            )
        assert code == 3


class TestQualityCommand:
    @pytest.mark.unit
    def test_invalid_target(self, tmp_project_dir: Path):
        assert run(["--project-root", str(tmp_project_dir), "run-quality", "--target", "everything"]) == 2

    @pytest.mark.unit
    def test_unavailable_coverage_aborts(self, tmp_project_dir: Path):
        (tmp_project_dir / "Invoice.cs").write_text("class Invoice {}\n", encoding="utf-8")
        code = run(
            [
                "--project-root", str(tmp_project_dir),
                "run-quality", "--target", "files:Invoice.cs",
                "--build-command", "exit 3",
            ]
        )
        assert code == 2


class TestCatalogCommand:
    @pytest.mark.unit
    def test_lists_templates(self, capsys):
        assert run(["catalog"]) == 0
        assert "tests.controller" in capsys.readouterr().out

    @pytest.mark.unit
    def test_broken_catalog(self, tmp_path: Path):
        catalog = tmp_path / "catalog.json"
        catalog.write_text("{", encoding="utf-8")
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"scaffold": {"catalog_path": str(catalog)}}), encoding="utf-8")
        assert run(["--config", str(config_file), "catalog"]) == 2

    @pytest.mark.unit
    def test_missing_config_file(self, tmp_path: Path):
        assert run(["--config", str(tmp_path / "nope.json"), "catalog"]) == 2
