"""Shared pytest fixtures for the layerforge test suite.

Provides reusable fixtures for:
- Temporary project directories and git repositories
- The packaged template catalog and a small hand-written one
- Resolved feature specs
- In-memory file systems
- Headless recovery controllers
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any, Callable

import pytest

from layerforge.config import Config, RecoveryConfig
from layerforge.recovery import RecoveryController
from layerforge.scaffolder.catalog import TemplateCatalog
from layerforge.scaffolder.filesystem import MemoryFileSystem
from layerforge.scaffolder.models import FeatureSpec
from layerforge.scaffolder.spec import FeatureRequest, SpecResolver


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """Temporary target project directory (auto-cleanup)."""
    project_dir = tmp_path / "target-project"
    project_dir.mkdir()
    yield project_dir


@pytest.fixture
def tmp_git_repo(tmp_path: Path) -> Path:
    """Temporary git repository with an initial commit."""
    repo_dir = tmp_path / "test-repo"
    repo_dir.mkdir()
    subprocess.run(["git", "init"], cwd=repo_dir, check=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@layerforge.local"],
        cwd=repo_dir, check=True, capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "layerforge Test"],
        cwd=repo_dir, check=True, capture_output=True,
    )
    subprocess.run(
        ["git", "config", "commit.gpgsign", "false"],
        cwd=repo_dir, check=True, capture_output=True,
    )
    readme = repo_dir / "README.md"
    readme.write_text("# Test Project\n", encoding="utf-8")
    subprocess.run(["git", "add", "."], cwd=repo_dir, check=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial commit"],
        cwd=repo_dir, check=True, capture_output=True,
    )
    yield repo_dir


# ---------------------------------------------------------------------------
# Catalogs
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def catalog() -> TemplateCatalog:
    """The packaged template catalog."""
    return TemplateCatalog.load()


@pytest.fixture
def mini_catalog_data() -> dict[str, Any]:
    """A small catalog document with inline bodies, one template per concern."""
    return {
        "options": [
            {"name": "softDelete", "kind": "bool"},
            {"name": "databaseProvider", "kind": "enum", "choices": ["SqlServer", "PostgreSql"]},
        ],
        "templates": [
            {
                "id": "domain.entity",
                "layer": "domain",
                "output": "src/{{ names.pascal_singular }}.cs",
                "body": "class {{ names.pascal_singular }} {}\n",
            },
            {
                "id": "domain.soft-delete",
                "layer": "domain",
                "output": "src/{{ names.pascal_singular }}.SoftDelete.cs",
                "body": "partial class {{ names.pascal_singular }} { bool IsDeleted; }\n",
                "when": {"softDelete": True},
            },
            {
                "id": "application.create",
                "layer": "application",
                "output": "src/Create{{ names.pascal_singular }}.cs",
                "body": "record Create{{ names.pascal_singular }};\n",
                "operations": ["create"],
                "requires_layers": ["domain"],
            },
            {
                "id": "data-access.dbset",
                "layer": "data-access",
                "output": "src/Db.cs",
                "body": "DbSet<{{ names.pascal_singular }}> {{ names.pascal_plural }};\n",
                "collision_policy": "merge-guarded",
                "extension_point": "dbsets",
            },
        ],
    }


@pytest.fixture
def mini_catalog(mini_catalog_data: dict[str, Any]) -> TemplateCatalog:
    return TemplateCatalog.from_dict(mini_catalog_data)


# ---------------------------------------------------------------------------
# Specs
# ---------------------------------------------------------------------------


@pytest.fixture
def resolver(catalog: TemplateCatalog) -> SpecResolver:
    return SpecResolver(catalog.options, Config().scaffold.reserved_properties)


@pytest.fixture
def make_spec(resolver: SpecResolver) -> Callable[..., FeatureSpec]:
    """Factory: ``make_spec("Invoice", operations=["create"], properties=[...])``."""

    def factory(
        name: str = "Invoice",
        *,
        operations: list[str] | None = None,
        properties: list[Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> FeatureSpec:
        return resolver.resolve(
            FeatureRequest(
                name=name,
                operations=operations or ["create"],
                properties=properties or [],
                options=options or {},
            )
        )

    return factory


@pytest.fixture
def invoice_spec(make_spec: Callable[..., FeatureSpec]) -> FeatureSpec:
    """Invoice with a handful of properties and full CRUD."""
    return make_spec(
        "Invoice",
        operations=["crud"],
        properties=["number:string", "total:decimal", "dueDate:date?", "status:string=Draft"],
    )


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_fs() -> MemoryFileSystem:
    return MemoryFileSystem()


@pytest.fixture
def headless_recovery() -> Callable[..., RecoveryController]:
    """Factory for a non-interactive controller with a fixed default decision."""

    def factory(decision: str = "abort", max_retries: int = 2) -> RecoveryController:
        return RecoveryController(
            RecoveryConfig(interactive=False, default_decision=decision, max_retries=max_retries)
        )

    return factory
