"""Tests for artifact emission (layerforge.scaffolder.emitter).

Covers:
- Rendering against the packaged templates
- Unresolved placeholders and unsafe output paths
- Collision policies: overwrite, skip, merge-guarded
- Extension-point tie-breaks
- Path collisions within one run (first writer wins)
- Idempotent re-runs (no writes on identical content)
- Pre-write re-check against concurrent external edits
- Per-artifact failure isolation within a layer
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import pytest

from layerforge.scaffolder.catalog import TemplateCatalog
from layerforge.scaffolder.emitter import (
    ArtifactEmitter,
    EmitError,
    EmitStatus,
    PathCollisionError,
    UnresolvedPlaceholderError,
)
from layerforge.scaffolder.filesystem import LocalFileSystem, MemoryFileSystem
from layerforge.scaffolder.layers import Layer
from layerforge.scaffolder.models import FeatureSpec, Operation

pytestmark = pytest.mark.unit

MARKER = "layerforge:extension-point"


def _catalog(*templates: dict[str, Any]) -> TemplateCatalog:
    return TemplateCatalog.from_dict(
        {"options": [{"name": "softDelete", "kind": "bool"}], "templates": list(templates)}
    )


def _template(tid: str, output: str, body: str, **extra: Any) -> dict[str, Any]:
    return {"id": tid, "layer": "domain", "output": output, "body": body, **extra}


def _dbset(tid: str = "dbset", body: str = "DbSet<{{ names.pascal_singular }}> {{ names.pascal_plural }};\n") -> dict[str, Any]:
    return _template(
        tid, "Db.cs", body, collision_policy="merge-guarded", extension_point="dbsets"
    )


DB_FILE = f"class Db\n{{\n    // {MARKER}:dbsets\n}}\n"


@pytest.fixture
def spec() -> FeatureSpec:
    return FeatureSpec(base_name="Invoice", operations=frozenset({Operation.CREATE}))


class RacingFileSystem(MemoryFileSystem):
    """Simulates an external edit landing between planning and writing."""

    def __init__(self, path: str, external: str, files: Optional[dict[str, str]] = None) -> None:
        super().__init__(files)
        self.path = path
        self.external = external
        self.reads = 0

    def read(self, path: str) -> Optional[str]:
        content = super().read(path)
        if path == self.path:
            self.reads += 1
            if self.reads == 1:
                self.files[path] = self.external
        return content


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class TestRender:
    def test_entity_from_packaged_catalog(self, catalog: TemplateCatalog, invoice_spec: FeatureSpec):
        emitter = ArtifactEmitter(catalog, MemoryFileSystem(), root_namespace="Billing")
        artifact = emitter.render(invoice_spec, Layer.DOMAIN, catalog.get("domain.entity"))
        assert artifact.path == "src/Domain/Entities/Invoice.cs"
        assert artifact.layer is Layer.DOMAIN
        assert "namespace Billing.Domain.Entities;" in artifact.content
        assert "public partial class Invoice : BaseAuditableEntity" in artifact.content
        assert "Total" in artifact.content
        assert "{{" not in artifact.content
        assert len(artifact.content_hash) == 64

    def test_controller_route_uses_plural(self, catalog: TemplateCatalog, invoice_spec: FeatureSpec):
        emitter = ArtifactEmitter(catalog, MemoryFileSystem())
        artifact = emitter.render(invoice_spec, Layer.TRANSPORT, catalog.get("transport.controller"))
        assert artifact.path == "src/Web/Controllers/InvoicesController.cs"
        assert "Invoices" in artifact.content

    def test_every_packaged_template_renders(self, catalog: TemplateCatalog, invoice_spec: FeatureSpec):
        spec = invoice_spec.with_options(
            {
                "realtimeUpdates": True,
                "authEnabled": True,
                "softDelete": True,
                "databaseProvider": "SqlServer",
                "includeDocker": True,
            }
        )
        spec = FeatureSpec(
            base_name=spec.base_name,
            properties=spec.properties,
            operations=frozenset(Operation),
            options=spec.options,
        )
        emitter = ArtifactEmitter(catalog, MemoryFileSystem())
        for descriptor in catalog.templates:
            artifact = emitter.render(spec, descriptor.layer, descriptor)
            assert artifact.path
            assert "{{" not in artifact.content

    def test_unresolved_placeholder_in_body(self, spec: FeatureSpec):
        catalog = _catalog(_template("bad", "X.cs", "{{ names.no_such_variant }}"))
        emitter = ArtifactEmitter(catalog, MemoryFileSystem())
        with pytest.raises(UnresolvedPlaceholderError) as info:
            emitter.render(spec, Layer.DOMAIN, catalog.get("bad"))
        assert info.value.template_id == "bad"

    def test_unresolved_placeholder_in_path(self, spec: FeatureSpec):
        catalog = _catalog(_template("bad", "{{ missing }}.cs", "x"))
        emitter = ArtifactEmitter(catalog, MemoryFileSystem())
        with pytest.raises(UnresolvedPlaceholderError):
            emitter.render(spec, Layer.DOMAIN, catalog.get("bad"))

    @pytest.mark.parametrize("output", ["../outside.cs", "/etc/passwd", "  ", "src/../../x.cs"])
    def test_unsafe_output_paths(self, spec: FeatureSpec, output: str):
        catalog = _catalog(_template("bad", output, "x"))
        emitter = ArtifactEmitter(catalog, MemoryFileSystem())
        with pytest.raises(EmitError):
            emitter.render(spec, Layer.DOMAIN, catalog.get("bad"))

    def test_backslashes_normalised(self, spec: FeatureSpec):
        catalog = _catalog(_template("win", "src\\{{ names.pascal_singular }}.cs", "x"))
        emitter = ArtifactEmitter(catalog, MemoryFileSystem())
        assert emitter.render(spec, Layer.DOMAIN, catalog.get("win")).path == "src/Invoice.cs"

    def test_wrong_layer(self, spec: FeatureSpec):
        catalog = _catalog(_template("e", "E.cs", "x"))
        emitter = ArtifactEmitter(catalog, MemoryFileSystem())
        with pytest.raises(EmitError, match="belongs to layer"):
            emitter.render(spec, Layer.TESTS, catalog.get("e"))

    def test_invalid_tiebreak(self, mini_catalog: TemplateCatalog):
        with pytest.raises(ValueError, match="marker_tiebreak"):
            ArtifactEmitter(mini_catalog, MemoryFileSystem(), marker_tiebreak="middle")


# ---------------------------------------------------------------------------
# Collision policies
# ---------------------------------------------------------------------------


class TestCollisionPolicies:
    @pytest.mark.asyncio
    async def test_new_file_written(self, spec: FeatureSpec):
        catalog = _catalog(_template("e", "E.cs", "class {{ names.pascal_singular }} {}\n"))
        fs = MemoryFileSystem()
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("e"))
        assert outcome.status is EmitStatus.WRITTEN
        assert fs.files["E.cs"] == "class Invoice {}\n"

    @pytest.mark.asyncio
    async def test_skip_keeps_existing_content(self, spec: FeatureSpec):
        catalog = _catalog(_template("e", "E.cs", "generated\n"))
        fs = MemoryFileSystem({"E.cs": "hand written\n"})
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("e"))
        assert outcome.status is EmitStatus.SKIPPED
        assert fs.files["E.cs"] == "hand written\n"
        assert fs.writes == []
        assert any("left untouched" in w for w in outcome.warnings)

    @pytest.mark.asyncio
    async def test_overwrite_replaces(self, spec: FeatureSpec):
        catalog = _catalog(_template("e", "E.cs", "generated\n", collision_policy="overwrite"))
        fs = MemoryFileSystem({"E.cs": "old\n"})
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("e"))
        assert outcome.status is EmitStatus.WRITTEN
        assert fs.files["E.cs"] == "generated\n"

    @pytest.mark.asyncio
    async def test_identical_content_is_noop(self, spec: FeatureSpec):
        catalog = _catalog(_template("e", "E.cs", "same\n", collision_policy="overwrite"))
        fs = MemoryFileSystem({"E.cs": "same\n"})
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("e"))
        assert outcome.status is EmitStatus.UNCHANGED
        assert fs.writes == []


class TestMergeGuarded:
    @pytest.mark.asyncio
    async def test_inserts_before_marker_with_indent(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": DB_FILE})
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert outcome.status is EmitStatus.MERGED
        assert fs.files["Db.cs"] == (
            "class Db\n{\n    DbSet<Invoice> Invoices;\n" f"    // {MARKER}:dbsets\n}}\n"
        )

    @pytest.mark.asyncio
    async def test_second_merge_is_noop(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": DB_FILE})
        await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert outcome.status is EmitStatus.UNCHANGED
        assert fs.writes == ["Db.cs"]

    @pytest.mark.asyncio
    async def test_missing_marker_skips_with_warning(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": "class Db {}\n"})
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert outcome.status is EmitStatus.SKIPPED
        assert fs.files["Db.cs"] == "class Db {}\n"
        assert any("not found" in w for w in outcome.warnings)

    @pytest.mark.asyncio
    async def test_missing_file_skips_with_warning(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem()
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert outcome.status is EmitStatus.SKIPPED
        assert "Db.cs" not in fs.files
        assert any("no file to merge" in w for w in outcome.warnings)

    @pytest.mark.asyncio
    async def test_longer_marker_name_does_not_match(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": f"// {MARKER}:dbsets-readonly\n"})
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert outcome.status is EmitStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_custom_marker(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": "// scaffold-here:dbsets\n"})
        emitter = ArtifactEmitter(catalog, fs, extension_marker="scaffold-here")
        outcome = await emitter.emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert outcome.status is EmitStatus.MERGED

    @pytest.mark.asyncio
    async def test_crlf_files_keep_their_line_endings(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": f"class Db\r\n{{\r\n  // {MARKER}:dbsets\r\n}}\r\n"})
        await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert "  DbSet<Invoice> Invoices;\r\n" in fs.files["Db.cs"]

    @pytest.mark.asyncio
    async def test_two_fragments_into_one_file(self, spec: FeatureSpec):
        catalog = _catalog(_dbset("a"), _dbset("b", body="IQueryable<{{ names.pascal_singular }}> Query;\n"))
        fs = MemoryFileSystem({"Db.cs": DB_FILE})
        result = await ArtifactEmitter(catalog, fs).emit_layer(spec, Layer.DOMAIN, catalog.templates)
        assert result.ok
        assert result.warnings == []
        content = fs.files["Db.cs"]
        assert "DbSet<Invoice> Invoices;" in content
        assert "IQueryable<Invoice> Query;" in content
        assert content.rstrip().endswith("}")


class TestMarkerTiebreak:
    TWO_MARKERS = f"// {MARKER}:dbsets\nmiddle\n// {MARKER}:dbsets\n"

    @pytest.mark.asyncio
    async def test_skip_by_default(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": self.TWO_MARKERS})
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert outcome.status is EmitStatus.SKIPPED
        assert any("appears 2 times" in w for w in outcome.warnings)

    @pytest.mark.asyncio
    async def test_first(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": self.TWO_MARKERS})
        emitter = ArtifactEmitter(catalog, fs, marker_tiebreak="first")
        await emitter.emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        assert fs.files["Db.cs"].splitlines()[0] == "DbSet<Invoice> Invoices;"

    @pytest.mark.asyncio
    async def test_last(self, spec: FeatureSpec):
        catalog = _catalog(_dbset())
        fs = MemoryFileSystem({"Db.cs": self.TWO_MARKERS})
        emitter = ArtifactEmitter(catalog, fs, marker_tiebreak="last")
        await emitter.emit(spec, Layer.DOMAIN, catalog.get("dbset"))
        lines = fs.files["Db.cs"].splitlines()
        assert lines.index("DbSet<Invoice> Invoices;") == 2


# ---------------------------------------------------------------------------
# Layer emission
# ---------------------------------------------------------------------------


class TestEmitLayer:
    @pytest.mark.asyncio
    async def test_path_collision_first_writer_wins(self, spec: FeatureSpec):
        catalog = _catalog(
            _template("first", "Same.cs", "first\n"),
            _template("second", "Same.cs", "second\n"),
        )
        fs = MemoryFileSystem()
        result = await ArtifactEmitter(catalog, fs).emit_layer(spec, Layer.DOMAIN, catalog.templates)
        assert fs.files["Same.cs"] == "first\n"
        assert fs.writes == ["Same.cs"]
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert isinstance(failure, PathCollisionError)
        assert failure.template_id == "second"
        assert failure.claimed_by == "first"

    @pytest.mark.asyncio
    async def test_claims_persist_across_layers_of_one_run(self, spec: FeatureSpec):
        catalog = TemplateCatalog.from_dict(
            {
                "templates": [
                    _template("d", "Same.cs", "d\n"),
                    {"id": "a", "layer": "application", "output": "Same.cs", "body": "a\n"},
                ]
            }
        )
        fs = MemoryFileSystem()
        emitter = ArtifactEmitter(catalog, fs)
        await emitter.emit_layer(spec, Layer.DOMAIN, catalog.resolve(Layer.DOMAIN, {}))
        result = await emitter.emit_layer(spec, Layer.APPLICATION, catalog.resolve(Layer.APPLICATION, {}))
        assert isinstance(result.failures[0], PathCollisionError)
        assert emitter.claims == {"Same.cs": "d"}

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_siblings(self, spec: FeatureSpec):
        catalog = _catalog(
            _template("bad", "Bad.cs", "{{ nope }}"),
            _template("good", "Good.cs", "ok\n"),
        )
        fs = MemoryFileSystem()
        result = await ArtifactEmitter(catalog, fs).emit_layer(spec, Layer.DOMAIN, catalog.templates)
        assert fs.files == {"Good.cs": "ok\n"}
        assert result.failed_template_ids == ["bad"]
        assert result.paths(EmitStatus.WRITTEN) == ["Good.cs"]
        assert not result.ok

    @pytest.mark.asyncio
    async def test_rerun_produces_zero_writes(self, catalog: TemplateCatalog, invoice_spec: FeatureSpec):
        fs = MemoryFileSystem()
        for layer in catalog.layers():
            emitter = ArtifactEmitter(catalog, fs)
            await emitter.emit_layer(invoice_spec, layer, catalog.resolve(layer, invoice_spec.options, invoice_spec.operations))
        first_writes = len(fs.writes)
        assert first_writes > 0

        for layer in catalog.layers():
            emitter = ArtifactEmitter(catalog, fs)
            result = await emitter.emit_layer(
                invoice_spec, layer, catalog.resolve(layer, invoice_spec.options, invoice_spec.operations)
            )
            assert result.paths(EmitStatus.WRITTEN, EmitStatus.MERGED) == []
        assert len(fs.writes) == first_writes

    @pytest.mark.asyncio
    async def test_external_edit_before_write_reapplies_policy(self, spec: FeatureSpec):
        catalog = _catalog(_template("e", "E.cs", "generated\n"))
        fs = RacingFileSystem("E.cs", external="edited elsewhere\n")
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("e"))
        assert outcome.status is EmitStatus.SKIPPED
        assert fs.files["E.cs"] == "edited elsewhere\n"
        assert any("changed since planning" in w for w in outcome.warnings)

    @pytest.mark.asyncio
    async def test_external_edit_with_overwrite_still_writes(self, spec: FeatureSpec):
        catalog = _catalog(_template("e", "E.cs", "generated\n", collision_policy="overwrite"))
        fs = RacingFileSystem("E.cs", external="edited elsewhere\n")
        outcome = await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("e"))
        assert outcome.status is EmitStatus.WRITTEN
        assert fs.files["E.cs"] == "generated\n"


class TestLocalFileSystem:
    @pytest.mark.asyncio
    async def test_writes_under_project_root(self, tmp_project_dir: Path, spec: FeatureSpec):
        catalog = _catalog(_template("e", "src/Deep/{{ names.pascal_singular }}.cs", "x\n"))
        fs = LocalFileSystem(tmp_project_dir)
        await ArtifactEmitter(catalog, fs).emit(spec, Layer.DOMAIN, catalog.get("e"))
        target = tmp_project_dir / "src" / "Deep" / "Invoice.cs"
        assert target.read_text(encoding="utf-8") == "x\n"
        assert [p.name for p in target.parent.iterdir()] == ["Invoice.cs"]

    def test_rejects_escaping_paths(self, tmp_project_dir: Path):
        fs = LocalFileSystem(tmp_project_dir)
        with pytest.raises(ValueError):
            fs.write("../escape.txt", "x")
        with pytest.raises(ValueError):
            fs.read(str(tmp_project_dir / "abs.txt"))

    def test_read_missing_is_none(self, tmp_project_dir: Path):
        fs = LocalFileSystem(tmp_project_dir)
        assert fs.read("nope.txt") is None
        assert not fs.exists("nope.txt")
