"""Tests for the version-control collaborator (layerforge.tester.changes)."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from layerforge.tester.changes import GitChanges, VcsError, parse_porcelain


def _commit(repo: Path, message: str) -> None:
    subprocess.run(["git", "add", "-A"], cwd=repo, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", message], cwd=repo, check=True, capture_output=True)


@pytest.mark.unit
class TestParsePorcelain:
    def test_modified_added_untracked(self):
        output = " M src/A.cs\nA  src/B.cs\n?? src/C.cs\n"
        assert parse_porcelain(output) == ["src/A.cs", "src/B.cs", "src/C.cs"]

    def test_deleted_files_left_out(self):
        assert parse_porcelain(" D src/Old.cs\nD  src/Gone.cs\n M src/A.cs") == ["src/A.cs"]

    def test_rename_keeps_new_path(self):
        assert parse_porcelain("R  src/Old.cs -> src/New.cs") == ["src/New.cs"]

    def test_quoted_paths(self):
        assert parse_porcelain('?? "src/My File.cs"') == ["src/My File.cs"]

    def test_duplicates_and_short_lines(self):
        assert parse_porcelain(" M a.cs\n M a.cs\n??\n") == ["a.cs"]


@pytest.mark.unit
class TestGitChangesErrors:
    @pytest.mark.asyncio
    async def test_unknown_kind(self, tmp_path: Path):
        with pytest.raises(ValueError, match="Unknown change set"):
            await GitChanges(tmp_path).changed_files("feature")

    @pytest.mark.asyncio
    async def test_git_failure_raises_vcs_error(self, tmp_path: Path):
        with patch(
            "layerforge.tester.changes.run_command",
            new=AsyncMock(return_value=(128, "", "fatal: not a git repository")),
        ):
            with pytest.raises(VcsError, match="not a git repository") as info:
                await GitChanges(tmp_path).uncommitted()
        assert info.value.command.startswith("git status")

    @pytest.mark.asyncio
    async def test_timeout_is_passed_through(self, tmp_path: Path):
        mock = AsyncMock(return_value=(0, "", ""))
        with patch("layerforge.tester.changes.run_command", new=mock):
            assert await GitChanges(tmp_path, timeout=7).uncommitted() == []
        assert mock.await_args.kwargs["timeout"] == 7


@pytest.mark.integration
class TestGitChangesRepository:
    @pytest.mark.asyncio
    async def test_uncommitted(self, tmp_git_repo: Path):
        (tmp_git_repo / "README.md").write_text("# Changed\n", encoding="utf-8")
        (tmp_git_repo / "src").mkdir()
        (tmp_git_repo / "src" / "Invoice.cs").write_text("class Invoice {}\n", encoding="utf-8")

        changed = await GitChanges(tmp_git_repo).changed_files("uncommitted")
        assert sorted(changed) == ["README.md", "src/Invoice.cs"]

    @pytest.mark.asyncio
    async def test_clean_tree(self, tmp_git_repo: Path):
        assert await GitChanges(tmp_git_repo).uncommitted() == []

    @pytest.mark.asyncio
    async def test_last_change(self, tmp_git_repo: Path):
        (tmp_git_repo / "Invoice.cs").write_text("class Invoice {}\n", encoding="utf-8")
        (tmp_git_repo / "README.md").unlink()
        _commit(tmp_git_repo, "Add invoice")

        assert await GitChanges(tmp_git_repo).changed_files("last-change") == ["Invoice.cs"]

    @pytest.mark.asyncio
    async def test_last_change_on_root_commit(self, tmp_git_repo: Path):
        assert await GitChanges(tmp_git_repo).last_change() == ["README.md"]

    @pytest.mark.asyncio
    async def test_project_in_subdirectory(self, tmp_git_repo: Path):
        project = tmp_git_repo / "service"
        (project / "src").mkdir(parents=True)
        (project / "src" / "Invoice.cs").write_text("class Invoice {}\n", encoding="utf-8")
        (tmp_git_repo / "Outside.cs").write_text("class Outside {}\n", encoding="utf-8")

        changes = GitChanges(project)
        assert await changes.uncommitted() == ["src/Invoice.cs"]

        _commit(tmp_git_repo, "Add service")
        assert await changes.last_change() == ["src/Invoice.cs"]
