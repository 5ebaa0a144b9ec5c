"""Version-control collaborator: which files changed.

Backs the ``uncommitted`` and ``last-change`` quality targets.  Every git
call goes through :func:`layerforge.utils.run_command` with an explicit
timeout; failures raise :class:`VcsError` so the orchestrator can route them
through recovery.
"""

from __future__ import annotations

from pathlib import Path

from ..utils import run_command


class VcsError(Exception):
    """Raised when a git command fails or times out."""

    def __init__(self, message: str, command: str = "", stderr: str = "") -> None:
        self.command = command
        self.stderr = stderr
        super().__init__(message)


class GitChanges:
    """Lists changed files in a git working tree.

    Paths are relative to *repo_path*, which may be a subdirectory of the
    repository; changes outside it are left out.  Deleted files are left out
    since there is nothing left to review or cover.
    """

    def __init__(self, repo_path: str | Path, timeout: float = 30) -> None:
        self.repo_path = Path(repo_path)
        self.timeout = timeout

    async def _git(self, *args: str) -> str:
        cmd = ["git", *args]
        returncode, stdout, stderr = await run_command(cmd, cwd=self.repo_path, timeout=self.timeout)
        if returncode != 0:
            raise VcsError(
                f"git {' '.join(args)} failed ({returncode}): {stderr or stdout}",
                command=" ".join(cmd),
                stderr=stderr,
            )
        return stdout

    async def _prefix(self) -> str:
        """Location of ``repo_path`` inside the repository, e.g. ``"service/"``."""
        return (await self._git("rev-parse", "--show-prefix")).strip()

    async def uncommitted(self) -> list[str]:
        """Files modified, added or untracked relative to HEAD."""
        output = await self._git("status", "--porcelain", "--untracked-files=all")
        return _rebase(parse_porcelain(output), await self._prefix())

    async def last_change(self) -> list[str]:
        """Files touched by the most recent commit."""
        try:
            output = await self._git("diff", "--name-only", "--diff-filter=d", "HEAD~1", "HEAD")
        except VcsError:
            # Root commit: there is no HEAD~1 to diff against.
            output = await self._git("show", "--name-only", "--diff-filter=d", "--pretty=format:", "HEAD")
        paths = _unique(_unquote(line) for line in output.splitlines() if line.strip())
        return _rebase(paths, await self._prefix())

    async def changed_files(self, kind: str) -> list[str]:
        if kind == "uncommitted":
            return await self.uncommitted()
        if kind == "last-change":
            return await self.last_change()
        raise ValueError(f"Unknown change set {kind!r} (expected 'uncommitted' or 'last-change')")


def parse_porcelain(output: str) -> list[str]:
    """Extract paths from ``git status --porcelain`` (v1) output."""
    paths: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        status, path = line[:2], line[3:]
        if "D" in status:
            continue
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(_unquote(path))
    return _unique(paths)


def _unquote(path: str) -> str:
    path = path.strip()
    if len(path) >= 2 and path[0] == path[-1] == '"':
        return path[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return path


def _unique(items) -> list[str]:
    return list(dict.fromkeys(items))


def _rebase(paths: list[str], prefix: str) -> list[str]:
    """Make repository-root paths relative to *prefix*, dropping those outside it."""
    if not prefix:
        return paths
    return [p[len(prefix):] for p in paths if p.startswith(prefix)]
