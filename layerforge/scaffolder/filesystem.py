"""File-system collaborator used by the artifact emitter.

The emitter only ever talks to the :class:`FileSystem` protocol so tests can
swap in an in-memory implementation.  :class:`LocalFileSystem` writes each
file atomically (temp file in the same directory, then ``os.replace``) so a
reader never observes a half-written artifact.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class FileSystem(Protocol):
    """Minimal file access the emitter needs; paths are project-relative."""

    def read(self, path: str) -> Optional[str]:
        """Return the file's text, or ``None`` when it does not exist."""
        ...

    def write(self, path: str, content: str) -> None:
        """Atomically replace the file's content, creating parents."""
        ...

    def exists(self, path: str) -> bool:
        ...


class LocalFileSystem:
    """:class:`FileSystem` rooted at a project directory on disk."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, path: str) -> Path:
        """Map a project-relative path to an absolute one inside the root.

        Raises:
            ValueError: If *path* is absolute or escapes the root.
        """
        relative = Path(path)
        if relative.is_absolute():
            raise ValueError(f"path must be relative to the project root: {path}")
        target = (self.root / relative).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"path escapes the project root: {path}")
        return target

    def read(self, path: str) -> Optional[str]:
        try:
            return self.resolve(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    def write(self, path: str, content: str) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class MemoryFileSystem:
    """In-memory :class:`FileSystem`, used for dry runs and tests."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files: dict[str, str] = dict(files or {})
        self.writes: list[str] = []

    def read(self, path: str) -> Optional[str]:
        return self.files.get(path)

    def exists(self, path: str) -> bool:
        return path in self.files

    def write(self, path: str, content: str) -> None:
        self.files[path] = content
        self.writes.append(path)
