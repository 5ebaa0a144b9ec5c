"""Static review checklists applied to the target artifacts.

Checklists are configuration (``checklists.json``): each one scopes itself
by file extension and optional filename globs, and holds ``forbid`` rules (a
pattern that must not appear) and ``require`` rules (a pattern that must
appear).  Review never fails a run; every hit becomes a warning-level
:class:`ReviewIssue`.
"""

from __future__ import annotations

import asyncio
import fnmatch
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from rich.table import Table

from ..utils import console, load_json


class ChecklistRule(BaseModel):
    id: str
    kind: Literal["forbid", "require"] = "forbid"
    pattern: str
    message: str
    ignore_case: bool = False

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
        return value

    def compiled(self) -> re.Pattern[str]:
        flags = re.MULTILINE | (re.IGNORECASE if self.ignore_case else 0)
        return re.compile(self.pattern, flags)


class Checklist(BaseModel):
    id: str
    title: str = ""
    extensions: list[str] = Field(default_factory=list)
    paths: list[str] = Field(default_factory=list, description="Filename globs; empty means all")
    rules: list[ChecklistRule] = Field(default_factory=list)

    def applies_to(self, path: str) -> bool:
        pure = PurePosixPath(path)
        if self.extensions and pure.suffix.lower() not in {e.lower() for e in self.extensions}:
            return False
        if self.paths and not any(fnmatch.fnmatch(pure.name, glob) for glob in self.paths):
            return False
        return True


@dataclass
class ReviewIssue:
    """A single checklist hit."""

    checklist: str
    rule: str
    message: str
    file: str
    line: int = 0
    severity: str = "warning"


@dataclass
class ReviewResult:
    files_reviewed: list[str] = field(default_factory=list)
    files_missing: list[str] = field(default_factory=list)
    issues: list[ReviewIssue] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return [
            f"{issue.file}:{issue.line}: {issue.message} [{issue.checklist}/{issue.rule}]"
            if issue.line
            else f"{issue.file}: {issue.message} [{issue.checklist}/{issue.rule}]"
            for issue in self.issues
        ]


class Reviewer:
    """Applies checklists to files under a project root."""

    def __init__(self, checklists: list[Checklist]) -> None:
        self.checklists = checklists
        self._compiled = {
            (c.id, r.id): r.compiled() for c in checklists for r in c.rules
        }

    @classmethod
    def load(cls, path: str | Path) -> "Reviewer":
        """Load checklists from a JSON file.

        Raises:
            ValueError: If the file is malformed.
        """
        data = load_json(path)
        if "_root" in data:
            raise ValueError(f"{path}: expected a JSON object with a \"checklists\" list")
        return cls([Checklist.model_validate(item) for item in data.get("checklists", [])])

    def review_text(self, path: str, content: str) -> list[ReviewIssue]:
        """Apply every applicable checklist to one file's content."""
        issues: list[ReviewIssue] = []
        for checklist in self.checklists:
            if not checklist.applies_to(path):
                continue
            for rule in checklist.rules:
                regex = self._compiled[(checklist.id, rule.id)]
                if rule.kind == "require":
                    if not regex.search(content):
                        issues.append(ReviewIssue(checklist.id, rule.id, rule.message, path))
                    continue
                for match in regex.finditer(content):
                    line = content[: match.start()].count("\n") + 1
                    issues.append(
                        ReviewIssue(checklist.id, rule.id, rule.message, path, line=line)
                    )
        return issues

    async def review(self, root: str | Path, files: list[str]) -> ReviewResult:
        """Review *files* (relative to *root*).  Unreadable files are listed, not raised."""
        base = Path(root)
        result = ReviewResult()
        for rel in files:
            content = await asyncio.to_thread(_read_text, base / rel)
            if content is None:
                result.files_missing.append(rel)
                continue
            result.files_reviewed.append(rel)
            result.issues.extend(self.review_text(rel, content))
        return result

    @staticmethod
    def display(result: ReviewResult) -> None:
        if not result.issues:
            console.print(
                f"  [green]{len(result.files_reviewed)} file(s) reviewed, no checklist issues[/green]"
            )
            return
        table = Table(title="Checklist issues", show_header=True, header_style="bold yellow")
        table.add_column("File", style="dim")
        table.add_column("Line", justify="right")
        table.add_column("Issue")
        for issue in result.issues:
            table.add_row(issue.file, str(issue.line or ""), f"{issue.message} [dim]({issue.checklist})[/dim]")
        console.print(table)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError, UnicodeDecodeError):
        return None
