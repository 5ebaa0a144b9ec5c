"""Retry / Skip / Modify / Abort decisions at failure points.

Emission and orchestration code never talks to the user directly.  When
something fails they build a :class:`RecoveryRequest` and await
:meth:`RecoveryController.decide`, which either asks a human (interactive
mode) or applies the configured default decision (headless mode).  The
controller also bounds retries per failure point so a permanently failing
collaborator cannot keep a run alive forever.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from rich.prompt import Prompt

from .config import RecoveryConfig
from .utils import console, print_warning


class RecoveryAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    MODIFY = "modify"
    ABORT = "abort"


COLLABORATOR_CHOICES: tuple[RecoveryAction, ...] = (
    RecoveryAction.RETRY,
    RecoveryAction.SKIP,
    RecoveryAction.ABORT,
)
EMISSION_CHOICES: tuple[RecoveryAction, ...] = tuple(RecoveryAction)


@dataclass(frozen=True)
class RecoveryDecision:
    """The answer to a :class:`RecoveryRequest`.

    ``overrides`` carries option changes for ``modify`` and is empty
    otherwise.
    """

    action: RecoveryAction
    overrides: Mapping[str, Any] = field(default_factory=dict)
    reason: str = ""


@dataclass(frozen=True)
class RecoveryRequest:
    """A failure waiting for a decision."""

    point: str
    error: BaseException
    choices: tuple[RecoveryAction, ...] = COLLABORATOR_CHOICES
    detail: str = ""


Prompter = Callable[[RecoveryRequest], Awaitable[RecoveryDecision]]


class RecoveryController:
    """Resolves failures into :class:`RecoveryDecision` values.

    Args:
        config: Recovery settings (interactive flag, headless default,
            retry budget).
        prompter: Async callable used in interactive mode.  Defaults to a
            Rich console prompt run in a worker thread.
    """

    def __init__(self, config: RecoveryConfig | None = None, prompter: Optional[Prompter] = None) -> None:
        self.config = config or RecoveryConfig()
        self.prompter = prompter or console_prompter
        self.history: list[tuple[str, RecoveryDecision]] = []
        self._retries: dict[str, int] = {}

    def retries(self, point: str) -> int:
        return self._retries.get(point, 0)

    async def decide(self, request: RecoveryRequest) -> RecoveryDecision:
        """Return the decision for *request*.

        A ``retry`` beyond ``max_retries`` for the same point, or a decision
        that is not among ``request.choices``, becomes ``abort``.
        """
        if self.config.interactive:
            decision = await self.prompter(request)
        else:
            decision = RecoveryDecision(
                RecoveryAction(self.config.default_decision), reason="headless default"
            )

        if decision.action not in request.choices:
            decision = RecoveryDecision(
                RecoveryAction.ABORT,
                reason=f"{decision.action.value!r} is not available at {request.point}",
            )
        elif decision.action is RecoveryAction.RETRY:
            used = self._retries.get(request.point, 0)
            if used >= self.config.max_retries:
                decision = RecoveryDecision(
                    RecoveryAction.ABORT,
                    reason=f"retry limit ({self.config.max_retries}) reached at {request.point}",
                )
            else:
                self._retries[request.point] = used + 1

        self.history.append((request.point, decision))
        note = f" ({decision.reason})" if decision.reason else ""
        print_warning(f"Recovery at {request.point}: {decision.action.value}{note}")
        return decision


# ---------------------------------------------------------------------------
# Interactive prompt
# ---------------------------------------------------------------------------


def parse_overrides(text: str) -> dict[str, str]:
    """Parse ``key=value, key2=value2`` into a dict; a bare key means ``true``."""
    overrides: dict[str, str] = {}
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        overrides[key.strip()] = value.strip() if sep else "true"
    return overrides


async def console_prompter(request: RecoveryRequest) -> RecoveryDecision:
    """Ask on the terminal which recovery action to take."""
    console.print(f"\n[bold red]Failure at {request.point}:[/bold red] {request.error}")
    if request.detail:
        console.print(f"[dim]{request.detail}[/dim]")

    choices = [c.value for c in request.choices]
    answer = await asyncio.to_thread(
        Prompt.ask, "How do you want to proceed?", choices=choices, default=choices[-1]
    )
    action = RecoveryAction(answer)
    if action is not RecoveryAction.MODIFY:
        return RecoveryDecision(action, reason="user choice")

    raw = await asyncio.to_thread(Prompt.ask, "Option changes (key=value, comma separated)")
    return RecoveryDecision(action, overrides=parse_overrides(raw), reason="user choice")
