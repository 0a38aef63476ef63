"""Rich console setup and orchestrator progress callbacks."""

from __future__ import annotations

import logging
from typing import Protocol

from rich.console import Console
from rich.logging import RichHandler

from .models import Stage, StageSignal

console = Console()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logger with Rich handler."""
    level = logging.DEBUG if verbose else (logging.ERROR if quiet else logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


logger = logging.getLogger("ppb")


# ---------------------------------------------------------------------------
# Orchestrator callbacks protocol
# ---------------------------------------------------------------------------


class OrchestratorCallbacks(Protocol):
    """Protocol for turn-level progress reporting."""

    def on_turn_start(self, session_id: str, stage: Stage, turn: int) -> None: ...
    def on_stage_transition(
        self, session_id: str, from_stage: Stage, to_stage: Stage | None, signal: StageSignal,
    ) -> None: ...
    def on_retry(self, stage: Stage, message: str) -> None: ...
    def on_warning(self, message: str) -> None: ...
    def on_error(self, message: str) -> None: ...


class RichCallbacks:
    """Rich-based implementation of OrchestratorCallbacks."""

    def __init__(self, *, show_turns: bool = False) -> None:
        self.show_turns = show_turns

    def on_turn_start(self, session_id: str, stage: Stage, turn: int) -> None:
        if self.show_turns:
            console.print(f"  [dim]{session_id[:8]} · {stage.value} turn {turn}[/]")

    def on_stage_transition(
        self, session_id: str, from_stage: Stage, to_stage: Stage | None, signal: StageSignal,
    ) -> None:
        target = to_stage.value if to_stage else "done"
        colour = "yellow" if signal is StageSignal.FORCE_ADVANCE else "green"
        console.rule(f"[bold {colour}]{from_stage.value} → {target}[/] ({signal.value})")

    def on_retry(self, stage: Stage, message: str) -> None:
        console.print(f"  [yellow]{stage.value}:[/] {message}")

    def on_warning(self, message: str) -> None:
        console.print(f"  [yellow]WARNING:[/] {message}")

    def on_error(self, message: str) -> None:
        console.print(f"  [red]ERROR:[/] {message}")
