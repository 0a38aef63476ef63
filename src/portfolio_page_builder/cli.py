"""CLI entry point using Hydra.

Usage examples:
  ppb                                                   # interactive chat, new session
  ppb mode=chat session_id=3f2a...                      # resume a stored session
  ppb mode=turn message="I'm a backend developer"       # one turn, prints the session id
  ppb mode=turn session_id=3f2a... message="Looks good"
  ppb mode=show session_id=3f2a...
  ppb --config-dir . --config-name config mode=validate
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import hydra
from omegaconf import DictConfig, OmegaConf
from rich.table import Table

from ._hydra_conf import CLI_ONLY_KEYS, register_configs
from .config import apply_azure_fallbacks, build_role_llm_config
from .errors import SessionNotFound
from .logging_config import RichCallbacks, console, setup_logging
from .models import PartialKind, PartialResponse, ProjectConfig, Stage, StageSignal
from .orchestrator import SESSION_COMPLETED, JsonFileArtifactSink, Orchestrator
from .tools.session_store import JsonFileSessionStore

register_configs()

# ---------------------------------------------------------------------------
# Hydra DictConfig → Pydantic ProjectConfig bridge
# ---------------------------------------------------------------------------


def _to_project_config(cfg: DictConfig) -> ProjectConfig:
    """Convert a Hydra *DictConfig* to a Pydantic ``ProjectConfig``.

    CLI-only keys (``mode``, ``session_id``, etc.) are stripped before validation.
    Azure credential env-var fallbacks are applied afterwards.
    """
    container: dict[str, Any] = OmegaConf.to_container(cfg, resolve=True)  # type: ignore[assignment]
    for key in CLI_ONLY_KEYS:
        container.pop(key, None)
    config = ProjectConfig.model_validate(container)
    return apply_azure_fallbacks(config)


def _build_orchestrator(cfg: DictConfig, config: ProjectConfig) -> Orchestrator:
    from .model_client import Ag2ModelClient

    artifact_dir = cfg.get("artifact_dir") or Path(config.session_dir) / "artifacts"
    return Orchestrator(
        config,
        Ag2ModelClient(config),
        store=JsonFileSessionStore(config.session_dir),
        sink=JsonFileArtifactSink(artifact_dir),
        callbacks=RichCallbacks(show_turns=bool(cfg.get("verbose", False))),
    )


async def _stream_turn(orchestrator: Orchestrator, session_id: str, message: str) -> PartialResponse | None:
    """Print one turn's visible text as it arrives; return the terminal response."""
    last: PartialResponse | None = None
    async for partial in orchestrator.handle_user_turn(session_id, message):
        if partial.kind is PartialKind.TEXT:
            console.print(partial.text, end="", markup=False, highlight=False)
        elif partial.kind is PartialKind.ERROR:
            console.print(f"\n[red]{partial.text}[/] [dim]({partial.error_tag})[/]")
        last = partial
    console.print()
    if last is not None and last.done and last.kind is PartialKind.FINAL:
        console.print(f"[dim]progress {last.progress}%[/]")
    return last


def _finished(last: PartialResponse | None) -> bool:
    if last is None:
        return False
    if last.error_tag == SESSION_COMPLETED:
        return True
    return last.stage is Stage.CODING and last.next_stage is None and last.signal not in (None, StageSignal.CONTINUE)


# ---------------------------------------------------------------------------
# Mode handlers
# ---------------------------------------------------------------------------


def _chat_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)
    orchestrator = _build_orchestrator(cfg, config)
    session_id = cfg.get("session_id") or orchestrator.start_session().id

    async def _loop() -> None:
        console.print(f"[bold]Session {session_id}[/]  (type 'exit' to quit)")
        while True:
            try:
                message = await asyncio.to_thread(console.input, "[bold cyan]you>[/] ")
            except (EOFError, KeyboardInterrupt):
                break
            if message.strip().lower() in {"exit", "quit"}:
                break
            if not message.strip():
                continue
            last = await _stream_turn(orchestrator, session_id, message)
            if _finished(last):
                console.print("[bold green]Portfolio plan complete.[/]")
                break

    asyncio.run(_loop())


def _turn_mode(cfg: DictConfig) -> None:
    message = cfg.get("message")
    if not message:
        console.print("[red]message is required for turn mode[/]")
        sys.exit(1)

    config = _to_project_config(cfg)
    orchestrator = _build_orchestrator(cfg, config)
    session_id = cfg.get("session_id") or orchestrator.start_session().id
    console.print(f"[dim]session_id={session_id}[/]")

    last = asyncio.run(_stream_turn(orchestrator, session_id, message))
    if last is not None and last.kind is PartialKind.ERROR:
        sys.exit(1)


def _show_mode(cfg: DictConfig) -> None:
    session_id = cfg.get("session_id")
    if not session_id:
        console.print("[red]session_id is required for show mode[/]")
        sys.exit(1)

    config = _to_project_config(cfg)
    store = JsonFileSessionStore(config.session_dir)
    try:
        session = store.load(session_id)
    except SessionNotFound as e:
        console.print(f"[red]{e}[/]")
        sys.exit(1)

    console.print(f"[bold]Session {session.id}[/] ({session.status.value})")
    console.print(f"  Current stage: {session.current_stage.value}")

    stages = Table(title="Stages")
    stages.add_column("Stage")
    stages.add_column("Turns", justify="right")
    stages.add_column("Messages", justify="right")
    stages.add_column("Hand-off")
    for stage in Stage:
        handoff = session.handoff_summaries.get(stage)
        if handoff is None:
            state = "-"
        else:
            state = f"{handoff.signal.value} ({handoff.confidence.value}{', degraded' if handoff.degraded else ''})"
        stages.add_row(stage.value, str(session.turns(stage)), str(len(session.history(stage))), state)
    console.print(stages)

    fields = Table(title="Collected fields")
    fields.add_column("Field")
    fields.add_column("Value")
    for key, value in sorted(session.collected_fields.items()):
        fields.add_row(key, str(value))
    console.print(fields)


def _validate_mode(cfg: DictConfig) -> None:
    config = _to_project_config(cfg)

    table = Table(title="Model routing")
    table.add_column("Stage")
    table.add_column("Model")
    table.add_column("API type")
    table.add_column("Endpoint")
    for stage in Stage:
        entry = build_role_llm_config(stage, config)["config_list"][0]
        endpoint = entry.get("azure_endpoint") or entry.get("base_url") or "(default)"
        table.add_row(stage.value, entry["model"], entry.get("api_type", "openai"), endpoint)
    console.print(table)

    if not config.azure.api_key and not config.models.overrides:
        console.print("[yellow]No API key configured (AZURE_OPENAI_API_KEY or models.overrides).[/]")
        sys.exit(1)
    console.print("[bold green]Configuration OK[/]")


_MODE_DISPATCH: dict[str, Any] = {
    "chat": _chat_mode,
    "turn": _turn_mode,
    "show": _show_mode,
    "validate": _validate_mode,
}


# ---------------------------------------------------------------------------
# Hydra entry point
# ---------------------------------------------------------------------------


@hydra.main(config_path="conf", config_name="config", version_base=None)
def hydra_entry(cfg: DictConfig) -> None:
    """Hydra-managed CLI entry point."""
    setup_logging(verbose=cfg.get("verbose", False), quiet=cfg.get("quiet", False))

    mode = cfg.get("mode", "chat")
    handler = _MODE_DISPATCH.get(mode)
    if handler is None:
        console.print(f"[red]Unknown mode: {mode!r}. Choose from: {', '.join(_MODE_DISPATCH)}[/]")
        sys.exit(1)

    handler(cfg)


def main() -> None:
    """Package entry point (``[project.scripts]`` target)."""
    hydra_entry()  # pylint: disable=no-value-for-parameter
