"""Orchestrator — routes each user turn to the session's current stage.

Stages run in the fixed order Welcome → Info-Collection → Design → Coding.
Turns for one session are serialised with a per-session lock; different
sessions proceed independently. A session is only changed after its stage
turn has finished, so an aborted stream leaves it exactly as it was.
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, Protocol

from .agents.base import StageAgent
from .agents.coding import make_coding_agent
from .agents.design import make_design_agent
from .agents.info_collection import make_info_collection_agent
from .agents.welcome import make_welcome_agent
from .errors import SessionNotFound
from .logging_config import OrchestratorCallbacks, RichCallbacks
from .model_client import Ag2ModelClient, ModelClient
from .models import (
    HandoffSummary,
    PartialKind,
    PartialResponse,
    ProjectConfig,
    Session,
    SessionStatus,
    SessionStatusReport,
    Stage,
    StageSignal,
    TurnOutcome,
    overall_progress,
)
from .tools.session_store import InMemorySessionStore, SessionStore

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = "session_not_found"
SESSION_COMPLETED = "session_completed"


# ---------------------------------------------------------------------------
# Artifact hand-off
# ---------------------------------------------------------------------------


class ArtifactSink(Protocol):
    """Receives the Coding stage's final summary for code generation."""

    def submit(self, session_id: str, summary: HandoffSummary) -> None: ...


class LoggingArtifactSink:
    def submit(self, session_id: str, summary: HandoffSummary) -> None:
        logger.info(
            "Artifact spec ready for session %s (%d file(s), degraded=%s)",
            session_id, len(summary.summary.get("files", [])), summary.degraded,
        )


class JsonFileArtifactSink:
    """Writes ``<session_id>.artifact.json`` under *directory*."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def submit(self, session_id: str, summary: HandoffSummary) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{session_id}.artifact.json"
        path.write_text(json.dumps(summary.model_dump(mode="json"), indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("Artifact spec written to %s", path)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def build_stage_agents(config: ProjectConfig, client: ModelClient) -> dict[Stage, StageAgent]:
    """Create one agent per stage sharing the same model client."""
    return {
        Stage.WELCOME: make_welcome_agent(config, client),
        Stage.INFO_COLLECTION: make_info_collection_agent(config, client),
        Stage.DESIGN: make_design_agent(config, client),
        Stage.CODING: make_coding_agent(config, client),
    }


class Orchestrator:
    def __init__(
        self,
        config: ProjectConfig,
        client: ModelClient | None = None,
        *,
        store: SessionStore | None = None,
        sink: ArtifactSink | None = None,
        callbacks: OrchestratorCallbacks | None = None,
        agents: dict[Stage, StageAgent] | None = None,
    ) -> None:
        self.config = config
        self.store = store or InMemorySessionStore()
        self.sink = sink or LoggingArtifactSink()
        self.callbacks = callbacks or RichCallbacks()
        if agents is None:
            agents = build_stage_agents(config, client or Ag2ModelClient(config))
        missing = [s.value for s in Stage if s not in agents]
        if missing:
            raise ValueError(f"No agent for stage(s): {', '.join(missing)}")
        self.agents = agents
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def start_session(self, session_id: str | None = None) -> Session:
        """Create and persist a new session at the Welcome stage."""
        session = Session(id=session_id) if session_id else Session()
        self.store.save(session)
        logger.info("Started session %s", session.id)
        return session

    def session_status(self, session_id: str) -> SessionStatusReport:
        session = self.store.load(session_id)
        stage = session.current_stage
        if session.status is SessionStatus.COMPLETED:
            progress = 100
        else:
            progress = overall_progress(stage, self.agents[stage].stage_fraction(session.collected_fields))
        return SessionStatusReport(
            session_id=session.id,
            status=session.status,
            current_stage=stage,
            progress=progress,
            turns_in_stage=session.turns(stage),
            completed_stages=list(session.handoff_summaries),
            degraded_stages=[s for s, h in session.handoff_summaries.items() if h.degraded],
        )

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def handle_user_turn(self, session_id: str, user_input: str) -> AsyncIterator[PartialResponse]:
        """Run one user turn and relay the current stage's partial responses."""
        lock = self._lock_for(session_id)
        async with lock:
            try:
                session = self.store.load(session_id)
            except SessionNotFound as e:
                logger.warning("%s", e)
                self.callbacks.on_error(str(e))
                yield PartialResponse(
                    kind=PartialKind.ERROR,
                    text="This conversation could not be found. Please start a new one.",
                    done=True,
                    error_tag=SESSION_NOT_FOUND,
                )
                return

            if session.status is SessionStatus.COMPLETED:
                yield PartialResponse(
                    stage=session.current_stage,
                    kind=PartialKind.ERROR,
                    text="This portfolio plan is already complete. Start a new session to build another one.",
                    progress=100,
                    done=True,
                    error_tag=SESSION_COMPLETED,
                )
                return

            stage = session.current_stage
            agent = self.agents[stage]
            self.callbacks.on_turn_start(session_id, stage, session.turns(stage) + 1)
            turn = agent.process(user_input, session)
            async with aclosing(aiter(turn)) as partials:
                async for partial in partials:
                    if partial.kind is PartialKind.RETRY:
                        self.callbacks.on_retry(stage, partial.text)
                    if partial.done:
                        self._apply(session, turn.outcome)
                    yield partial

    def _apply(self, session: Session, outcome: TurnOutcome | None) -> None:
        """Fold a finished turn into the session and persist it."""
        if outcome is None or outcome.signal is None:
            tag = outcome.error_tag if outcome else "no_outcome"
            self.callbacks.on_error(f"{session.current_stage.value} turn failed ({tag}); session unchanged")
            return

        stage = outcome.stage
        session.turn_counters[stage] = session.turns(stage) + 1
        session.append_history(stage, outcome.messages)
        session.merge_fields(outcome.fields)

        if outcome.signal is not StageSignal.CONTINUE:
            handoff = outcome.handoff
            if handoff is None:
                raise RuntimeError(f"{stage.value} advanced without a hand-off summary")
            session.record_handoff(handoff)
            nxt = session.advance_stage(outcome.signal)
            if handoff.degraded:
                reason = handoff.degradation_reason.value if handoff.degradation_reason else "unknown"
                self.callbacks.on_warning(f"{stage.value} hand-off is degraded ({reason})")
            self.callbacks.on_stage_transition(session.id, stage, nxt, outcome.signal)
            if nxt is None:
                self.sink.submit(session.id, handoff)

        self.store.save(session)
