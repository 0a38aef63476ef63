"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from portfolio_page_builder.errors import TransientModelError
from portfolio_page_builder.model_client import ModelStream
from portfolio_page_builder.models import (
    HandoffSummary,
    ModelOptions,
    ProjectConfig,
    StageSettings,
    StagesConfig,
    ToolCall,
)
from portfolio_page_builder.orchestrator import Orchestrator

FIXTURES_DIR = Path(__file__).parent / "fixtures"
SAMPLE_CONFIG = FIXTURES_DIR / "sample_config.yaml"


# ---------------------------------------------------------------------------
# Scripted model client
# ---------------------------------------------------------------------------


class ScriptedStream(ModelStream):
    """Replays fixed fragments; optionally fails after *fail_after* fragments."""

    def __init__(
        self,
        fragments: list[str],
        *,
        stop_reason: str | None = "stop",
        tool_calls: list[ToolCall] | None = None,
        fail_after: int | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__()
        self.fragments = fragments
        self.final_stop_reason = stop_reason
        self.final_tool_calls = tool_calls or []
        self.fail_after = fail_after
        self.delay = delay
        self.client: ScriptedModelClient | None = None

    async def _fragments(self):
        client = self.client
        if client is not None:
            client.active += 1
            client.max_active = max(client.max_active, client.active)
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i >= self.fail_after:
                    raise TransientModelError("connection reset by peer")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
            if self.fail_after is not None and self.fail_after >= len(self.fragments):
                raise TransientModelError("connection reset by peer")
            self.stop_reason = self.final_stop_reason
            self.tool_calls = self.final_tool_calls
        finally:
            if client is not None:
                client.active -= 1


class ScriptedModelClient:
    """``ModelClient`` that hands out pre-built streams in order and records requests."""

    def __init__(self, streams: list[ScriptedStream] | None = None) -> None:
        self.streams = list(streams or [])
        self.requests: list[tuple[list[dict[str, Any]], ModelOptions]] = []
        self.active = 0
        self.max_active = 0

    def add(self, *streams: ScriptedStream) -> None:
        self.streams.extend(streams)

    def stream_completion(self, messages: list[dict[str, Any]], options: ModelOptions) -> ModelStream:
        if not self.streams:
            raise AssertionError("ScriptedModelClient ran out of scripted streams")
        self.requests.append((messages, options))
        stream = self.streams.pop(0)
        stream.client = self
        return stream


def chunked(text: str, size: int = 7) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def reply(
    text: str,
    status: str = "CONTINUE",
    data: dict[str, Any] | None = None,
    confidence: str = "HIGH",
    *,
    tag: str = "CTRL",
) -> str:
    """A model reply: visible *text* followed by a fenced control block."""
    payload = json.dumps({
        "status": status,
        "collectedData": data or {},
        "confidence": confidence,
        "reasoning": "test",
    })
    return f"{text}\n```{tag}\n{payload}\n```"


def stream_of(text: str, size: int = 7, **kwargs: Any) -> ScriptedStream:
    return ScriptedStream(chunked(text, size), **kwargs)


class RecordingSink:
    def __init__(self) -> None:
        self.submitted: list[tuple[str, HandoffSummary]] = []

    def submit(self, session_id: str, summary: HandoffSummary) -> None:
        self.submitted.append((session_id, summary))


class RecordingCallbacks:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def on_turn_start(self, session_id, stage, turn) -> None:
        self.events.append(("turn_start", (stage, turn)))

    def on_stage_transition(self, session_id, from_stage, to_stage, signal) -> None:
        self.events.append(("transition", (from_stage, to_stage, signal)))

    def on_retry(self, stage, message) -> None:
        self.events.append(("retry", stage))

    def on_warning(self, message) -> None:
        self.events.append(("warning", message))

    def on_error(self, message) -> None:
        self.events.append(("error", message))


async def _collect(iterable) -> list:
    return [item async for item in iterable]


def collect(iterable) -> list:
    """Drain an async iterable on a fresh event loop."""
    return asyncio.run(_collect(iterable))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def sample_config_path() -> Path:
    return SAMPLE_CONFIG


@pytest.fixture
def project_config() -> ProjectConfig:
    """Fast, strict config: no backoff delay, three-turn Welcome budget."""
    return ProjectConfig(
        retry_backoff=0.0,
        strict_contracts=True,
        stages=StagesConfig(
            welcome=StageSettings(timeout=5, max_retries=2, quick_trial_turns=2, serious_turns=3),
        ),
    )


@pytest.fixture
def client() -> ScriptedModelClient:
    return ScriptedModelClient()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def callbacks() -> RecordingCallbacks:
    return RecordingCallbacks()


@pytest.fixture
def orchestrator(project_config, client, sink, callbacks) -> Orchestrator:
    return Orchestrator(project_config, client, sink=sink, callbacks=callbacks)
