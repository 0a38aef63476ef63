"""Pydantic models for the portfolio page builder."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Stage(str, Enum):
    """Conversation stages in their fixed, forward-only order."""
    WELCOME = "welcome"
    INFO_COLLECTION = "info_collection"
    DESIGN = "design"
    CODING = "coding"

    @property
    def position(self) -> int:
        return list(Stage).index(self)

    def next(self) -> Stage | None:
        """Return the stage after this one, or ``None`` for the last stage."""
        order = list(Stage)
        pos = order.index(self)
        return order[pos + 1] if pos + 1 < len(order) else None


class ControlStatus(str, Enum):
    CONTINUE = "CONTINUE"
    READY_TO_ADVANCE = "READY_TO_ADVANCE"
    NEED_CLARIFICATION = "NEED_CLARIFICATION"


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class StopReason(str, Enum):
    TOOL_USE_REQUIRED = "tool_use_required"
    INCOMPLETE_DUE_TO_TOKENS = "incomplete_due_to_tokens"
    NATURAL_COMPLETION = "natural_completion"
    STOP_SEQUENCE_TRIGGERED = "stop_sequence_triggered"
    UNKNOWN = "unknown"


class StageSignal(str, Enum):
    """Terminal signal a stage reports to the orchestrator for one turn."""
    CONTINUE = "continue"
    ADVANCE = "advance"
    FORCE_ADVANCE = "force_advance"


class CommitmentLevel(str, Enum):
    QUICK_TRIAL = "quick_trial"
    SERIOUS = "serious"


class DegradationReason(str, Enum):
    TURN_BUDGET_EXHAUSTED = "turn_budget_exhausted"
    UNKNOWN_STOP_REASON = "unknown_stop_reason"
    INCOMPLETE_FIELDS = "incomplete_fields"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class PartialKind(str, Enum):
    TEXT = "text"
    RETRY = "retry"
    ERROR = "error"
    FINAL = "final"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Control channel
# ---------------------------------------------------------------------------

_LEGACY_STATUS = {
    "collecting": ControlStatus.CONTINUE,
    "continue": ControlStatus.CONTINUE,
    "ready": ControlStatus.READY_TO_ADVANCE,
    "advance": ControlStatus.READY_TO_ADVANCE,
    "ready_to_advance": ControlStatus.READY_TO_ADVANCE,
    "need_clarification": ControlStatus.NEED_CLARIFICATION,
    "clarify": ControlStatus.NEED_CLARIFICATION,
}

# Older prompts asked the model for the commitment level in Chinese.
_COMMITMENT_ALIASES = {
    "试一试": CommitmentLevel.QUICK_TRIAL,
    "quick_trial": CommitmentLevel.QUICK_TRIAL,
    "quick trial": CommitmentLevel.QUICK_TRIAL,
    "认真制作": CommitmentLevel.SERIOUS,
    "serious": CommitmentLevel.SERIOUS,
}


def coerce_commitment(value: Any) -> CommitmentLevel:
    """Interpret a collected commitment value; anything unrecognised counts as serious."""
    if isinstance(value, CommitmentLevel):
        return value
    return _COMMITMENT_ALIASES.get(str(value or "").strip().lower(), CommitmentLevel.SERIOUS)


def _confidence_from_score(score: float) -> Confidence:
    if score >= 0.8:
        return Confidence.HIGH
    if score >= 0.5:
        return Confidence.MEDIUM
    return Confidence.LOW


class ControlRecord(BaseModel):
    """Hidden, machine-readable payload embedded in a stage's model output.

    Accepts both the current shape (``status`` / ``collectedData``) and the
    older one (``completion_status`` / ``collected_info`` /
    ``user_intent_analysis``).
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: ControlStatus = Field(default=ControlStatus.CONTINUE, description="Stage readiness")
    collected_data: dict[str, Any] = Field(
        default_factory=dict, alias="collectedData", description="Partial field map to merge",
    )
    confidence: Confidence = Field(default=Confidence.LOW, description="Model confidence")
    reasoning: str = Field(default="", description="Diagnostic only, never shown to the user")

    @model_validator(mode="before")
    @classmethod
    def _normalise(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        if "status" not in data and "completion_status" in data:
            data["status"] = data.pop("completion_status")
        status = data.get("status")
        if isinstance(status, str):
            key = status.strip().lower()
            data["status"] = _LEGACY_STATUS.get(key, status.strip().upper())

        collected = data.pop("collectedData", None)
        if collected is None:
            collected = data.pop("collected_data", None)
        if collected is None:
            collected = data.pop("collected_info", None)
        collected = dict(collected) if isinstance(collected, dict) else {}

        intent = data.pop("user_intent_analysis", None)
        if isinstance(intent, dict):
            level = _COMMITMENT_ALIASES.get(str(intent.get("commitment_level", "")).strip())
            if level is not None:
                collected.setdefault("commitment_level", level.value)
            if "confidence" not in data and isinstance(intent.get("confidence"), (int, float)):
                data["confidence"] = intent["confidence"]
        data["collectedData"] = collected

        confidence = data.get("confidence")
        if isinstance(confidence, bool):
            data.pop("confidence")
        elif isinstance(confidence, (int, float)):
            data["confidence"] = _confidence_from_score(float(confidence))
        elif isinstance(confidence, str):
            data["confidence"] = confidence.strip().upper()
        elif confidence is None:
            data.pop("confidence", None)

        if data.get("reasoning") is None:
            data.pop("reasoning", None)
        elif not isinstance(data["reasoning"], str):
            data["reasoning"] = str(data["reasoning"])
        return data


class CodecResult(BaseModel):
    """Output of one ``ControlChannelCodec.process_chunk`` call."""
    new_visible_text: str = Field(default="", description="Newly revealed visible suffix")
    control_record: ControlRecord | None = Field(default=None)
    is_complete: bool = Field(default=False)

    @model_validator(mode="after")
    def _record_only_when_complete(self) -> CodecResult:
        if self.control_record is not None and not self.is_complete:
            raise ValueError("control_record requires is_complete=True")
        return self


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """One role-tagged entry of a stage's conversation history."""
    role: MessageRole
    content: str

    def to_chat(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class HandoffSummary(BaseModel):
    """Read-only summary one stage hands to the next."""
    model_config = ConfigDict(frozen=True)

    stage: Stage = Field(..., description="Stage that produced the summary")
    signal: StageSignal = Field(..., description="advance or force_advance")
    fields: dict[str, Any] = Field(default_factory=dict, description="Fields collected by the stage")
    summary: dict[str, Any] = Field(default_factory=dict, description="Stage-specific synthesis")
    confidence: Confidence = Field(default=Confidence.MEDIUM)
    degraded: bool = Field(default=False, description="True when the stage ended without full confirmation")
    degradation_reason: DegradationReason | None = Field(default=None)
    turns_used: int = Field(default=0)
    context_for_next_stage: str = Field(default="", description="Short brief for the next stage's preamble")
    created_at: datetime = Field(default_factory=_utcnow)


class StageTransition(BaseModel):
    from_stage: Stage
    to_stage: Stage | None = None
    signal: StageSignal
    at: datetime = Field(default_factory=_utcnow)


def is_empty_value(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


class Session(BaseModel):
    """One end-to-end conversation.

    Mutated only by the orchestrator once a turn has completed.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    current_stage: Stage = Field(default=Stage.WELCOME)
    status: SessionStatus = Field(default=SessionStatus.ACTIVE)
    turn_counters: dict[Stage, int] = Field(default_factory=dict)
    collected_fields: dict[str, Any] = Field(default_factory=dict)
    stage_history: dict[Stage, list[Message]] = Field(default_factory=dict)
    handoff_summaries: dict[Stage, HandoffSummary] = Field(default_factory=dict)
    transitions: list[StageTransition] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def history(self, stage: Stage) -> list[Message]:
        return self.stage_history.get(stage, [])

    def preamble_recorded(self, stage: Stage) -> bool:
        return any(m.role is MessageRole.SYSTEM for m in self.history(stage))

    def turns(self, stage: Stage) -> int:
        return self.turn_counters.get(stage, 0)

    def previous_handoff(self, stage: Stage) -> HandoffSummary | None:
        """Summary written by the stage immediately before *stage*."""
        if stage.position == 0:
            return None
        return self.handoff_summaries.get(list(Stage)[stage.position - 1])

    def merge_fields(self, fields: dict[str, Any]) -> list[str]:
        """Merge extracted fields; empty values never clear an existing field."""
        changed: list[str] = []
        for key, value in fields.items():
            if is_empty_value(value):
                continue
            if self.collected_fields.get(key) != value:
                self.collected_fields[key] = value
                changed.append(key)
        return changed

    def append_history(self, stage: Stage, messages: list[Message]) -> None:
        self.stage_history.setdefault(stage, []).extend(messages)

    def record_handoff(self, summary: HandoffSummary) -> None:
        if summary.stage in self.handoff_summaries:
            raise ValueError(f"Hand-off summary for {summary.stage.value} already written")
        self.handoff_summaries[summary.stage] = summary

    def advance_stage(self, signal: StageSignal) -> Stage | None:
        """Leave the current stage; returns the new stage or ``None`` when finished."""
        leaving = self.current_stage
        nxt = leaving.next()
        self.turn_counters[leaving] = 0
        self.transitions.append(StageTransition(from_stage=leaving, to_stage=nxt, signal=signal))
        if nxt is None:
            self.status = SessionStatus.COMPLETED
        else:
            self.current_stage = nxt
        return nxt


def overall_progress(stage: Stage, fraction: float) -> int:
    """Map a within-stage completion fraction onto 0-100 for the whole pipeline."""
    fraction = min(max(fraction, 0.0), 1.0)
    return int(round((stage.position + fraction) * 100 / len(Stage)))


class PartialResponse(BaseModel):
    """One streamed fragment relayed to the caller.

    After a ``retry`` fragment the interrupted model round is replayed. Text
    the caller already received is not sent again while the replay matches
    it; if the replay diverges, the new text follows and callers that render
    incrementally should drop what they showed for that round.
    """
    stage: Stage | None = Field(default=None, description="Stage that produced the fragment")
    kind: PartialKind = Field(default=PartialKind.TEXT)
    text: str = Field(default="", description="Display fragment")
    progress: int = Field(default=0, ge=0, le=100)
    done: bool = Field(default=False)
    signal: StageSignal | None = Field(default=None)
    next_stage: Stage | None = Field(default=None)
    error_tag: str | None = Field(default=None, description="Machine-readable error tag")
    confidence_degraded: bool = Field(default=False)


class TurnOutcome(BaseModel):
    """What a completed stage turn asks the orchestrator to apply."""
    stage: Stage
    signal: StageSignal | None = Field(default=None, description="None when the turn failed")
    record: ControlRecord | None = Field(default=None)
    fields: dict[str, Any] = Field(default_factory=dict, description="Fields to merge")
    messages: list[Message] = Field(default_factory=list, description="History entries to append")
    handoff: HandoffSummary | None = Field(default=None)
    stop_reason: StopReason | None = Field(default=None)
    visible_text: str = Field(default="")
    raw_output: str = Field(default="")
    progress: int = Field(default=0)
    error_tag: str | None = Field(default=None)


class SessionStatusReport(BaseModel):
    """Snapshot returned by ``Orchestrator.session_status``."""
    session_id: str
    status: SessionStatus
    current_stage: Stage
    progress: int
    turns_in_stage: int
    completed_stages: list[Stage] = Field(default_factory=list)
    degraded_stages: list[Stage] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Model invocation
# ---------------------------------------------------------------------------

class ToolCall(BaseModel):
    id: str = Field(default="")
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ModelOptions(BaseModel):
    """Per-call options passed to a ``ModelClient``."""
    role: str = Field(..., description="Stage role used for model routing")
    max_tokens: int = Field(default=2000)
    temperature: float = Field(default=0.7)
    tools: list[dict[str, Any]] = Field(default_factory=list, description="Function tool specs")


# ---------------------------------------------------------------------------
# Project Configuration (loaded from YAML)
# ---------------------------------------------------------------------------

class ModelEndpointOverride(BaseModel):
    """Per-model endpoint settings that take precedence over ``azure``."""
    endpoint: str = Field(default="", description="Endpoint URL for this model")
    api_key: str = Field(default="", description="API key for this endpoint")
    api_version: str = Field(default="", description="API version for this endpoint")
    api_type: str | None = Field(default=None, description="Force an AG2 api_type, e.g. 'anthropic'")


class ModelConfig(BaseModel):
    """LLM model configuration per stage."""
    default: str = Field(default="gpt-4o", description="Default model")
    welcome: str | None = Field(default=None)
    info_collection: str | None = Field(default=None)
    design: str | None = Field(default=None)
    coding: str | None = Field(default=None)
    overrides: dict[str, ModelEndpointOverride] = Field(default_factory=dict)


class AzureConfig(BaseModel):
    """Azure OpenAI connection settings."""
    api_key: str = Field(default="", description="Azure OpenAI API key (or ${ENV_VAR})")
    api_version: str = Field(default="", description="API version")
    endpoint: str = Field(default="", description="Azure endpoint URL")


class StageSettings(BaseModel):
    """Per-stage call limits and turn budgets."""
    max_tokens: int = Field(default=2000, description="Max tokens per model round")
    temperature: float = Field(default=0.7)
    timeout: float = Field(default=60.0, description="Upstream call budget in seconds")
    max_retries: int = Field(default=2, description="Retries for transient model failures")
    quick_trial_turns: int = Field(default=3, ge=1, description="Turn budget for quick trials")
    serious_turns: int = Field(default=6, ge=1, description="Turn budget for serious sessions")

    def turn_budget(self, level: CommitmentLevel) -> int:
        if level is CommitmentLevel.QUICK_TRIAL:
            return self.quick_trial_turns
        return self.serious_turns


class StagesConfig(BaseModel):
    welcome: StageSettings = Field(default_factory=lambda: StageSettings(
        max_tokens=1500, temperature=0.7, timeout=30, max_retries=2,
        quick_trial_turns=3, serious_turns=6,
    ))
    info_collection: StageSettings = Field(default_factory=lambda: StageSettings(
        max_tokens=2000, temperature=0.5, timeout=60, max_retries=3,
        quick_trial_turns=2, serious_turns=8,
    ))
    design: StageSettings = Field(default_factory=lambda: StageSettings(
        max_tokens=2000, temperature=0.7, timeout=45, max_retries=2,
        quick_trial_turns=2, serious_turns=4,
    ))
    coding: StageSettings = Field(default_factory=lambda: StageSettings(
        max_tokens=4000, temperature=0.2, timeout=120, max_retries=3,
        quick_trial_turns=2, serious_turns=4,
    ))

    def for_stage(self, stage: Stage) -> StageSettings:
        return getattr(self, stage.value)


class ProjectConfig(BaseModel):
    """Full project configuration loaded from config.yaml."""
    project_name: str = Field(default="portfolio-page-builder")

    # Azure OpenAI
    azure: AzureConfig = Field(default_factory=AzureConfig)

    # Models
    models: ModelConfig = Field(default_factory=ModelConfig)

    # Model call settings
    timeout: int = Field(default=120, description="LLM client timeout in seconds")
    seed: int = Field(default=42, description="LLM seed for reproducibility")
    retry_backoff: float = Field(default=1.0, description="Base delay for exponential retry backoff")
    max_tool_rounds: int = Field(default=3, description="Max tool-use rounds per turn")
    max_continuation_rounds: int = Field(default=2, description="Max continuations after a token cut-off")

    # Control channel
    control_tags: list[str] = Field(
        default_factory=lambda: ["CTRL", "HIDDEN_CONTROL"],
        description="Fence tags that mark the hidden control block",
    )
    strict_contracts: bool = Field(
        default=False, description="Raise on stage contract violations instead of continuing",
    )

    # Persistence
    session_dir: str = Field(default="sessions/", description="Directory for the JSON session store")

    stages: StagesConfig = Field(default_factory=StagesConfig)
