"""StageAgent — behaviour shared by every conversation stage.

A stage turn streams model output through a ``ControlChannelCodec``, relays
visible text as ``PartialResponse`` objects, and ends with one terminal
``PartialResponse`` carrying the stage signal (continue / advance /
force_advance). The agent never mutates the session: everything the turn
wants to change is described by ``StageTurn.outcome`` and applied by the
orchestrator once the turn has finished.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable

from ..errors import StageContractViolation, TransientModelError, TurnBudgetExceeded
from ..model_client import ModelClient, ModelStream
from ..models import (
    CommitmentLevel,
    Confidence,
    ControlRecord,
    ControlStatus,
    DegradationReason,
    HandoffSummary,
    Message,
    MessageRole,
    ModelOptions,
    PartialKind,
    PartialResponse,
    ProjectConfig,
    Session,
    Stage,
    StageSettings,
    StageSignal,
    StopReason,
    ToolCall,
    TurnOutcome,
    coerce_commitment,
    is_empty_value,
    overall_progress,
)
from ..tools.control_channel import ControlChannelCodec

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[Any]]

MODEL_UNAVAILABLE = "model_unavailable"

UNAVAILABLE_MESSAGE = (
    "Sorry, I couldn't reach the assistant just now. "
    "Please send your message again in a moment."
)

CONTINUE_PROMPT = "Continue exactly where you stopped. Do not repeat text you already wrote."

CONTROL_INSTRUCTIONS = """\
## Hidden control block

End every reply with exactly one control block. The user never sees it, so
never mention it:

```{tag}
{{"status": "CONTINUE", "collectedData": {{}}, "confidence": "MEDIUM", "reasoning": "..."}}
```

- status: CONTINUE while information is still missing; READY_TO_ADVANCE when {ready_when};
  NEED_CLARIFICATION when the user's last message was too ambiguous to use.
- collectedData: only the fields you learned from this turn. Allowed keys: {fields}.
- confidence: HIGH, MEDIUM or LOW.
- reasoning: one short sentence for the system log.
- The block must be valid JSON.
"""


# ---------------------------------------------------------------------------
# Stop reasons
# ---------------------------------------------------------------------------

_STOP_REASONS: dict[str, StopReason] = {
    "end_turn": StopReason.NATURAL_COMPLETION,
    "stop": StopReason.NATURAL_COMPLETION,
    "stop_sequence": StopReason.STOP_SEQUENCE_TRIGGERED,
    "max_tokens": StopReason.INCOMPLETE_DUE_TO_TOKENS,
    "length": StopReason.INCOMPLETE_DUE_TO_TOKENS,
    "tool_use": StopReason.TOOL_USE_REQUIRED,
    "tool_calls": StopReason.TOOL_USE_REQUIRED,
    "function_call": StopReason.TOOL_USE_REQUIRED,
}


def classify_stop_reason(raw: str | None) -> StopReason:
    """Map a vendor finish/stop reason onto ``StopReason``."""
    if not raw:
        return StopReason.UNKNOWN
    return _STOP_REASONS.get(raw.strip().lower(), StopReason.UNKNOWN)


# ---------------------------------------------------------------------------
# Turn handle
# ---------------------------------------------------------------------------


class StageTurn:
    """Single-use async iterable over the partial responses of one turn.

    ``outcome`` is set just before the terminal response is yielded.
    """

    def __init__(self, agent: StageAgent, user_input: str, session: Session) -> None:
        self.agent = agent
        self.user_input = user_input
        self.session = session
        self.outcome: TurnOutcome | None = None
        self._started = False

    def __aiter__(self) -> AsyncIterator[PartialResponse]:
        if self._started:
            raise RuntimeError("A stage turn can only be iterated once; call process() for a new turn")
        self._started = True
        return self.agent._run(self)


# ---------------------------------------------------------------------------
# Base agent
# ---------------------------------------------------------------------------


class StageAgent:
    """Base class for the four conversation stages.

    Subclasses set ``stage``, ``system_prompt``, ``required_fields`` and
    optionally override ``build_summary`` / ``context_for_next_stage``.
    """

    stage: Stage
    system_prompt: str = ""
    ready_when: str = "all required fields are known"
    required_fields: tuple[str, ...] = ()
    optional_fields: tuple[str, ...] = ()
    first_turn_template: str = "{user_input}"
    continuation_template: str = "{user_input}"
    tool_specs: dict[str, dict[str, Any]] = {}

    def __init__(
        self,
        config: ProjectConfig,
        client: ModelClient,
        *,
        settings: StageSettings | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.settings = settings or config.stages.for_stage(self.stage)
        self.retry_count = 0
        self._tools: dict[str, ToolHandler] = {}
        self._tool_schemas: dict[str, dict[str, Any]] = {}

    # -- public -------------------------------------------------------------

    def process(self, user_input: str, session: Session) -> StageTurn:
        """Start one turn. Iterate the result with ``async for``."""
        return StageTurn(self, user_input, session)

    def register_tool(
        self, name: str, handler: ToolHandler, spec: dict[str, Any] | None = None,
    ) -> None:
        """Make an external async tool available to the model during tool-use rounds."""
        schema = spec or self.tool_specs.get(name)
        if schema is None:
            raise ValueError(f"No tool spec for {name!r}; pass one explicitly")
        self._tools[name] = handler
        self._tool_schemas[name] = schema

    @property
    def all_fields(self) -> tuple[str, ...]:
        return self.required_fields + self.optional_fields

    # -- stage hooks --------------------------------------------------------

    def build_summary(self, fields: dict[str, Any], session: Session, *, degraded: bool) -> dict[str, Any]:
        return dict(fields)

    def context_for_next_stage(self, summary: dict[str, Any]) -> str:
        return json.dumps(summary, ensure_ascii=False, default=str)

    def decide(self, record: ControlRecord | None, stop_reason: StopReason) -> tuple[StageSignal, DegradationReason | None]:
        """Map the turn's control record and stop reason onto a stage signal."""
        if record is not None and record.status is ControlStatus.READY_TO_ADVANCE:
            return StageSignal.ADVANCE, None
        if stop_reason is StopReason.UNKNOWN:
            return StageSignal.FORCE_ADVANCE, DegradationReason.UNKNOWN_STOP_REASON
        return StageSignal.CONTINUE, None

    # -- prompts and history ------------------------------------------------

    def preamble(self, session: Session) -> str:
        parts = [
            self.system_prompt.strip(),
            CONTROL_INSTRUCTIONS.format(
                tag=self.config.control_tags[0],
                ready_when=self.ready_when,
                fields=", ".join(self.all_fields) or "none",
            ),
        ]
        previous = session.previous_handoff(self.stage)
        if previous is not None:
            parts.append(self.handoff_context(previous))
        return "\n\n".join(parts)

    def handoff_context(self, previous: HandoffSummary) -> str:
        lines = [
            f"## Hand-off from the {previous.stage.value} stage",
            previous.context_for_next_stage,
            "```json",
            json.dumps(previous.summary, ensure_ascii=False, indent=2, default=str),
            "```",
        ]
        if previous.degraded:
            reason = previous.degradation_reason.value if previous.degradation_reason else "unknown"
            lines.append(
                f"NOTE: the previous stage ended without full confirmation ({reason}). "
                "Treat its data as incomplete and fill gaps with sensible generic defaults "
                "instead of asking the user to start over."
            )
        return "\n".join(lines)

    def format_user_message(self, user_input: str, session: Session) -> str:
        first = not session.history(self.stage)
        template = self.first_turn_template if first else self.continuation_template
        known = self.stage_fields(session.collected_fields)
        return template.format(
            user_input=user_input,
            known_fields=json.dumps(known, ensure_ascii=False, default=str),
            turn=session.turns(self.stage) + 1,
        )

    def build_request(self, session: Session, user_message: str) -> tuple[list[dict[str, Any]], list[Message]]:
        """Return the chat messages to send and the history entries to record.

        The preamble is recorded once per session and stage; later turns only
        add the new exchange.
        """
        pending: list[Message] = []
        history = list(session.history(self.stage))
        if not session.preamble_recorded(self.stage):
            system = Message(role=MessageRole.SYSTEM, content=self.preamble(session))
            pending.append(system)
            history.insert(0, system)
        user = Message(role=MessageRole.USER, content=user_message)
        pending.append(user)
        return [m.to_chat() for m in history] + [user.to_chat()], pending

    # -- fields, budgets and progress ---------------------------------------

    def stage_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        return {k: fields[k] for k in self.all_fields if k in fields and not is_empty_value(fields[k])}

    def missing_fields(self, fields: dict[str, Any]) -> list[str]:
        return [k for k in self.required_fields if is_empty_value(fields.get(k))]

    def stage_fraction(self, fields: dict[str, Any]) -> float:
        if not self.required_fields:
            return 0.0
        found = len(self.required_fields) - len(self.missing_fields(fields))
        return found / len(self.required_fields)

    def commitment_level(self, fields: dict[str, Any]) -> CommitmentLevel:
        return coerce_commitment(fields.get("commitment_level"))

    def turn_budget(self, fields: dict[str, Any]) -> int:
        return self.settings.turn_budget(self.commitment_level(fields))

    def _enforce_budget(self, turns_used: int, fields: dict[str, Any]) -> None:
        budget = self.turn_budget(fields)
        if turns_used >= budget:
            raise TurnBudgetExceeded(self.stage.value, budget)

    # -- turn loop ----------------------------------------------------------

    def _options(self) -> ModelOptions:
        return ModelOptions(
            role=self.stage.value,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
            tools=list(self._tool_schemas.values()),
        )

    def _new_codec(self, primed_with: str = "") -> ControlChannelCodec:
        codec = ControlChannelCodec(self.config.control_tags)
        if primed_with:
            # Text up to here was already shown in an earlier round.
            codec.process_chunk(primed_with)
        return codec

    def _partial(self, text: str, progress: int, kind: PartialKind = PartialKind.TEXT) -> PartialResponse:
        return PartialResponse(stage=self.stage, kind=kind, text=text, progress=progress)

    @staticmethod
    def _skip_replayed(total: str, new_text: str, shown: str) -> tuple[str, str]:
        """Drop text the caller already saw before a retry.

        *total* is everything the retried codec has made visible, *shown* what
        the caller received before the failure. Returns the text to relay and
        what is still pending replay; once the retried round diverges or passes
        *shown*, replay suppression stops.
        """
        if shown.startswith(total):
            return "", shown
        if total.startswith(shown):
            return total[len(shown):], ""
        return new_text, ""

    async def _guarded(self, stream: ModelStream) -> AsyncIterator[str]:
        """Yield fragments, failing once the upstream wait exceeds the stage timeout."""
        loop = asyncio.get_running_loop()
        remaining = float(self.settings.timeout)
        async with aclosing(aiter(stream)) as iterator:
            while True:
                started = loop.time()
                try:
                    fragment = await asyncio.wait_for(anext(iterator), timeout=max(remaining, 0.001))
                except StopAsyncIteration:
                    return
                except TimeoutError as e:
                    raise TransientModelError(
                        f"{self.stage.value} model call exceeded {self.settings.timeout}s"
                    ) from e
                remaining -= loop.time() - started
                yield fragment

    async def _run_tools(self, round_text: str, calls: list[ToolCall]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{
            "role": "assistant",
            "content": round_text or None,
            "tool_calls": [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                }
                for c in calls
            ],
        }]
        for call in calls:
            handler = self._tools.get(call.name)
            if handler is None:
                content = json.dumps({"error": f"Unknown tool: {call.name}"})
            else:
                try:
                    result = await handler(**call.arguments)
                    content = result if isinstance(result, str) else json.dumps(result, default=str)
                except Exception as e:
                    logger.warning("Tool %s failed: %s", call.name, e)
                    content = json.dumps({"error": str(e)})
            messages.append({"role": "tool", "tool_call_id": call.id, "content": content})
        return messages

    async def _run(self, turn: StageTurn) -> AsyncIterator[PartialResponse]:
        session = turn.session
        stage = self.stage
        request, pending = self.build_request(session, self.format_user_message(turn.user_input, session))
        progress = overall_progress(stage, self.stage_fraction(session.collected_fields))

        codec = self._new_codec()
        buffer = ""
        replayed = ""
        tool_rounds = 0
        continuation_rounds = 0

        while True:
            round_start = buffer
            attempt = 0
            while True:
                stream = self.client.stream_completion(request, self._options())
                round_text = ""
                try:
                    async with aclosing(self._guarded(stream)) as fragments:
                        async for fragment in fragments:
                            round_text += fragment
                            text = codec.process_chunk(buffer + round_text).new_visible_text
                            if text and replayed:
                                text, replayed = self._skip_replayed(codec.visible_text, text, replayed)
                            if text:
                                yield self._partial(text, progress)
                    break
                except TransientModelError as e:
                    replayed = replayed or codec.visible_text
                    attempt += 1
                    if attempt > self.settings.max_retries:
                        logger.error("%s: giving up after %d attempts: %s", stage.value, attempt, e)
                        turn.outcome = TurnOutcome(stage=stage, error_tag=MODEL_UNAVAILABLE, progress=progress)
                        yield PartialResponse(
                            stage=stage,
                            kind=PartialKind.ERROR,
                            text=UNAVAILABLE_MESSAGE,
                            progress=progress,
                            done=True,
                            error_tag=MODEL_UNAVAILABLE,
                        )
                        return
                    self.retry_count += 1
                    delay = self.config.retry_backoff * (2 ** (attempt - 1))
                    logger.warning(
                        "%s: model call failed (%s); retry %d/%d in %.1fs",
                        stage.value, e, attempt, self.settings.max_retries, delay,
                    )
                    yield self._partial(
                        f"Connection interrupted, retrying ({attempt}/{self.settings.max_retries})...",
                        progress,
                        kind=PartialKind.RETRY,
                    )
                    await asyncio.sleep(delay)
                    codec = self._new_codec(primed_with=round_start)

            buffer += round_text
            stop_reason = classify_stop_reason(stream.stop_reason)

            if stop_reason is StopReason.TOOL_USE_REQUIRED:
                if stream.tool_calls and tool_rounds < self.config.max_tool_rounds:
                    tool_rounds += 1
                    request = request + await self._run_tools(round_text, stream.tool_calls)
                    continue
                logger.warning("%s: tool round limit reached or no tool calls; stopping", stage.value)
                stop_reason = StopReason.UNKNOWN
            elif stop_reason is StopReason.INCOMPLETE_DUE_TO_TOKENS and codec.control_record is None:
                if continuation_rounds < self.config.max_continuation_rounds:
                    continuation_rounds += 1
                    request = request + [
                        {"role": "assistant", "content": round_text},
                        {"role": "user", "content": CONTINUE_PROMPT},
                    ]
                    continue
                logger.warning("%s: output still truncated after %d continuations", stage.value, continuation_rounds)
            break

        text = codec.finalize().new_visible_text
        if text and replayed:
            text, replayed = self._skip_replayed(codec.visible_text, text, replayed)
        if text:
            yield self._partial(text, progress)

        outcome = self._conclude(session, codec.control_record, stop_reason, progress)
        outcome.messages = pending + [Message(role=MessageRole.ASSISTANT, content=buffer)]
        outcome.visible_text = codec.visible_text
        outcome.raw_output = buffer
        turn.outcome = outcome
        yield PartialResponse(
            stage=stage,
            kind=PartialKind.FINAL,
            progress=outcome.progress,
            done=True,
            signal=outcome.signal,
            next_stage=stage.next() if outcome.signal is not StageSignal.CONTINUE else None,
            confidence_degraded=bool(outcome.handoff and outcome.handoff.degraded),
        )

    def _conclude(
        self,
        session: Session,
        record: ControlRecord | None,
        stop_reason: StopReason,
        progress: int,
    ) -> TurnOutcome:
        stage = self.stage
        signal, reason = self.decide(record, stop_reason)
        self._check_contract(signal, record)
        if signal is StageSignal.ADVANCE and (record is None or record.status is not ControlStatus.READY_TO_ADVANCE):
            signal, reason = StageSignal.CONTINUE, None

        if record is None or record.status is ControlStatus.NEED_CLARIFICATION:
            fields: dict[str, Any] = {}
        else:
            fields = {k: v for k, v in record.collected_data.items() if not is_empty_value(v)}
        projected = {**session.collected_fields, **fields}
        turns_used = session.turns(stage) + 1

        if signal is StageSignal.CONTINUE:
            try:
                self._enforce_budget(turns_used, projected)
            except TurnBudgetExceeded as e:
                logger.info("%s; forcing advance", e)
                signal, reason = StageSignal.FORCE_ADVANCE, DegradationReason.TURN_BUDGET_EXHAUSTED

        handoff = None
        if signal is StageSignal.CONTINUE:
            progress = max(progress, min(overall_progress(stage, self.stage_fraction(projected)), 99))
        else:
            handoff = self._handoff(signal, reason, record, projected, turns_used, session)
            nxt = stage.next()
            progress = overall_progress(nxt, 0.0) if nxt else 100

        logger.info(
            "%s turn %d finished: %s (stop=%s, record=%s)",
            stage.value, turns_used, signal.value, stop_reason.value,
            record.status.value if record else "none",
        )
        return TurnOutcome(
            stage=stage,
            signal=signal,
            record=record,
            fields=fields,
            handoff=handoff,
            stop_reason=stop_reason,
            progress=progress,
        )

    def _check_contract(self, signal: StageSignal, record: ControlRecord | None) -> None:
        if signal is not StageSignal.ADVANCE:
            return
        if record is not None and record.status is ControlStatus.READY_TO_ADVANCE:
            return
        message = f"{self.stage.value} signalled advance without a complete READY_TO_ADVANCE record"
        if self.config.strict_contracts:
            raise StageContractViolation(message)
        logger.error("%s; continuing instead", message)

    def _handoff(
        self,
        signal: StageSignal,
        reason: DegradationReason | None,
        record: ControlRecord | None,
        fields: dict[str, Any],
        turns_used: int,
        session: Session,
    ) -> HandoffSummary:
        missing = self.missing_fields(fields)
        if reason is None and missing:
            reason = DegradationReason.INCOMPLETE_FIELDS
        degraded = signal is StageSignal.FORCE_ADVANCE or bool(missing)
        if degraded:
            confidence = Confidence.LOW
        else:
            confidence = record.confidence if record else Confidence.MEDIUM
        own = self.stage_fields(fields)
        summary = self.build_summary(own, session, degraded=degraded)
        if missing:
            logger.warning("%s hand-off is missing %s", self.stage.value, ", ".join(missing))
        return HandoffSummary(
            stage=self.stage,
            signal=signal,
            fields=own,
            summary=summary,
            confidence=confidence,
            degraded=degraded,
            degradation_reason=reason,
            turns_used=turns_used,
            context_for_next_stage=self.context_for_next_stage(summary),
        )
