"""Exception taxonomy for the stage pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all portfolio page builder errors."""


class TransientModelError(PipelineError):
    """Upstream model or network failure that may succeed on retry."""


class MalformedControlPayload(PipelineError):
    """A control block that could not be parsed even after repair.

    Never escapes the codec; it is logged and treated as "no record yet".
    """

    def __init__(self, payload: str, reason: str) -> None:
        super().__init__(f"Unparseable control payload ({reason}): {payload[:120]!r}")
        self.payload = payload
        self.reason = reason


class TurnBudgetExceeded(PipelineError):
    """A stage used all of its turns without declaring readiness."""

    def __init__(self, stage: str, budget: int) -> None:
        super().__init__(f"Stage {stage!r} reached its turn budget of {budget}")
        self.stage = stage
        self.budget = budget


class SessionNotFound(PipelineError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class StageContractViolation(PipelineError):
    """A stage reported a terminal signal without a complete control record."""
