"""Tests for tools/session_store.py."""

from __future__ import annotations

import pytest

from portfolio_page_builder.errors import SessionNotFound
from portfolio_page_builder.models import (
    DegradationReason,
    HandoffSummary,
    Message,
    MessageRole,
    Session,
    Stage,
    StageSignal,
)
from portfolio_page_builder.tools.session_store import InMemorySessionStore, JsonFileSessionStore


def _populated_session() -> Session:
    session = Session(collected_fields={"user_role": "designer", "skills": ["figma"]})
    session.append_history(Stage.WELCOME, [
        Message(role=MessageRole.SYSTEM, content="preamble"),
        Message(role=MessageRole.USER, content="我是设计师"),
    ])
    session.turn_counters[Stage.WELCOME] = 2
    session.record_handoff(HandoffSummary(
        stage=Stage.WELCOME,
        signal=StageSignal.FORCE_ADVANCE,
        summary={"user_role": "designer"},
        degraded=True,
        degradation_reason=DegradationReason.TURN_BUDGET_EXHAUSTED,
    ))
    session.advance_stage(StageSignal.FORCE_ADVANCE)
    return session


class TestInMemorySessionStore:
    def test_round_trip(self):
        store = InMemorySessionStore()
        session = _populated_session()
        store.save(session)
        loaded = store.load(session.id)
        assert loaded.current_stage is Stage.INFO_COLLECTION
        assert loaded.collected_fields == session.collected_fields
        assert session.id in store

    def test_loaded_copy_is_isolated(self):
        store = InMemorySessionStore()
        session = Session()
        store.save(session)
        loaded = store.load(session.id)
        loaded.collected_fields["style"] = "bold"
        session.collected_fields["theme"] = "minimal"
        assert store.load(session.id).collected_fields == {}

    def test_missing_raises(self):
        with pytest.raises(SessionNotFound) as exc:
            InMemorySessionStore().load("nope")
        assert exc.value.session_id == "nope"


class TestJsonFileSessionStore:
    def test_round_trip(self, tmp_path):
        store = JsonFileSessionStore(tmp_path / "sessions")
        session = _populated_session()
        store.save(session)

        loaded = JsonFileSessionStore(tmp_path / "sessions").load(session.id)

        assert loaded.current_stage is Stage.INFO_COLLECTION
        assert loaded.history(Stage.WELCOME)[1].content == "我是设计师"
        handoff = loaded.handoff_summaries[Stage.WELCOME]
        assert handoff.degraded is True
        assert handoff.degradation_reason is DegradationReason.TURN_BUDGET_EXHAUSTED
        assert loaded.transitions[0].to_stage is Stage.INFO_COLLECTION
        assert loaded.turns(Stage.WELCOME) == 0

    def test_save_overwrites(self, tmp_path):
        store = JsonFileSessionStore(tmp_path)
        session = Session()
        store.save(session)
        session.collected_fields["style"] = "bold"
        store.save(session)
        assert store.load(session.id).collected_fields == {"style": "bold"}
        assert not list(tmp_path.glob("*.tmp"))

    def test_missing_raises(self, tmp_path):
        with pytest.raises(SessionNotFound):
            JsonFileSessionStore(tmp_path).load("abc")

    @pytest.mark.parametrize("bad_id", ["../etc/passwd", "a/b", "..", ""])
    def test_unsafe_ids_rejected(self, tmp_path, bad_id):
        with pytest.raises(SessionNotFound):
            JsonFileSessionStore(tmp_path).load(bad_id)

    def test_list_ids(self, tmp_path):
        store = JsonFileSessionStore(tmp_path / "s")
        assert store.list_ids() == []
        store.save(Session(id="b"))
        store.save(Session(id="a"))
        assert store.list_ids() == ["a", "b"]
