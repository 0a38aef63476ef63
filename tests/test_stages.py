"""Tests for the four stage agents' heuristics and hand-off summaries."""

from __future__ import annotations

import pytest

from portfolio_page_builder.agents.coding import make_coding_agent
from portfolio_page_builder.agents.design import (
    LAYOUTS,
    THEMES,
    TECH_STACKS,
    choose_features,
    choose_layout,
    choose_sections,
    choose_tech_stack,
    choose_theme,
    make_design_agent,
)
from portfolio_page_builder.agents.info_collection import detect_link_type, make_info_collection_agent
from portfolio_page_builder.agents.welcome import collection_priority, make_welcome_agent
from portfolio_page_builder.models import (
    Confidence,
    HandoffSummary,
    ProjectConfig,
    Session,
    Stage,
    StageSignal,
)


@pytest.fixture
def config() -> ProjectConfig:
    return ProjectConfig()


def _handoff(stage: Stage, summary: dict, *, degraded: bool = False) -> HandoffSummary:
    return HandoffSummary(
        stage=stage,
        signal=StageSignal.FORCE_ADVANCE if degraded else StageSignal.ADVANCE,
        summary=summary,
        degraded=degraded,
        confidence=Confidence.LOW if degraded else Confidence.HIGH,
    )


# ---------------------------------------------------------------------------
# Welcome
# ---------------------------------------------------------------------------


class TestCollectionPriority:
    @pytest.mark.parametrize("role,first", [
        ("Frontend Developer", "github"),
        ("software engineer", "github"),
        ("前端开发", "github"),
        ("UX designer", "portfolio"),
        ("product manager", "linkedin"),
        ("Senior PM", "linkedin"),
        ("nurse", "resume"),
        (None, "resume"),
    ])
    def test_first_priority(self, role, first):
        assert collection_priority(role)[0] == first

    def test_pm_substring_does_not_match_inside_words(self):
        assert collection_priority("shipment coordinator")[0] == "resume"


class TestWelcomeSummary:
    def test_serious_summary(self, config, client):
        agent = make_welcome_agent(config, client)
        fields = {
            "user_role": "designer",
            "use_case": "freelance clients",
            "style": "bold",
            "highlight_focus": "case studies",
            "commitment_level": "认真制作",
        }
        summary = agent.build_summary(fields, Session(), degraded=False)
        assert summary["commitment_level"] == "serious"
        assert summary["use_sample_data"] is False
        assert summary["assumed_fields"] == []
        context = agent.context_for_next_stage(summary)
        assert "portfolio, behance, dribbble, resume" in context

    def test_quick_trial_uses_sample_data(self, config, client):
        agent = make_welcome_agent(config, client)
        summary = agent.build_summary({"commitment_level": "quick_trial"}, Session(), degraded=True)
        assert summary["use_sample_data"] is True
        assert summary["user_role"] == "professional"
        assert set(summary["assumed_fields"]) == {"user_role", "use_case", "style", "highlight_focus"}
        assert "sample data" in agent.context_for_next_stage(summary)


# ---------------------------------------------------------------------------
# Info collection
# ---------------------------------------------------------------------------


class TestDetectLinkType:
    @pytest.mark.parametrize("url,expected", [
        ("https://github.com/octocat", "github"),
        ("gitlab.com/someone", "github"),
        ("https://www.linkedin.com/in/jane", "linkedin"),
        ("https://www.behance.net/jane", "behance"),
        ("https://dribbble.com/jane", "dribbble"),
        ("https://medium.com/@jane", "blog"),
        ("https://jane.dev/blog/hello", "blog"),
        ("https://jane.dev", "website"),
    ])
    def test_detect(self, url, expected):
        assert detect_link_type(url) == expected


class TestInfoCollectionSummary:
    def test_summary(self, config, client):
        agent = make_info_collection_agent(config, client)
        session = Session(collected_fields={"user_role": "developer"})
        fields = {
            "skills": ["python", "postgres"],
            "projects": [{"name": "ppb"}],
            "experience": "5 years at Acme",
            "links": ["https://github.com/jane", "https://jane.dev"],
            "documents": ["resume.pdf"],
        }
        summary = agent.build_summary(fields, session, degraded=False)
        assert summary["links"] == [
            {"url": "https://github.com/jane", "type": "github"},
            {"url": "https://jane.dev", "type": "website"},
        ]
        assert summary["profile"]["experience"] == ["5 years at Acme"]
        assert summary["data_sources"] == ["github", "resume", "website"]
        assert summary["missing_sources"] == ["blog", "projects"]
        assert summary["completeness"] == 1.0
        assert summary["skipped"] is False

    def test_skip_satisfies_required_fields(self, config, client):
        agent = make_info_collection_agent(config, client)
        assert agent.missing_fields({"skip_requested": True}) == []
        assert agent.missing_fields({"skip_requested": "yes"}) == ["skills", "projects", "experience"]

    def test_partial_material_mentions_placeholders(self, config, client):
        agent = make_info_collection_agent(config, client)
        summary = agent.build_summary({"skills": ["figma"]}, Session(), degraded=True)
        assert summary["completeness"] == pytest.approx(0.33)
        assert "placeholder" in agent.context_for_next_stage(summary)


# ---------------------------------------------------------------------------
# Design
# ---------------------------------------------------------------------------


class TestDesignHeuristics:
    def test_layout_rules(self):
        assert choose_layout("UX designer", "", {}) == "portfolio_showcase"
        assert choose_layout("developer", "", {"projects": ["x"]}) == "project_grid"
        assert choose_layout("developer", "job hunting", {}) == "classic_timeline"
        assert choose_layout("freelance consultant", "", {}) == "consultation_layout"
        assert choose_layout("engineering manager", "", {}) == "professional_blocks"
        assert choose_layout("student", "", {}) == "modern_card"

    def test_theme_rules(self):
        assert choose_theme("developer", "clean") == "minimal"
        assert choose_theme("developer", "bold") == "tech_blue"
        assert choose_theme("illustrator", "creative") == "creative_purple"
        assert choose_theme("student", "") == "modern"
        assert choose_theme("chef", "") == "classic"

    def test_every_choice_is_in_catalog(self):
        for role in ["developer", "designer", "manager", "consultant", "student", ""]:
            assert choose_layout(role, "", {}) in LAYOUTS
            assert choose_theme(role, "") in THEMES

    def test_sections(self):
        sections = choose_sections("developer", "job hunting", {"projects": ["a"], "education": ["BSc"]})
        assert sections[0] == "hero"
        assert sections[-1] == "contact"
        assert {"projects", "experience", "skills", "education"} <= set(sections)

    def test_features_for_trial(self):
        features = choose_features("just trying it out", "minimal", "modern_card")
        assert features["contact_form"] is False
        assert features["seo"] is False
        assert features["responsive"] is True

    def test_tech_stack(self):
        assert choose_tech_stack("speed", {"contact_form": True}) == "static_minimal"
        assert choose_tech_stack("quality", {"contact_form": True}) == "next_fullstack"
        assert choose_tech_stack("features", {}) == "next_fullstack"
        assert choose_tech_stack("quality", {}) == "modern_react"


class TestDesignSummary:
    def test_invalid_choices_fall_back(self, config, client):
        agent = make_design_agent(config, client)
        session = Session(collected_fields={
            "user_role": "developer",
            "use_case": "job hunting",
            "style": "clean",
            "commitment_level": "serious",
        })
        fields = {"layout": "nonexistent", "theme": "tech_blue", "sections": ["hero", "projects"]}
        summary = agent.build_summary(fields, session, degraded=False)
        strategy = summary["design_strategy"]
        assert strategy["layout"] == "classic_timeline"
        assert strategy["theme"] == "tech_blue"
        assert strategy["palette"] == THEMES["tech_blue"]
        assert strategy["sections"] == ["hero", "projects"]
        assert strategy["priority"] == "quality"
        assert summary["tech_stack"] == "next_fullstack"
        assert summary["tech_stack_details"] == TECH_STACKS["next_fullstack"]
        assert summary["used_fallbacks"] is True
        assert summary["fallback_fields"] == ["layout", "priority"]
        assert summary["upstream_degraded"] is False
        assert "placeholder projects" in summary["development_prompt"]
        assert agent.context_for_next_stage(summary) == summary["development_prompt"]

    def test_quick_trial_prefers_speed(self, config, client):
        agent = make_design_agent(config, client)
        session = Session(collected_fields={"commitment_level": "quick_trial"})
        summary = agent.build_summary({}, session, degraded=True)
        assert summary["design_strategy"]["priority"] == "speed"
        assert summary["tech_stack"] == "static_minimal"
        assert summary["used_fallbacks"] is True
        assert summary["fallback_fields"] == ["layout", "theme", "sections", "priority"]

    def test_unhashable_values_are_tolerated(self, config, client):
        agent = make_design_agent(config, client)
        fields = {"layout": ["grid"], "theme": {"name": "x"}, "priority": ["speed"], "features": ["animations"]}
        summary = agent.build_summary(fields, Session(), degraded=False)
        assert summary["design_strategy"]["layout"] in LAYOUTS
        assert summary["design_strategy"]["features"]["animations"] is True

    def test_upstream_degradation_is_propagated(self, config, client):
        agent = make_design_agent(config, client)
        session = Session()
        session.record_handoff(_handoff(Stage.WELCOME, {}, degraded=True))
        summary = agent.build_summary({"layout": "modern_card"}, session, degraded=False)
        assert summary["upstream_degraded"] is True
        assert summary["fallback_fields"] == ["theme", "sections", "priority"]

    def test_fallback_flag_only_set_when_heuristics_fill_a_field(self, config, client):
        agent = make_design_agent(config, client)
        session = Session()
        session.record_handoff(_handoff(Stage.WELCOME, {}, degraded=True))
        fields = {
            "layout": "modern_card",
            "theme": "tech_blue",
            "sections": ["hero", "projects"],
            "priority": "quality",
        }
        summary = agent.build_summary(fields, session, degraded=False)
        assert summary["used_fallbacks"] is False
        assert summary["fallback_fields"] == []
        assert summary["upstream_degraded"] is True
        assert summary["design_strategy"]["layout"] == "modern_card"


# ---------------------------------------------------------------------------
# Coding
# ---------------------------------------------------------------------------


class TestCodingSummary:
    def test_defaults_follow_design(self, config, client):
        agent = make_coding_agent(config, client)
        session = Session()
        session.record_handoff(_handoff(Stage.INFO_COLLECTION, {"profile": {"skills": ["go"]}}))
        session.record_handoff(_handoff(Stage.DESIGN, {
            "tech_stack": "static_minimal",
            "design_strategy": {"layout": "modern_card"},
            "development_prompt": "Build it.",
        }))
        summary = agent.build_summary({}, session, degraded=False)
        assert summary["tech_stack"] == "static_minimal"
        assert summary["files"] == [{"path": "index.html", "purpose": "Complete single-page portfolio"}]
        assert summary["entry_point"] == "index.html"
        assert summary["deployment"] == TECH_STACKS["static_minimal"]["deployment"]
        assert summary["profile"] == {"skills": ["go"]}
        assert summary["placeholder_content"] is False
        assert "index.html" in agent.context_for_next_stage(summary)

    def test_files_are_normalised(self, config, client):
        agent = make_coding_agent(config, client)
        fields = {
            "tech_stack": "modern_react",
            "files": ["src/App.tsx", {"path": "src/main.tsx", "purpose": "bootstrap"}, {"purpose": "no path"}, 3],
        }
        summary = agent.build_summary(fields, Session(), degraded=True)
        assert summary["files"] == [
            {"path": "src/App.tsx", "purpose": ""},
            {"path": "src/main.tsx", "purpose": "bootstrap"},
        ]
        assert summary["placeholder_content"] is True

    def test_unknown_stack_falls_back(self, config, client):
        agent = make_coding_agent(config, client)
        summary = agent.build_summary({"tech_stack": "django"}, Session(), degraded=False)
        assert summary["tech_stack"] == "django"
        assert summary["tech_stack_details"] == TECH_STACKS["modern_react"]
        assert summary["entry_point"] == "src/App.tsx"
