"""Welcome stage — captures who the user is and what the page is for."""

from __future__ import annotations

from typing import Any

from ..model_client import ModelClient
from ..models import CommitmentLevel, ProjectConfig, Session, Stage, coerce_commitment
from .base import StageAgent

SYSTEM_PROMPT = """\
You are the welcome host of a personal portfolio page builder.

Have a short, warm conversation to understand:
- user_role: what the user does (e.g. "frontend developer", "UX designer", "product manager")
- use_case: what the page is for (job hunting, personal brand, freelance clients, just trying it out)
- style: the look they like (minimal, bold, playful, corporate...)
- highlight_focus: what the page should emphasise (projects, experience, skills, writing...)
- commitment_level: "quick_trial" if they only want to see what the tool does,
  "serious" if they want a page they will actually publish

Ask about one or two things at a time and offer concrete examples. If the user
only wants a quick look, do not interrogate them: fill the remaining fields with
reasonable guesses and mark the stage ready.
"""

FIRST_TURN_TEMPLATE = """\
The user just opened the builder and said:

{user_input}

Greet them briefly and start finding out what they need."""

CONTINUATION_TEMPLATE = """\
{user_input}

(Known so far: {known_fields})"""

_PRIORITIES: list[tuple[tuple[str, ...], list[str]]] = [
    (("developer", "engineer", "programmer", "开发", "程序", "技术"), ["github", "resume", "blog", "projects"]),
    (("designer", "design", "设计", "创意"), ["portfolio", "behance", "dribbble", "resume"]),
    (("product manager", "product", " pm", "产品"), ["linkedin", "resume", "products", "cases"]),
]
_DEFAULT_PRIORITY = ["resume", "linkedin", "portfolio", "projects"]


def collection_priority(user_role: str | None) -> list[str]:
    """Which materials to ask for first, based on the user's role."""
    role = f" {(user_role or '').lower()}"
    for keywords, priority in _PRIORITIES:
        if any(k in role for k in keywords):
            return list(priority)
    return list(_DEFAULT_PRIORITY)


class WelcomeAgent(StageAgent):
    stage = Stage.WELCOME
    system_prompt = SYSTEM_PROMPT
    ready_when = "user_role and use_case are known and you have a reasonable idea of style and highlight_focus"
    required_fields = ("user_role", "use_case", "style", "highlight_focus")
    optional_fields = ("commitment_level",)
    first_turn_template = FIRST_TURN_TEMPLATE
    continuation_template = CONTINUATION_TEMPLATE

    generic_defaults: dict[str, str] = {
        "user_role": "professional",
        "use_case": "personal showcase",
        "style": "modern minimal",
        "highlight_focus": "projects and skills",
    }

    def build_summary(self, fields: dict[str, Any], session: Session, *, degraded: bool) -> dict[str, Any]:
        filled = {**self.generic_defaults, **fields}
        level = coerce_commitment(fields.get("commitment_level"))
        return {
            "user_role": filled["user_role"],
            "use_case": filled["use_case"],
            "style": filled["style"],
            "highlight_focus": filled["highlight_focus"],
            "commitment_level": level.value,
            "use_sample_data": level is CommitmentLevel.QUICK_TRIAL,
            "collection_priority": collection_priority(filled["user_role"]),
            "assumed_fields": sorted(k for k in self.generic_defaults if k not in fields),
        }

    def context_for_next_stage(self, summary: dict[str, Any]) -> str:
        if summary["use_sample_data"]:
            materials = "The user is just trying the tool: offer sample data and keep questions to a minimum."
        else:
            materials = "Ask for materials in this order: " + ", ".join(summary["collection_priority"]) + "."
        return (
            f"The user is a {summary['user_role']} building a page for {summary['use_case']}, "
            f"preferring a {summary['style']} look that highlights {summary['highlight_focus']}. "
            + materials
        )


def make_welcome_agent(config: ProjectConfig, client: ModelClient) -> WelcomeAgent:
    """Create the Welcome stage agent."""
    return WelcomeAgent(config, client)
