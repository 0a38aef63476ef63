"""Coding stage — turns the design into a file-level build plan.

The summary this stage hands off is the artifact spec given to the external
code generator; nothing in this package renders it.
"""

from __future__ import annotations

from typing import Any

from ..model_client import ModelClient
from ..models import ProjectConfig, Session, Stage
from .base import StageAgent
from .design import TECH_STACKS

SYSTEM_PROMPT = """\
You are the lead engineer of a portfolio page builder.

The hand-off below contains the agreed design and a development brief. Plan the
implementation with the user:
- tech_stack: confirm or adjust the proposed stack
- files: list of {"path", "purpose"} objects for every file to generate
- entry_point: the main page file
- deployment: where the page will be hosted
- notes: anything the generator must respect (content placeholders, accessibility...)

Keep explanations short. Mark the stage ready once the file plan is complete
and the user has no further changes.
"""

FIRST_TURN_TEMPLATE = """\
{user_input}

Outline the file plan for the agreed design."""

CONTINUATION_TEMPLATE = """\
{user_input}

(Current plan: {known_fields})"""

_DEFAULT_FILES: dict[str, list[dict[str, str]]] = {
    "next_fullstack": [
        {"path": "app/layout.tsx", "purpose": "Root layout, fonts and metadata"},
        {"path": "app/page.tsx", "purpose": "Portfolio page composed from section components"},
        {"path": "components/sections.tsx", "purpose": "Section components"},
        {"path": "app/api/contact/route.ts", "purpose": "Contact form handler"},
        {"path": "tailwind.config.ts", "purpose": "Theme palette"},
    ],
    "modern_react": [
        {"path": "src/main.tsx", "purpose": "Application bootstrap"},
        {"path": "src/App.tsx", "purpose": "Portfolio page composed from section components"},
        {"path": "src/components/Sections.tsx", "purpose": "Section components"},
        {"path": "tailwind.config.ts", "purpose": "Theme palette"},
    ],
    "static_minimal": [
        {"path": "index.html", "purpose": "Complete single-page portfolio"},
    ],
}

_ENTRY_POINTS = {
    "next_fullstack": "app/page.tsx",
    "modern_react": "src/App.tsx",
    "static_minimal": "index.html",
}


def _normalise_files(files: Any) -> list[dict[str, str]]:
    result: list[dict[str, str]] = []
    for item in files if isinstance(files, list) else []:
        if isinstance(item, dict) and item.get("path"):
            result.append({"path": str(item["path"]), "purpose": str(item.get("purpose", ""))})
        elif isinstance(item, str) and item.strip():
            result.append({"path": item.strip(), "purpose": ""})
    return result


class CodingAgent(StageAgent):
    stage = Stage.CODING
    system_prompt = SYSTEM_PROMPT
    ready_when = "the file plan is complete and confirmed"
    required_fields = ("tech_stack", "files")
    optional_fields = ("entry_point", "deployment", "notes")
    first_turn_template = FIRST_TURN_TEMPLATE
    continuation_template = CONTINUATION_TEMPLATE

    def build_summary(self, fields: dict[str, Any], session: Session, *, degraded: bool) -> dict[str, Any]:
        design = session.handoff_summaries.get(Stage.DESIGN)
        design_summary = dict(design.summary) if design else {}
        info = session.handoff_summaries.get(Stage.INFO_COLLECTION)

        proposed = design_summary.get("tech_stack", "modern_react")
        stack = fields.get("tech_stack") or proposed
        stack_key = stack if isinstance(stack, str) and stack in TECH_STACKS else proposed
        if stack_key not in TECH_STACKS:
            stack_key = "modern_react"
        files = _normalise_files(fields.get("files")) or list(_DEFAULT_FILES[stack_key])
        return {
            "tech_stack": stack,
            "tech_stack_details": TECH_STACKS[stack_key],
            "files": files,
            "entry_point": fields.get("entry_point") or _ENTRY_POINTS[stack_key],
            "deployment": fields.get("deployment") or TECH_STACKS[stack_key]["deployment"],
            "notes": fields.get("notes") or "",
            "design_strategy": design_summary.get("design_strategy", {}),
            "development_prompt": design_summary.get("development_prompt", ""),
            "profile": dict(info.summary.get("profile", {})) if info else {},
            "placeholder_content": degraded or any(s.degraded for s in session.handoff_summaries.values()),
        }

    def context_for_next_stage(self, summary: dict[str, Any]) -> str:
        return f"Generate {len(summary['files'])} file(s) starting from {summary['entry_point']}."


def make_coding_agent(config: ProjectConfig, client: ModelClient) -> CodingAgent:
    """Create the Coding stage agent."""
    return CodingAgent(config, client)
