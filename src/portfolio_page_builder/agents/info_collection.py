"""Info-Collection stage — gathers the material the page will be built from.

Link analysis and document parsing live outside this package. When a caller
registers handlers for the tools in ``TOOL_SPECS`` (see
``StageAgent.register_tool``) the model can call them during the turn;
otherwise it works from what the user types.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlparse

from ..model_client import ModelClient
from ..models import ProjectConfig, Session, Stage
from .base import StageAgent
from .welcome import collection_priority

SYSTEM_PROMPT = """\
You help the user gather material for their portfolio page.

Collect, in the order given by the hand-off below:
- links: profile or project URLs (GitHub, LinkedIn, personal site, blog, Behance, Dribbble...)
- documents: names of uploaded files such as a resume
- skills: list of skills or technologies
- projects: list of {"name", "description", "link"} objects
- experience: list of {"role", "organisation", "period", "summary"} objects
- education: list of {"institution", "degree", "period"} objects

Summarise what a link or document contains in one or two sentences instead of
pasting it back. If the user wants to skip this step, set skip_requested to
true and mark the stage ready; the next stage will work with what exists.
"""

FIRST_TURN_TEMPLATE = """\
{user_input}

Start by asking for the most useful material according to the hand-off."""

CONTINUATION_TEMPLATE = """\
{user_input}

(Collected so far: {known_fields})"""

TOOL_SPECS: dict[str, dict[str, Any]] = {
    "analyze_link": {
        "type": "function",
        "function": {
            "name": "analyze_link",
            "description": "Fetch a public URL and summarise the profile or project it describes.",
            "parameters": {
                "type": "object",
                "properties": {"url": {"type": "string", "description": "Absolute URL"}},
                "required": ["url"],
            },
        },
    },
    "parse_document": {
        "type": "function",
        "function": {
            "name": "parse_document",
            "description": "Extract structured resume data from an uploaded document.",
            "parameters": {
                "type": "object",
                "properties": {"document_id": {"type": "string"}},
                "required": ["document_id"],
            },
        },
    },
}

_LINK_TYPES: list[tuple[str, tuple[str, ...]]] = [
    ("github", ("github.com", "gitlab.com")),
    ("linkedin", ("linkedin.com",)),
    ("behance", ("behance.net",)),
    ("dribbble", ("dribbble.com",)),
    ("blog", ("medium.com", "dev.to", "substack.com", "hashnode", "blog")),
]


def detect_link_type(url: str) -> str:
    """Classify a URL by host: github, linkedin, behance, dribbble, blog or website."""
    host = urlparse(url if "://" in url else f"https://{url}").netloc.lower()
    path = url.lower()
    for link_type, markers in _LINK_TYPES:
        if any(m in host for m in markers):
            return link_type
    if "/blog" in path:
        return "blog"
    return "website"


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


class InfoCollectionAgent(StageAgent):
    stage = Stage.INFO_COLLECTION
    system_prompt = SYSTEM_PROMPT
    ready_when = (
        "you have skills, at least one project and some experience, or the user asked to skip"
    )
    required_fields = ("skills", "projects", "experience")
    optional_fields = ("links", "documents", "education", "skip_requested")
    first_turn_template = FIRST_TURN_TEMPLATE
    continuation_template = CONTINUATION_TEMPLATE
    tool_specs = TOOL_SPECS

    def missing_fields(self, fields: dict[str, Any]) -> list[str]:
        if fields.get("skip_requested") is True:
            return []
        return super().missing_fields(fields)

    def build_summary(self, fields: dict[str, Any], session: Session, *, degraded: bool) -> dict[str, Any]:
        links = [
            {"url": str(url), "type": detect_link_type(str(url))}
            for url in _as_list(fields.get("links"))
        ]
        found_types = {link["type"] for link in links}
        if fields.get("documents"):
            found_types.add("resume")
        priority = collection_priority(session.collected_fields.get("user_role"))
        present = len(self.required_fields) - len(super().missing_fields(fields))
        return {
            "links": links,
            "documents": _as_list(fields.get("documents")),
            "profile": {
                "skills": _as_list(fields.get("skills")),
                "projects": _as_list(fields.get("projects")),
                "experience": _as_list(fields.get("experience")),
                "education": _as_list(fields.get("education")),
            },
            "data_sources": sorted(found_types),
            "missing_sources": [p for p in priority if p not in found_types],
            "completeness": round(present / len(self.required_fields), 2),
            "skipped": fields.get("skip_requested") is True,
        }

    def context_for_next_stage(self, summary: dict[str, Any]) -> str:
        profile = summary["profile"]
        text = (
            f"Material gathered: {len(profile['projects'])} project(s), "
            f"{len(profile['skills'])} skill(s), {len(profile['experience'])} experience entr(ies). "
            f"Completeness {int(summary['completeness'] * 100)}%."
        )
        if summary["skipped"] or summary["completeness"] < 1:
            text += " Some material is missing; use placeholder content the user can edit later."
        return text


def make_info_collection_agent(config: ProjectConfig, client: ModelClient) -> InfoCollectionAgent:
    """Create the Info-Collection stage agent."""
    return InfoCollectionAgent(config, client)
