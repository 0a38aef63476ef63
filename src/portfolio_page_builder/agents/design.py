"""Design stage — settles layout, theme and page sections.

The model proposes a design together with the user. Whatever it leaves open,
or everything when the material hand-off was degraded, is filled in with the
keyword heuristics below so the Coding stage always receives a complete
design strategy.
"""

from __future__ import annotations

from typing import Any

from ..model_client import ModelClient
from ..models import Confidence, ProjectConfig, Session, Stage
from .base import StageAgent

# ---------------------------------------------------------------------------
# Catalogs
# ---------------------------------------------------------------------------

LAYOUTS: dict[str, str] = {
    "portfolio_showcase": "Large visual tiles that put creative work first",
    "project_grid": "Projects in a tidy grid with tech tags",
    "classic_timeline": "Experience and achievements in chronological order",
    "professional_blocks": "Formal information blocks for business profiles",
    "modern_card": "Modern card-based layout",
    "consultation_layout": "Services and expertise with a strong call to action",
}

THEMES: dict[str, dict[str, str]] = {
    "tech_blue": {"primary": "#0066CC", "secondary": "#E6F3FF", "accent": "#4A90E2"},
    "creative_purple": {"primary": "#7B68EE", "secondary": "#F0EFFF", "accent": "#9B59B6"},
    "business_gray": {"primary": "#2C3E50", "secondary": "#F8F9FA", "accent": "#34495E"},
    "nature_green": {"primary": "#27AE60", "secondary": "#E8F8F5", "accent": "#16A085"},
    "vibrant_orange": {"primary": "#FF6B35", "secondary": "#FFF4F0", "accent": "#E67E22"},
    "modern": {"primary": "#1A1A1A", "secondary": "#F5F5F5", "accent": "#007AFF"},
    "classic": {"primary": "#333333", "secondary": "#F9F9F9", "accent": "#0056B3"},
    "creative": {"primary": "#8E44AD", "secondary": "#FCF3FF", "accent": "#E74C3C"},
    "minimal": {"primary": "#000000", "secondary": "#FFFFFF", "accent": "#666666"},
    "corporate": {"primary": "#003366", "secondary": "#F0F4F8", "accent": "#0066CC"},
}

TECH_STACKS: dict[str, dict[str, str]] = {
    "next_fullstack": {
        "framework": "Next.js 14",
        "styling": "Tailwind CSS",
        "animations": "Framer Motion",
        "icons": "Lucide React",
        "deployment": "Vercel",
    },
    "modern_react": {
        "framework": "React + TypeScript (Vite)",
        "styling": "Tailwind CSS",
        "animations": "Framer Motion",
        "icons": "Lucide React",
        "deployment": "Vercel",
    },
    "static_minimal": {
        "framework": "Static HTML",
        "styling": "Tailwind CSS (CDN)",
        "animations": "CSS transitions",
        "icons": "Inline SVG",
        "deployment": "GitHub Pages",
    },
}

SYSTEM_PROMPT = """\
You are the design lead of a portfolio page builder.

Using the hand-off below, agree with the user on:
- layout: one of {layouts}
- theme: one of {themes}
- sections: ordered list of section ids (e.g. hero, about, projects, experience, skills, contact)
- features: optional flags such as dark_mode, animations, contact_form, download_pdf
- audience: who will read the page
- priority: "speed", "quality" or "features"

Propose a complete design first and let the user adjust it. Explain choices in
one line each. Mark the stage ready once the user accepts or stops objecting.
"""

FIRST_TURN_TEMPLATE = """\
{user_input}

Propose a layout, theme and section list that fits the hand-off."""

CONTINUATION_TEMPLATE = """\
{user_input}

(Current design choices: {known_fields})"""


# ---------------------------------------------------------------------------
# Fallback heuristics
# ---------------------------------------------------------------------------

def _contains(text: str, *keywords: str) -> bool:
    return any(k in text for k in keywords)


def choose_layout(user_role: str, use_case: str, profile: dict[str, Any]) -> str:
    role = user_role.lower()
    goal = use_case.lower()
    if _contains(role, "design", "artist", "creative", "设计", "创意"):
        return "portfolio_showcase"
    if profile.get("projects") and _contains(role, "develop", "engineer", "programm", "开发", "技术"):
        return "project_grid"
    if _contains(goal, "job", "hiring", "求职") or len(profile.get("experience") or []) > 2:
        return "classic_timeline"
    if _contains(role, "consult", "freelan", "顾问"):
        return "consultation_layout"
    if _contains(role, "manager", "business", "executive", "管理", "商务"):
        return "professional_blocks"
    return "modern_card"


def choose_theme(user_role: str, style: str) -> str:
    text = f"{user_role} {style}".lower()
    if _contains(text, "minimal", "simple", "clean", "简约"):
        return "minimal"
    if _contains(text, "develop", "engineer", "programm", "tech", "开发", "技术"):
        return "tech_blue"
    if _contains(text, "design", "creative", "artist", "设计", "创意"):
        return "creative_purple"
    if _contains(text, "business", "manager", "consult", "corporate", "商务", "管理"):
        return "business_gray"
    if _contains(text, "student", "graduate", "学生"):
        return "modern"
    if _contains(text, "founder", "startup", "freelan", "创业"):
        return "vibrant_orange"
    return "classic"


def choose_sections(user_role: str, use_case: str, profile: dict[str, Any]) -> list[str]:
    sections = ["hero", "about"]
    if profile.get("projects") or not profile:
        sections.append("projects")
    if profile.get("experience") or _contains(use_case.lower(), "job", "hiring"):
        sections.append("experience")
    if profile.get("skills") or _contains(user_role.lower(), "develop", "engineer", "design"):
        sections.append("skills")
    if profile.get("education"):
        sections.append("education")
    sections.append("contact")
    return sections


def choose_features(use_case: str, style: str, layout: str) -> dict[str, bool]:
    goal = use_case.lower()
    trial = _contains(goal, "try", "trial", "试")
    return {
        "dark_mode": True,
        "responsive": True,
        "animations": layout == "portfolio_showcase" or _contains(style.lower(), "bold", "playful"),
        "download_pdf": _contains(goal, "job", "hiring", "求职"),
        "social_links": True,
        "contact_form": not trial,
        "seo": not trial,
    }


def choose_tech_stack(priority: str, features: dict[str, Any]) -> str:
    if priority == "speed":
        return "static_minimal"
    if features.get("contact_form") or priority == "features":
        return "next_fullstack"
    return "modern_react"


def development_prompt(strategy: dict[str, Any], stack: dict[str, str], profile: dict[str, Any]) -> str:
    """Brief for the Coding stage describing exactly what to build."""
    palette = strategy["palette"]
    enabled = [name for name, on in strategy["features"].items() if on]
    lines = [
        f"Build a single-page portfolio with the '{strategy['layout']}' layout "
        f"({LAYOUTS[strategy['layout']]}).",
        f"Stack: {stack['framework']}, {stack['styling']}, {stack['animations']}, icons from {stack['icons']}.",
        f"Theme '{strategy['theme']}': primary {palette['primary']}, "
        f"secondary {palette['secondary']}, accent {palette['accent']}.",
        "Sections in order: " + ", ".join(strategy["sections"]) + ".",
        "Features: " + (", ".join(enabled) if enabled else "none") + ".",
        f"Audience: {strategy['audience']}. Priority: {strategy['priority']}.",
    ]
    if not profile.get("projects"):
        lines.append("No project data was provided; use clearly marked placeholder projects.")
    lines.append(f"Deploy target: {stack['deployment']}.")
    return "\n".join(lines)


class DesignAgent(StageAgent):
    stage = Stage.DESIGN
    system_prompt = SYSTEM_PROMPT.format(
        layouts=", ".join(LAYOUTS), themes=", ".join(THEMES),
    )
    ready_when = "the user accepted a layout, theme and section list"
    required_fields = ("layout", "theme", "sections")
    optional_fields = ("features", "audience", "priority", "customizations")
    first_turn_template = FIRST_TURN_TEMPLATE
    continuation_template = CONTINUATION_TEMPLATE

    def build_summary(self, fields: dict[str, Any], session: Session, *, degraded: bool) -> dict[str, Any]:
        known = session.collected_fields
        role = str(known.get("user_role") or "")
        use_case = str(known.get("use_case") or "")
        style = str(known.get("style") or "")
        info = session.handoff_summaries.get(Stage.INFO_COLLECTION)
        profile = dict(info.summary.get("profile", {})) if info else {}
        upstream_degraded = any(
            s.degraded or s.confidence is Confidence.LOW for s in session.handoff_summaries.values()
        )

        fallback_fields: list[str] = []
        layout = fields.get("layout")
        if not isinstance(layout, str) or layout not in LAYOUTS:
            layout = choose_layout(role, use_case, profile)
            fallback_fields.append("layout")
        theme = fields.get("theme")
        if not isinstance(theme, str) or theme not in THEMES:
            theme = choose_theme(role, style)
            fallback_fields.append("theme")
        sections = fields.get("sections")
        if not isinstance(sections, list) or not sections:
            sections = choose_sections(role, use_case, profile)
            fallback_fields.append("sections")
        requested = fields.get("features")
        features = choose_features(use_case, style, layout)
        if isinstance(requested, dict):
            features.update({str(k): bool(v) for k, v in requested.items()})
        elif isinstance(requested, list):
            features.update({str(name): True for name in requested})
        priority = fields.get("priority")
        if priority not in ("speed", "quality", "features"):
            priority = "speed" if known.get("commitment_level") == "quick_trial" else "quality"
            fallback_fields.append("priority")
        strategy = {
            "layout": layout,
            "theme": theme,
            "palette": THEMES[theme],
            "sections": [str(s) for s in sections],
            "features": features,
            "customizations": fields.get("customizations") if isinstance(fields.get("customizations"), dict) else {},
            "audience": fields.get("audience") or use_case or "general visitors",
            "priority": priority,
        }
        stack_name = choose_tech_stack(priority, features)
        stack = TECH_STACKS[stack_name]
        return {
            "design_strategy": strategy,
            "tech_stack": stack_name,
            "tech_stack_details": stack,
            "development_prompt": development_prompt(strategy, stack, profile),
            "used_fallbacks": bool(fallback_fields),
            "fallback_fields": fallback_fields,
            "upstream_degraded": degraded or upstream_degraded,
        }

    def context_for_next_stage(self, summary: dict[str, Any]) -> str:
        return summary["development_prompt"]


def make_design_agent(config: ProjectConfig, client: ModelClient) -> DesignAgent:
    """Create the Design stage agent."""
    return DesignAgent(config, client)
