"""Hydra structured config dataclasses.

These mirror the Pydantic ``ProjectConfig`` for Hydra schema validation.
At runtime the Hydra DictConfig is converted to ``ProjectConfig`` via
``cli._to_project_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from hydra.core.config_store import ConfigStore


@dataclass
class AzureConf:
    api_key: str = "${oc.env:AZURE_OPENAI_API_KEY,''}"
    api_version: str = "${oc.env:AZURE_OPENAI_API_VERSION,''}"
    endpoint: str = "${oc.env:AZURE_OPENAI_ENDPOINT,''}"


@dataclass
class ModelConf:
    default: str = "gpt-4o"
    welcome: str | None = None
    info_collection: str | None = None
    design: str | None = None
    coding: str | None = None
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass
class StageConf:
    max_tokens: int = 2000
    temperature: float = 0.7
    timeout: float = 60.0
    max_retries: int = 2
    quick_trial_turns: int = 3
    serious_turns: int = 6


@dataclass
class StagesConf:
    welcome: StageConf = field(default_factory=lambda: StageConf(
        max_tokens=1500, temperature=0.7, timeout=30, max_retries=2,
        quick_trial_turns=3, serious_turns=6,
    ))
    info_collection: StageConf = field(default_factory=lambda: StageConf(
        max_tokens=2000, temperature=0.5, timeout=60, max_retries=3,
        quick_trial_turns=2, serious_turns=8,
    ))
    design: StageConf = field(default_factory=lambda: StageConf(
        max_tokens=2000, temperature=0.7, timeout=45, max_retries=2,
        quick_trial_turns=2, serious_turns=4,
    ))
    coding: StageConf = field(default_factory=lambda: StageConf(
        max_tokens=4000, temperature=0.2, timeout=120, max_retries=3,
        quick_trial_turns=2, serious_turns=4,
    ))


@dataclass
class PpbConf:
    # --- Dispatch + CLI-only fields ---
    mode: str = "chat"
    verbose: bool = False
    quiet: bool = False
    session_id: str | None = None
    message: str | None = None
    artifact_dir: str | None = None

    # --- ProjectConfig fields (1:1 mapping) ---
    project_name: str = "portfolio-page-builder"

    azure: AzureConf = field(default_factory=AzureConf)
    models: ModelConf = field(default_factory=ModelConf)

    timeout: int = 120
    seed: int = 42
    retry_backoff: float = 1.0
    max_tool_rounds: int = 3
    max_continuation_rounds: int = 2

    control_tags: list[str] = field(default_factory=lambda: ["CTRL", "HIDDEN_CONTROL"])
    strict_contracts: bool = False

    session_dir: str = "sessions/"

    stages: StagesConf = field(default_factory=StagesConf)


# Keys present in PpbConf that are NOT part of ProjectConfig.
CLI_ONLY_KEYS = frozenset({
    "mode", "verbose", "quiet", "session_id", "message", "artifact_dir",
})


def register_configs() -> None:
    """Register the structured config schema with Hydra's ConfigStore."""
    cs = ConfigStore.instance()
    cs.store(name="ppb_schema", node=PpbConf)
