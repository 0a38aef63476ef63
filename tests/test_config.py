"""Tests for config.py — YAML loading and per-stage LLM config building."""

from __future__ import annotations

import pytest

from portfolio_page_builder.config import (
    _resolve_env_vars,
    apply_azure_fallbacks,
    build_role_llm_config,
    load_config,
)
from portfolio_page_builder.models import (
    AzureConfig,
    ModelConfig,
    ModelEndpointOverride,
    ProjectConfig,
    Stage,
)


class TestResolveEnvVars:
    def test_string_replacement(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert _resolve_env_vars("${TEST_VAR}") == "hello"

    def test_missing_var_becomes_empty(self, monkeypatch):
        monkeypatch.delenv("NONEXISTENT_VAR", raising=False)
        assert _resolve_env_vars("${NONEXISTENT_VAR}") == ""

    def test_nested(self, monkeypatch):
        monkeypatch.setenv("MY_KEY", "secret")
        result = _resolve_env_vars({"azure": {"api_key": "${MY_KEY}"}, "tags": ["${MY_KEY}", "x"]})
        assert result == {"azure": {"api_key": "secret"}, "tags": ["secret", "x"]}

    def test_non_string_passthrough(self):
        assert _resolve_env_vars(42) == 42
        assert _resolve_env_vars(None) is None


class TestLoadConfig:
    def test_load_sample_config(self, sample_config_path, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "test-key")
        monkeypatch.setenv("AZURE_OPENAI_API_VERSION", "2024-06-01")
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://test.openai.azure.com/")
        config = load_config(sample_config_path)
        assert config.project_name == "Portfolio Builder Test"
        assert config.azure.api_key == "test-key"
        assert config.azure.endpoint == "https://test.openai.azure.com"
        assert config.retry_backoff == 0.5
        assert config.strict_contracts is True

    def test_partial_stage_settings_keep_defaults(self, sample_config_path, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "k")
        config = load_config(sample_config_path)
        welcome = config.stages.for_stage(Stage.WELCOME)
        assert welcome.max_tokens == 1200
        assert welcome.serious_turns == 5
        assert welcome.max_retries == 2
        design = config.stages.for_stage(Stage.DESIGN)
        assert design.serious_turns == 4

    def test_missing_config_raises(self):
        with pytest.raises(FileNotFoundError):
            load_config("nonexistent.yaml")

    def test_empty_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AZURE_OPENAI_API_KEY", raising=False)
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        config = load_config(path)
        assert config.models.default == "gpt-4o"


class TestAzureFallbacks:
    def test_env_fills_empty_values(self, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "env-key")
        monkeypatch.setenv("AZURE_OPENAI_API_VERSION", "2024-06-01")
        monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://env.openai.azure.com/")
        config = apply_azure_fallbacks(ProjectConfig())
        assert config.azure.api_key == "env-key"
        assert config.azure.endpoint == "https://env.openai.azure.com"

    def test_explicit_values_win(self, monkeypatch):
        monkeypatch.setenv("AZURE_OPENAI_API_KEY", "env-key")
        config = apply_azure_fallbacks(ProjectConfig(azure=AzureConfig(api_key="explicit")))
        assert config.azure.api_key == "explicit"


class TestBuildRoleLlmConfig:
    @pytest.fixture
    def config(self) -> ProjectConfig:
        return ProjectConfig(
            azure=AzureConfig(
                api_key="azure-key",
                api_version="2024-06-01",
                endpoint="https://unit.openai.azure.com",
            ),
            models=ModelConfig(
                default="gpt-4o",
                welcome="gpt-4o-mini",
                coding="claude-sonnet",
                overrides={
                    "claude-sonnet": ModelEndpointOverride(
                        endpoint="https://models.example.com/anthropic/",
                        api_key="override-key",
                        api_type="anthropic",
                    ),
                },
            ),
            timeout=90,
            seed=7,
        )

    def test_stage_specific_model(self, config):
        llm = build_role_llm_config(Stage.WELCOME, config)
        entry = llm["config_list"][0]
        assert entry["model"] == "gpt-4o-mini"
        assert entry["api_type"] == "azure"
        assert entry["azure_deployment"] == "gpt-4o-mini"
        assert entry["api_version"] == "2024-06-01"
        assert llm["timeout"] == 90
        assert llm["seed"] == 7

    def test_stage_without_model_uses_default(self, config):
        entry = build_role_llm_config("design", config)["config_list"][0]
        assert entry["model"] == "gpt-4o"

    def test_unknown_role_uses_default(self, config):
        entry = build_role_llm_config("reviewer", config)["config_list"][0]
        assert entry["model"] == "gpt-4o"

    def test_role_name_is_case_insensitive(self, config):
        entry = build_role_llm_config("WELCOME", config)["config_list"][0]
        assert entry["model"] == "gpt-4o-mini"

    def test_override_with_api_type(self, config):
        entry = build_role_llm_config(Stage.CODING, config)["config_list"][0]
        assert entry == {
            "model": "claude-sonnet",
            "api_key": "override-key",
            "api_type": "anthropic",
            "base_url": "https://models.example.com/anthropic",
        }

    def test_openai_compatible_endpoint(self):
        config = ProjectConfig(azure=AzureConfig(api_key="k", endpoint="http://localhost:11434/v1"))
        entry = build_role_llm_config(Stage.DESIGN, config)["config_list"][0]
        assert entry["base_url"] == "http://localhost:11434/v1"
        assert "api_type" not in entry

    def test_no_endpoint(self):
        entry = build_role_llm_config(Stage.DESIGN, ProjectConfig())["config_list"][0]
        assert entry == {"model": "gpt-4o", "api_key": ""}
