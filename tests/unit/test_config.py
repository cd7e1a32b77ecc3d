"""Unit tests for settings loading and model routing."""

import pytest
from pydantic import ValidationError

from config import AuditSettings, get_client, load_settings, parse_model_key


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in AuditSettings.model_fields:
        monkeypatch.delenv(f"AUDIT_{name.upper()}", raising=False)


class TestLoadSettings:
    """Test load_settings."""

    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml")
        assert settings.model == "groq/llama-3.3-70b-versatile"
        assert settings.merge_rounds == [1, 2, 3]
        assert settings.coverage_policy == "fail"
        assert settings.enforce_conservation is True

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "audit.yaml"
        path.write_text("model: openai/gpt-4o\nmerge_rounds: [1, 2]\nenable_tesseract: false\n")

        settings = load_settings(path)

        assert settings.model == "openai/gpt-4o"
        assert settings.merge_rounds == [1, 2]
        assert settings.enable_tesseract is False

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "audit.yaml"
        path.write_text("max_tokens: 1000\nwarn_on_graph_errors: true\n")
        monkeypatch.setenv("AUDIT_MAX_TOKENS", "4096")
        monkeypatch.setenv("AUDIT_WARN_ON_GRAPH_ERRORS", "false")
        monkeypatch.setenv("AUDIT_MERGE_ROUNDS", "1,3")

        settings = load_settings(path)

        assert settings.max_tokens == 4096
        assert settings.warn_on_graph_errors is False
        assert settings.merge_rounds == [1, 3]

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "audit.yaml"
        path.write_text("")
        assert load_settings(path).content_limit == 300

    def test_rejects_unknown_policy(self):
        with pytest.raises(ValidationError):
            AuditSettings(coverage_policy="ignore")

    def test_rejects_bad_numbers(self):
        with pytest.raises(ValidationError):
            AuditSettings(max_tokens=0)
        with pytest.raises(ValidationError):
            AuditSettings(merge_temperature=3.0)


class TestModelRouting:
    """Test parse_model_key / get_client."""

    @pytest.mark.parametrize("key,expected", [
        ("groq/llama-3.3-70b-versatile", ("groq", "llama-3.3-70b-versatile")),
        ("OpenAI/gpt-4o", ("openai", "gpt-4o")),
        ("openrouter/meta/llama-3", ("openrouter", "meta/llama-3")),
        ("claude-sonnet-4", ("anthropic", "claude-sonnet-4")),
        ("grok-2", ("xai", "grok-2")),
        ("gemini-1.5-pro", ("gemini", "gemini-1.5-pro")),
    ])
    def test_parse_model_key(self, key, expected):
        assert parse_model_key(key) == expected

    def test_unroutable_bare_name(self):
        with pytest.raises(ValueError):
            parse_model_key("llama3")

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            get_client("carrier-pigeon/v1")

    def test_clients_cached_per_provider(self):
        first, cfg = get_client("ollama/llama3")
        second, _ = get_client("ollama/mistral")
        assert first is second
        assert cfg == {"provider": "ollama", "model": "llama3"}
