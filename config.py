"""
Configuration and shared utilities for the concept alignment pipeline.

Settings come from audit.yaml (if present) overlaid with AUDIT_* environment
variables. Provider clients are created lazily and cached per provider.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from anthropic import Anthropic
from groq import Groq
from openai import OpenAI

load_dotenv()

SETTINGS_FILE = Path("audit.yaml")
SESSIONS_DIR = Path(os.environ.get("AUDIT_SESSIONS_DIR", "sessions"))

# Client cache to avoid recreating clients for every call
_client_cache: dict = {}

# Providers reached through the OpenAI-compatible API
OPENAI_COMPATIBLE = {
    "xai": ("https://api.x.ai/v1", "XAI_API_KEY"),
    "deepseek": ("https://api.deepseek.com/v1", "DEEPSEEK_API_KEY"),
    "together": ("https://api.together.xyz/v1", "TOGETHER_API_KEY"),
    "mistral": ("https://api.mistral.ai/v1", "MISTRAL_API_KEY"),
    "gemini": ("https://generativelanguage.googleapis.com/v1beta/openai/", "GEMINI_API_KEY"),
    "openrouter": ("https://openrouter.ai/api/v1", "OPENROUTER_API_KEY"),
}


class AuditSettings(BaseModel):
    """Tunables for one pipeline run."""
    model: str = "groq/llama-3.3-70b-versatile"
    max_tokens: int = Field(default=16384, gt=0)
    extract_max_tokens: int = Field(default=8192, gt=0)
    extract_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    merge_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    content_limit: int = Field(default=300, gt=0)
    merge_rounds: list[int] = Field(default_factory=lambda: [1, 2, 3])
    enforce_conservation: bool = True
    coverage_policy: str = "fail"  # 'fail' | 'assign_uncategorized'
    enable_tesseract: bool = True
    warn_on_graph_errors: bool = True
    sessions_dir: str = "sessions"
    backend: str = "json"  # 'json' | 'memory'

    @field_validator("coverage_policy")
    @classmethod
    def _check_policy(cls, value: str) -> str:
        if value not in ("fail", "assign_uncategorized"):
            raise ValueError(f"Unknown coverage policy: {value}")
        return value

    @field_validator("merge_rounds", mode="before")
    @classmethod
    def _parse_rounds(cls, value):
        if isinstance(value, str):
            return [int(part) for part in value.split(",") if part.strip()]
        return value


def _env_overrides() -> dict:
    """AUDIT_<FIELD> environment variables, e.g. AUDIT_MAX_TOKENS=4096."""
    overrides = {}
    for name in AuditSettings.model_fields:
        value = os.environ.get(f"AUDIT_{name.upper()}")
        if value is None:
            continue
        if value.lower() in ("true", "false"):
            overrides[name] = value.lower() == "true"
        else:
            overrides[name] = value
    return overrides


def load_settings(path: Optional[Path] = None) -> AuditSettings:
    """Load settings from YAML, then apply environment overrides."""
    path = path or SETTINGS_FILE
    data = {}
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    data.update(_env_overrides())
    return AuditSettings.model_validate(data)


def _get_cached_client(provider: str):
    """Get or create a cached client for a provider."""
    if provider in _client_cache:
        return _client_cache[provider]

    if provider == "groq":
        client = Groq()
    elif provider == "openai":
        client = OpenAI()
    elif provider == "anthropic":
        client = Anthropic()
    elif provider == "ollama":
        host = os.environ.get("OLLAMA_HOST", "http://localhost:11434")
        client = OpenAI(base_url=f"{host}/v1", api_key="ollama")
    elif provider in OPENAI_COMPATIBLE:
        base_url, key_env = OPENAI_COMPATIBLE[provider]
        client = OpenAI(base_url=base_url, api_key=os.environ.get(key_env))
    else:
        raise ValueError(f"Unknown provider: {provider}")

    _client_cache[provider] = client
    return client


def parse_model_key(model_key: str) -> tuple[str, str]:
    """
    Split "provider/model-name" into its parts.

    Bare names are routed by prefix the way the project settings name them
    (claude-* -> anthropic, gemini-* -> gemini, grok-* -> xai, gpt-* -> openai).
    """
    if "/" in model_key:
        provider, model_name = model_key.split("/", 1)
        return provider.lower(), model_name

    prefixes = {"claude": "anthropic", "gemini": "gemini", "grok": "xai", "gpt": "openai"}
    for prefix, provider in prefixes.items():
        if model_key.startswith(prefix):
            return provider, model_key
    raise ValueError(f"Cannot route model: {model_key}")


def get_client(model_key: str):
    """
    Get appropriate API client for a model.

    Returns (client, model_config) tuple.
    """
    provider, model_name = parse_model_key(model_key)
    model_cfg = {"provider": provider, "model": model_name}
    return _get_cached_client(provider), model_cfg


def setup_logging(level: int = logging.INFO) -> None:
    """Route library logging through rich for CLI and web entry points."""
    from rich.logging import RichHandler

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
