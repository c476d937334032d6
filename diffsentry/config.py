"""Configuration loading from YAML, env vars, and CLI defaults."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, SecretStr

from diffsentry.dedup import DedupConfig
from diffsentry.line_filter import FilterConfig
from diffsentry.quality import QualityConfig

DEFAULT_CONFIG_PATHS = [
    Path("diffsentry.yaml"),
    Path.home() / ".diffsentry" / "config.yaml",
]

AI_REVIEW_MARKER = "<!-- diffsentry:ai-review -->"


class ConfigurationError(Exception):
    """Missing credentials, unknown model or unusable host settings."""


class LLMConfig(BaseModel):
    """LLM-specific configuration."""
    model: str = "deepseek-coder"
    max_tokens: int = 2000  # ReviewClient caps each call at MAX_OUTPUT_TOKENS
    temperature: float = 0.3
    request_timeout: float = 6.0  # seconds
    api_url: str = ""


class ReviewConfig(BaseModel):
    max_concurrent_files: int = 5
    max_groups_per_batch: int = 15
    max_lines_per_group: int = 40
    max_concurrent_ai: int = 3
    small_batch_size: int = 3
    smart_grouping: bool = True
    language: str = "English"
    prompt_override_path: str = ".ai-review-rules.md"
    skip_review_marker: str = "no-cr"
    post_summary: bool = True
    comment_marker: str = AI_REVIEW_MARKER


class CacheConfig(BaseModel):
    ttl_seconds: float = 24 * 60 * 60
    max_entries: int = 1000


class Config(BaseModel):
    gitlab_url: str = ""
    gitlab_token: SecretStr = SecretStr("")
    github_token: SecretStr = SecretStr("")
    openai_api_key: SecretStr = SecretStr("")
    anthropic_api_key: SecretStr = SecretStr("")
    deepseek_api_key: SecretStr = SecretStr("")
    qwen_api_key: SecretStr = SecretStr("")
    gemini_api_key: SecretStr = SecretStr("")
    llm: LLMConfig = Field(default_factory=LLMConfig)
    review: ReviewConfig = Field(default_factory=ReviewConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    filters: FilterConfig = Field(default_factory=FilterConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)


# env var -> top-level key; first set variable wins
_SECRET_ENV = {
    "gitlab_token": ("GITLAB_TOKEN", "BOT_TOKEN"),
    "github_token": ("GITHUB_TOKEN",),
    "openai_api_key": ("OPENAI_API_KEY",),
    "anthropic_api_key": ("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
    "deepseek_api_key": ("DEEPSEEK_API_KEY",),
    "qwen_api_key": ("QWEN_API_KEY",),
    "gemini_api_key": ("GEMINI_API_KEY",),
}

# env var -> (section, key, converter)
_SECTION_ENV: dict[str, tuple[str, str, Any]] = {
    "AI_MODEL": ("llm", "model", str),
    "AI_MAX_TOKENS": ("llm", "max_tokens", int),
    "AI_TEMPERATURE": ("llm", "temperature", float),
    "AI_REQUEST_TIMEOUT": ("llm", "request_timeout", lambda ms: float(ms) / 1000.0),
    "AI_API_URL": ("llm", "api_url", str),
    "MAX_FILES_CONCURRENT": ("review", "max_concurrent_files", int),
    "MAX_GROUPS_PER_BATCH": ("review", "max_groups_per_batch", int),
    "MAX_LINES_PER_GROUP": ("review", "max_lines_per_group", int),
    "MAX_CONCURRENT_AI": ("review", "max_concurrent_ai", int),
}


def _apply_env(raw: dict[str, Any], env: dict[str, str]) -> None:
    if url := env.get("GITLAB_URL"):
        raw["gitlab_url"] = url
    for key, names in _SECRET_ENV.items():
        for name in names:
            if value := env.get(name):
                raw[key] = value
                break
    for name, (section, key, convert) in _SECTION_ENV.items():
        value = env.get(name)
        if not value:
            continue
        try:
            converted = convert(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid value for {name}: {value!r}") from exc
        section_raw = raw.get(section) or {}
        section_raw[key] = converted
        raw[section] = section_raw


def load_config(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
    env: dict[str, str] | None = None,
) -> Config:
    """Load config from YAML file, env vars, and caller overrides (in that priority)."""
    raw: dict[str, Any] = {}

    # 1. Load from YAML file
    paths_to_try = [Path(config_path)] if config_path else DEFAULT_CONFIG_PATHS
    for p in paths_to_try:
        if p.exists():
            with open(p) as f:
                raw = yaml.safe_load(f) or {}
            break

    # 2. Env var overrides
    _apply_env(raw, dict(os.environ) if env is None else env)

    # 3. Caller overrides (CLI flags); dotted keys address a section
    if overrides:
        for k, v in overrides.items():
            if v is None:
                continue
            if "." in k:
                section, key = k.split(".", 1)
                section_raw = raw.get(section) or {}
                section_raw[key] = v
                raw[section] = section_raw
            else:
                raw[k] = v

    return Config(**raw)
