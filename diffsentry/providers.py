"""LLM completion providers behind a single ``complete()`` capability."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import requests

from diffsentry.config import ConfigurationError

if TYPE_CHECKING:
    from diffsentry.config import Config

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """A single completion call failed: timeout, HTTP error or unusable body."""


class ProviderUnavailableError(Exception):
    """Every model call in a review run failed."""


class CompletionProvider(Protocol):
    name: str
    model: str

    def complete(self, system_prompt: str, user_prompt: str) -> str: ...


@dataclass
class ProviderSettings:
    model: str
    api_key: str
    api_url: str = ""
    max_tokens: int = 600
    temperature: float = 0.3
    timeout: float = 6.0


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------

OPENAI = "openai"
DEEPSEEK = "deepseek"
QWEN = "qwen"
ANTHROPIC = "anthropic"
GEMINI = "gemini"

MODEL_VARIANTS: dict[str, str] = {
    "gpt-4": OPENAI,
    "gpt-4-turbo": OPENAI,
    "gpt-3.5-turbo": OPENAI,
    "gpt-4o": OPENAI,
    "gpt-4o-mini": OPENAI,
    "deepseek-coder": DEEPSEEK,
    "deepseek-chat": DEEPSEEK,
    "qwen-turbo": QWEN,
    "qwen-plus": QWEN,
    "qwen-max": QWEN,
    "claude-3-sonnet": ANTHROPIC,
    "claude-3-haiku": ANTHROPIC,
    "claude-3-opus": ANTHROPIC,
    "gemini-pro": GEMINI,
    "gemini-1.5-pro": GEMINI,
    "gemini-1.5-flash": GEMINI,
}

DEFAULT_API_URLS = {
    OPENAI: "https://api.openai.com/v1",
    DEEPSEEK: "https://api.deepseek.com/v1",
    QWEN: "https://dashscope.aliyuncs.com/compatible-mode/v1",
    GEMINI: "https://generativelanguage.googleapis.com/v1beta",
}

# Short aliases resolve to dated Anthropic model ids
CLAUDE_MODEL_IDS = {
    "claude-3-sonnet": "claude-3-sonnet-20240229",
    "claude-3-haiku": "claude-3-haiku-20240307",
    "claude-3-opus": "claude-3-opus-20240229",
}

_KEY_FIELDS = {
    OPENAI: "openai_api_key",
    DEEPSEEK: "deepseek_api_key",
    QWEN: "qwen_api_key",
    ANTHROPIC: "anthropic_api_key",
    GEMINI: "gemini_api_key",
}


def variant_for(model: str) -> str | None:
    if model in MODEL_VARIANTS:
        return MODEL_VARIANTS[model]
    if model.startswith("claude-"):
        return ANTHROPIC
    return None


def supported_models() -> list[str]:
    return list(MODEL_VARIANTS)


# ---------------------------------------------------------------------------
# HTTP variants
# ---------------------------------------------------------------------------

class _HTTPProvider:
    name = ""

    def __init__(self, settings: ProviderSettings, session: requests.Session | None = None) -> None:
        self.settings = settings
        self.model = settings.model
        self.api_url = (settings.api_url or DEFAULT_API_URLS[self.name]).rstrip("/")
        self.session = session or requests.Session()

    def _post(self, url: str, payload: dict[str, Any], **kwargs: Any) -> Any:
        try:
            resp = self.session.post(url, json=payload, timeout=self.settings.timeout, **kwargs)
        except requests.Timeout as e:
            raise ProviderError(f"{self.name}: request timed out after {self.settings.timeout}s") from e
        except requests.RequestException as e:
            raise ProviderError(f"{self.name}: request failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise ProviderError(f"{self.name}: HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.name}: response is not JSON") from e


class OpenAICompatibleProvider(_HTTPProvider):
    """Chat-completions API; also spoken by DeepSeek and DashScope (Qwen)."""

    def __init__(
        self,
        settings: ProviderSettings,
        variant: str = OPENAI,
        session: requests.Session | None = None,
    ) -> None:
        self.name = variant
        super().__init__(settings, session)
        self.session.headers.update({"Authorization": f"Bearer {settings.api_key}"})

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        data = self._post(
            f"{self.api_url}/chat/completions",
            {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "max_tokens": self.settings.max_tokens,
                "temperature": self.settings.temperature,
            },
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{self.name}: malformed completion body") from e
        return (content or "").strip()


class GeminiProvider(_HTTPProvider):
    name = GEMINI

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        data = self._post(
            f"{self.api_url}/models/{self.model}:generateContent",
            {
                "systemInstruction": {"parts": [{"text": system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
                "generationConfig": {
                    "maxOutputTokens": self.settings.max_tokens,
                    "temperature": self.settings.temperature,
                },
            },
            params={"key": self.settings.api_key},
        )
        try:
            candidate = data["candidates"][0]
            parts = candidate.get("content", {}).get("parts", [])
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError("gemini: malformed completion body") from e
        return "".join(p.get("text", "") for p in parts).strip()


# ---------------------------------------------------------------------------
# Anthropic (official SDK)
# ---------------------------------------------------------------------------

class AnthropicProvider:
    name = ANTHROPIC

    def __init__(self, settings: ProviderSettings, client: Any = None) -> None:
        self.settings = settings
        self.model = CLAUDE_MODEL_IDS.get(settings.model, settings.model)
        if client is None:
            import anthropic

            kwargs: dict[str, Any] = {
                "api_key": settings.api_key,
                "timeout": settings.timeout,
                "max_retries": 0,
            }
            if settings.api_url:
                kwargs["base_url"] = settings.api_url
            client = anthropic.Anthropic(**kwargs)
        self.client = client

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        import anthropic

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.settings.max_tokens,
                temperature=self.settings.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.APIError as e:
            raise ProviderError(f"anthropic: {e}") from e
        try:
            blocks = response.content
        except AttributeError as e:
            raise ProviderError("anthropic: malformed completion body") from e
        return "".join(
            getattr(block, "text", "") for block in blocks if getattr(block, "type", "text") == "text"
        ).strip()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def get_provider(
    model: str,
    config: Config,
    max_tokens: int | None = None,
) -> CompletionProvider:
    """Build the provider variant for ``model``.

    Raises:
        ConfigurationError: unknown model or missing API key.
    """
    variant = variant_for(model)
    if variant is None:
        raise ConfigurationError(
            f"Unsupported model {model!r}. Supported: {', '.join(supported_models())}"
        )
    api_key = getattr(config, _KEY_FIELDS[variant]).get_secret_value()
    if not api_key:
        raise ConfigurationError(
            f"No API key for {variant} (model {model}). Set {_KEY_FIELDS[variant].upper()}."
        )
    settings = ProviderSettings(
        model=model,
        api_key=api_key,
        api_url=config.llm.api_url,
        max_tokens=max_tokens if max_tokens is not None else config.llm.max_tokens,
        temperature=config.llm.temperature,
        timeout=config.llm.request_timeout,
    )
    logger.info("Using %s provider for model %s", variant, model)
    if variant == ANTHROPIC:
        return AnthropicProvider(settings)
    if variant == GEMINI:
        return GeminiProvider(settings)
    return OpenAICompatibleProvider(settings, variant=variant)
