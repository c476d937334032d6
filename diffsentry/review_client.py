"""One model call per prompt: persona, token cap and response-shape check."""

from __future__ import annotations

import logging

from diffsentry.config import Config
from diffsentry.prompts import (
    batch_system_prompt,
    build_batch_prompt,
    build_group_prompt,
    group_system_prompt,
)
from diffsentry.providers import CompletionProvider, ProviderError, get_provider
from diffsentry.schemas import ChangeGroup

logger = logging.getLogger(__name__)

MAX_OUTPUT_TOKENS = 600


class ReviewClient:
    """Wraps a provider. No retries here; failures surface as ProviderError."""

    def __init__(
        self,
        provider: CompletionProvider,
        language: str = "English",
        timeout: float = 6.0,
    ) -> None:
        self.provider = provider
        self.language = language
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Config, model: str | None = None) -> ReviewClient:
        provider = get_provider(
            model or config.llm.model,
            config,
            max_tokens=min(config.llm.max_tokens, MAX_OUTPUT_TOKENS),
        )
        return cls(provider, language=config.review.language, timeout=config.llm.request_timeout)

    @property
    def model(self) -> str:
        return self.provider.model

    def review(self, prompt: str, system_prompt: str) -> str:
        text = self.provider.complete(system_prompt, prompt)
        if not isinstance(text, str):
            raise ProviderError(
                f"{self.provider.name}: expected text, got {type(text).__name__}"
            )
        return text.strip()

    def review_batch(
        self, file_path: str, groups: list[ChangeGroup], rules: str | None = None
    ) -> str:
        prompt = build_batch_prompt(file_path, groups, rules, self.language)
        logger.debug("Batch prompt for %s: %d groups, %d chars", file_path, len(groups), len(prompt))
        return self.review(prompt, batch_system_prompt(self.language))

    def review_group(
        self, file_path: str, group: ChangeGroup, rules: str | None = None
    ) -> str:
        prompt = build_group_prompt(file_path, group, rules, self.language)
        return self.review(prompt, group_system_prompt(self.language))
