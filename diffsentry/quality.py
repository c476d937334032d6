"""Final pass over model output: drop empty, duplicate and low-value comments."""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from diffsentry.schemas import ReviewResult

logger = logging.getLogger(__name__)


class QualityConfig(BaseModel):
    min_length: int = 15
    dedupe_prefix_chars: int = 50

    low_quality_phrases: list[str] = Field(
        default_factory=lambda: [
            "no issues", "no issue found", "no problems", "looks good", "looks fine",
            "lgtm", "code is correct", "syntax is correct", "naming is fine",
            "logic is reasonable", "nothing found", "the code is good",
            "无问题", "没问题", "代码正确", "语法正确", "命名规范", "逻辑合理",
            "没有发现", "看起来不错", "代码很好", "没有问题", "代码没问题",
        ],
        description="Case-insensitive substrings that mark a comment as empty praise.",
    )

    verbose_patterns: list[str] = Field(
        default_factory=lambda: [
            r"logic is clear", r"well[- ]structured",
            # praise only: "this block follows ...", never "follow the ... convention"
            r"\b(code|it|this|block|function|change|implementation)\s+(already\s+)?follows\b.*conventions?",
            r"\b(code|it|this|block|function|change|implementation|already)\s+follows\s+best practices?",
            r"no (obvious|apparent) .*(issues?|problems?)", r"overall design",
            r"clean and (concise|effective)", r"good code quality",
            r"implementation is (correct|reasonable)",
            r"structure is clear",
            "新增代码逻辑清晰", "结构合理", "符合.*规范", "不存在明显.*问题", "使用合理",
            "整体设计", "简洁有效", "代码质量良好", "实现方式正确", "遵循最佳实践",
            "没有发现.*问题", "代码结构清晰", "逻辑清晰", "设计合理", "实现合理",
            "符合.*标准", "没有.*问题", "代码.*良好", "整体.*合理", "结构.*清晰",
        ],
    )

    filler_words: list[str] = Field(
        default_factory=lambda: [
            "logic", "structure", "convention", "issue", "reasonable", "clear",
            "good", "correct", "standard", "practice", "design", "implementation",
            "approach", "quality", "overall", "concise", "effective", "follows",
            "逻辑", "结构", "规范", "问题", "合理", "清晰", "良好", "正确", "标准",
            "实践", "设计", "实现", "方式", "质量", "整体", "简洁", "有效", "符合",
            "遵循", "没有",
        ],
    )
    filler_min_length: int = 100
    filler_threshold: int = 5


class QualityFilter:
    def __init__(self, config: QualityConfig | None = None) -> None:
        self.config = config or QualityConfig()
        self._verbose_re = [re.compile(p, re.I) for p in self.config.verbose_patterns]

    def is_low_quality(self, text: str) -> bool:
        lowered = text.lower()
        if any(phrase.lower() in lowered for phrase in self.config.low_quality_phrases):
            return True
        if any(p.search(text) for p in self._verbose_re):
            return True
        if len(text) > self.config.filler_min_length:
            hits = sum(1 for word in self.config.filler_words if word in lowered)
            if hits >= self.config.filler_threshold:
                return True
        return False

    def filter(self, results: list[ReviewResult]) -> list[ReviewResult]:
        kept: list[ReviewResult] = []
        seen: set[tuple[int, str]] = set()
        for result in results:
            text = result.text.strip()
            if not text:
                continue
            key = (result.line_number, text[: self.config.dedupe_prefix_chars])
            if key in seen:
                continue
            if len(text) < self.config.min_length:
                continue
            if self.is_low_quality(text):
                logger.debug("Dropped low-quality comment at line %d: %s", result.line_number, text[:60])
                continue
            seen.add(key)
            kept.append(result)
        return kept


def filter_meaningful_reviews(
    results: list[ReviewResult], config: QualityConfig | None = None
) -> list[ReviewResult]:
    return QualityFilter(config).filter(results)
