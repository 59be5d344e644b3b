"""
问句意图识别

按优先级从高到低依次匹配, 首个命中的意图胜出, 都不命中为 GENERIC。
更具体的意图 (UPDATE / RECENCY) 排在宽泛的 WHAT_KIND 之前, 避免误判。
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from ..core.errors import ConfigurationError
from .types import QuestionType

logger = logging.getLogger(__name__)


class QuestionPattern(BaseModel):
    """意图匹配规则, 对小写化后的问句做正则搜索"""

    question_type: QuestionType
    pattern: str
    priority: int = 0


class QuestionDetectorConfig(BaseModel):
    patterns: list[QuestionPattern] = Field(default_factory=lambda: default_question_patterns())
    enabled: bool = True


def default_question_patterns() -> list[QuestionPattern]:
    return [
        QuestionPattern(
            question_type=QuestionType.UPDATE,
            pattern=r"(之前|原来|以前|曾经|改成|换成|变成|changed|updated|used to|previously|was .* now)",
            priority=100,
        ),
        QuestionPattern(
            question_type=QuestionType.RECENCY,
            pattern=r"(现在|目前|最新|当前|最近|current|latest|right now|at the moment|up to date)",
            priority=90,
        ),
        QuestionPattern(
            question_type=QuestionType.HOW_MANY,
            pattern=r"(多少|有几个|几个|几多|how many|how much|count of|number of)",
            priority=80,
        ),
        QuestionPattern(
            question_type=QuestionType.WHEN,
            pattern=r"(什么时候|何时|哪天|哪一年|\bwhen\b|what time)",
            priority=70,
        ),
        QuestionPattern(
            question_type=QuestionType.WHERE,
            pattern=r"(在哪|哪里|哪儿|什么地方|\bwhere\b|which place|which location)",
            priority=60,
        ),
        QuestionPattern(
            question_type=QuestionType.PREFERENCE,
            pattern=r"(喜欢什么|爱什么|偏好|爱好|喜欢.*吗|favou?rite|\bprefer|what .*like)",
            priority=50,
        ),
        QuestionPattern(
            question_type=QuestionType.WHAT_KIND,
            pattern=(
                r"(我是什么|我是谁|我的身份|我的类型|我属于|我算.*用户|什么用户|"
                r"what kind|what type|who am i|what am i|my identity)"
            ),
            priority=40,
        ),
        QuestionPattern(
            question_type=QuestionType.CAN,
            pattern=r"(会.*吗|能.*吗|可以.*吗|can you|can i|able to|capable of)",
            priority=30,
        ),
        QuestionPattern(
            question_type=QuestionType.HAVE,
            pattern=r"(有什么|有没有|拥有|\bhave\b|possess)",
            priority=20,
        ),
    ]


class QuestionDetector:
    """问句意图识别器"""

    def __init__(self, config: QuestionDetectorConfig | None = None) -> None:
        self.config = config or QuestionDetectorConfig()
        self.enabled = self.config.enabled
        self._compiled: list[tuple[QuestionPattern, re.Pattern]] = []
        for pattern in self.config.patterns:
            self._compiled.append((pattern, self._compile(pattern)))
        self._sort()

    @staticmethod
    def _compile(pattern: QuestionPattern) -> re.Pattern:
        try:
            return re.compile(pattern.pattern, re.IGNORECASE)
        except re.error as e:
            raise ConfigurationError(
                f"Invalid question pattern for {pattern.question_type.value}: {e}"
            ) from e

    def _sort(self) -> None:
        self._compiled.sort(key=lambda pc: pc[0].priority, reverse=True)

    @property
    def patterns(self) -> list[QuestionPattern]:
        return [p for p, _ in self._compiled]

    def add_pattern(self, pattern: QuestionPattern) -> None:
        self._compiled.append((pattern, self._compile(pattern)))
        self._sort()

    def detect(self, query: str) -> QuestionType:
        if not self.enabled or not query:
            return QuestionType.GENERIC
        lower = query.lower()
        for pattern, regex in self._compiled:
            if regex.search(lower):
                return pattern.question_type
        return QuestionType.GENERIC

    def is_type(self, query: str, question_type: QuestionType) -> bool:
        return self.detect(query) == question_type
