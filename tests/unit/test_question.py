"""L1 Unit Tests: question intent detection."""

import pytest

from memcore.core.errors import ConfigurationError
from memcore.memory.question import (
    QuestionDetector,
    QuestionDetectorConfig,
    QuestionPattern,
    default_question_patterns,
)
from memcore.memory.types import QuestionType


@pytest.fixture
def detector():
    return QuestionDetector()


class TestDetect:
    @pytest.mark.parametrize("query, expected", [
        ("我是什么用户", QuestionType.WHAT_KIND),
        ("我是什么用户？", QuestionType.WHAT_KIND),
        ("What kind of user am I?", QuestionType.WHAT_KIND),
        ("我住在哪里", QuestionType.WHERE),
        ("Where do I live?", QuestionType.WHERE),
        ("我喜欢什么", QuestionType.PREFERENCE),
        ("我什么时候搬家的", QuestionType.WHEN),
        ("你会说中文吗", QuestionType.CAN),
        ("我有没有猫", QuestionType.HAVE),
        ("今天天气", QuestionType.GENERIC),
    ])
    def test_single_intent(self, detector, query, expected):
        assert detector.detect(query) == expected

    def test_recency_beats_where(self, detector):
        assert detector.detect("我现在住在哪里") == QuestionType.RECENCY

    def test_update_beats_recency(self, detector):
        assert detector.detect("我之前住哪, 现在住哪") == QuestionType.UPDATE

    def test_how_many_beats_have(self, detector):
        assert detector.detect("我有多少台设备") == QuestionType.HOW_MANY

    def test_empty(self, detector):
        assert detector.detect("") == QuestionType.GENERIC

    def test_case_insensitive(self, detector):
        assert detector.detect("WHO AM I") == QuestionType.WHAT_KIND

    def test_is_type(self, detector):
        assert detector.is_type("我住在哪里", QuestionType.WHERE)
        assert not detector.is_type("我住在哪里", QuestionType.WHEN)


class TestConfiguration:
    def test_disabled(self):
        detector = QuestionDetector(QuestionDetectorConfig(enabled=False))
        assert detector.detect("我住在哪里") == QuestionType.GENERIC

    def test_patterns_sorted_by_priority(self, detector):
        priorities = [p.priority for p in detector.patterns]
        assert priorities == sorted(priorities, reverse=True)
        assert len(priorities) == len(default_question_patterns())

    def test_add_pattern_takes_precedence(self, detector):
        detector.add_pattern(QuestionPattern(
            question_type=QuestionType.HAVE, pattern=r"哪里", priority=500,
        ))
        assert detector.detect("我住在哪里") == QuestionType.HAVE

    def test_invalid_pattern(self):
        config = QuestionDetectorConfig(patterns=[
            QuestionPattern(question_type=QuestionType.WHERE, pattern="(broken"),
        ])
        with pytest.raises(ConfigurationError):
            QuestionDetector(config)

    def test_add_invalid_pattern(self, detector):
        with pytest.raises(ConfigurationError):
            detector.add_pattern(QuestionPattern(question_type=QuestionType.WHERE, pattern="[x"))
