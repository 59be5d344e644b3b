"""L1 Unit Tests: salience scoring and duplicate detection."""

from datetime import datetime, timedelta

import pytest

from memcore.config import Settings
from memcore.memory.scoring import NEUTRAL_CONFIDENCE, SalienceScorer, cosine_similarity
from memcore.memory.types import MemoryFact


NOW = datetime(2024, 6, 1, 12, 0)


@pytest.fixture
def scorer():
    return SalienceScorer()


def _fact(text="x", *, age_days=0.0, count=1, embedding=None, scope="u1"):
    fact = MemoryFact.create(scope, text, embedding=embedding)
    fact.updated_at = NOW - timedelta(days=age_days)
    fact.reinforcement_count = count
    return fact


class TestCosine:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_dimension_mismatch(self):
        assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0

    def test_zero_and_missing(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity(None, [1.0]) == 0.0


class TestComponents:
    def test_recency_decreases_with_age(self, scorer):
        fresh = scorer.compute_recency(NOW, NOW)
        old = scorer.compute_recency(NOW - timedelta(days=10), NOW)
        assert fresh == pytest.approx(1.0)
        assert old < fresh

    def test_future_timestamp_clamped(self, scorer):
        assert scorer.compute_recency(NOW + timedelta(days=1), NOW) == pytest.approx(1.0)

    def test_reinforcement_monotone_and_capped(self):
        values = [SalienceScorer.compute_reinforcement(n) for n in (1, 2, 5, 20, 1000)]
        assert values == sorted(values)
        assert values[-1] == 1.0
        assert SalienceScorer.compute_reinforcement(0) == 0.0


class TestScore:
    def test_more_reinforced_scores_higher(self, scorer):
        once = scorer.score(_fact(count=1), now=NOW)
        often = scorer.score(_fact(count=5), now=NOW)
        assert often > once

    def test_newer_scores_higher(self, scorer):
        new = scorer.score(_fact(age_days=0), now=NOW)
        old = scorer.score(_fact(age_days=30), now=NOW)
        assert new > old

    def test_similarity_increases_score(self, scorer):
        fact = _fact()
        assert scorer.score(fact, similarity=0.9, now=NOW) > scorer.score(fact, similarity=0.1, now=NOW)

    def test_neutral_confidence_default(self, scorer):
        fact = _fact()
        assert scorer.score(fact, now=NOW) == pytest.approx(
            scorer.score(fact, confidence=NEUTRAL_CONFIDENCE, now=NOW)
        )

    def test_formula(self):
        scorer = SalienceScorer(
            w_relevance=1.0, w_recency=0.0, w_reinforcement=0.0, w_confidence=0.0,
        )
        assert scorer.score(_fact(), similarity=0.4, now=NOW) == pytest.approx(0.4)

    def test_invalid_weights(self):
        with pytest.raises(ValueError):
            SalienceScorer(w_relevance=-0.1)
        with pytest.raises(ValueError):
            SalienceScorer(recency_decay_per_day=0)

    def test_from_settings(self, tmp_path):
        config = Settings(project_root=tmp_path, weight_recency=0.0, _env_file=None)
        scorer = SalienceScorer.from_settings(config)
        assert scorer.w_recency == 0.0
        assert scorer.dedup_threshold == 0.92


class TestDuplicates:
    def test_exact(self, scorer):
        assert scorer.is_exact_duplicate(_fact("同一句话"), _fact("同一句话"))
        assert not scorer.is_exact_duplicate(_fact("同一句话"), _fact("同一句话", scope="u2"))

    def test_near(self, scorer):
        a = _fact("a", embedding=[1.0, 0.0])
        b = _fact("b", embedding=[0.99, 0.05])
        c = _fact("c", embedding=[0.0, 1.0])
        assert scorer.is_near_duplicate(a, b)
        assert not scorer.is_near_duplicate(a, c)

    def test_near_requires_embeddings(self, scorer):
        assert not scorer.is_near_duplicate(_fact("a"), _fact("b", embedding=[1.0]))

    def test_is_duplicate(self, scorer):
        assert scorer.is_duplicate(_fact("a"), _fact("a"))
        assert not scorer.is_duplicate(_fact("a"), _fact("b"))
