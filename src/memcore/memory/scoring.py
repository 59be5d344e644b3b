"""
显著性评分与去重

score = W_RELEVANCE * relevance + W_RECENCY * recency
      + W_REINFORCEMENT * reinforcement + W_CONFIDENCE * confidence

- recency: exp(-decay * age_days), 越旧越低
- reinforcement: min(1, log1p(n) / 5), 单调递增且边际递减
- confidence: 卡片置信度, 无卡片支撑的事实使用中性值

去重:
- 精确重复: scope 与 content_hash 相同 (写入时强化计数)
- 近似重复: embedding 余弦相似度 >= 阈值 (仅用于单次响应内压制冗余行)
"""

from __future__ import annotations

import logging
import math
from datetime import datetime

from ..config import Settings
from .types import MemoryFact

logger = logging.getLogger(__name__)

NEUTRAL_CONFIDENCE = 0.5


def cosine_similarity(a: list[float] | None, b: list[float] | None) -> float:
    """余弦相似度, 维度不一致或零向量返回 0"""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class SalienceScorer:
    """记忆显著性评分器"""

    def __init__(
        self,
        *,
        w_relevance: float = 0.45,
        w_recency: float = 0.25,
        w_reinforcement: float = 0.15,
        w_confidence: float = 0.15,
        recency_decay_per_day: float = 0.1,
        dedup_threshold: float = 0.92,
    ) -> None:
        for name, w in (
            ("relevance", w_relevance),
            ("recency", w_recency),
            ("reinforcement", w_reinforcement),
            ("confidence", w_confidence),
        ):
            if w < 0:
                raise ValueError(f"weight {name} must be non-negative, got {w}")
        if recency_decay_per_day <= 0:
            raise ValueError("recency_decay_per_day must be positive")

        self.w_relevance = w_relevance
        self.w_recency = w_recency
        self.w_reinforcement = w_reinforcement
        self.w_confidence = w_confidence
        self.recency_decay_per_day = recency_decay_per_day
        self.dedup_threshold = dedup_threshold

    @classmethod
    def from_settings(cls, config: Settings) -> SalienceScorer:
        return cls(
            w_relevance=config.weight_relevance,
            w_recency=config.weight_recency,
            w_reinforcement=config.weight_reinforcement,
            w_confidence=config.weight_confidence,
            recency_decay_per_day=config.recency_decay_per_day,
            dedup_threshold=config.dedup_similarity_threshold,
        )

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def compute_recency(self, dt: datetime, now: datetime | None = None) -> float:
        now = now or datetime.now()
        if dt.tzinfo is not None and now.tzinfo is None:
            dt = dt.replace(tzinfo=None)
        days = max(0.0, (now - dt).total_seconds() / 86400)
        return math.exp(-self.recency_decay_per_day * days)

    @staticmethod
    def compute_reinforcement(count: int) -> float:
        if count <= 0:
            return 0.0
        return min(1.0, math.log1p(count) / 5.0)

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def score(
        self,
        fact: MemoryFact,
        *,
        similarity: float = 0.0,
        confidence: float | None = None,
        now: datetime | None = None,
    ) -> float:
        """计算单条记忆的显著性分数"""
        relevance = min(1.0, max(0.0, similarity))
        conf = NEUTRAL_CONFIDENCE if confidence is None else min(1.0, max(0.0, confidence))
        return (
            self.w_relevance * relevance
            + self.w_recency * self.compute_recency(fact.updated_at, now)
            + self.w_reinforcement * self.compute_reinforcement(fact.reinforcement_count)
            + self.w_confidence * conf
        )

    def is_exact_duplicate(self, candidate: MemoryFact, existing: MemoryFact) -> bool:
        return (
            candidate.scope == existing.scope
            and bool(candidate.content_hash)
            and candidate.content_hash == existing.content_hash
        )

    def is_near_duplicate(self, candidate: MemoryFact, existing: MemoryFact) -> bool:
        if candidate.embedding is None or existing.embedding is None:
            return False
        return cosine_similarity(candidate.embedding, existing.embedding) >= self.dedup_threshold

    def is_duplicate(self, candidate: MemoryFact, existing: MemoryFact) -> bool:
        """精确重复或近似重复"""
        return self.is_exact_duplicate(candidate, existing) or self.is_near_duplicate(
            candidate, existing
        )
