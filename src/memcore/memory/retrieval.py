"""
记忆检索引擎

三路召回 + 重排序:
- 卡片直查: 问句意图映射到 (entity, slot), 命中的有效卡片为权威结果, 始终排在最前
- 向量检索: 事实 embedding 余弦相似度 top-k
- 词法检索: 停用词过滤后的 OR 查询 (FTS5), 作为召回兜底
- 合并: 按事实 id 去重 (卡片的 source_memory_id 视为同一事实)
- 排序: SalienceScorer 评分, 再按问句意图乘以加成 (IntentReranker),
  同分按 updated_at 新者优先, 单次响应内压制近似重复

读路径无副作用, 可在任意挂起点安全取消。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..config import Settings
from .query_expander import QueryExpander
from .question import QuestionDetector
from .repository import MemoryRepository
from .scoring import SalienceScorer
from .types import Card, MemoryFact, QuestionType
from .versioning import CardVersioner

logger = logging.getLogger(__name__)

SlotKey = tuple[str, str]

INTENT_SLOTS: dict[QuestionType, SlotKey] = {
    QuestionType.WHAT_KIND: ("user", "user_type"),
    QuestionType.WHERE: ("user", "location"),
    QuestionType.PREFERENCE: ("user", "preference"),
}

# 意图本身不指向槽位时, 按问句关键词推断
SLOT_HINTS: list[tuple[tuple[str, ...], SlotKey]] = [
    (("住", "哪", "地址", "搬", "live", "location", "address"), ("user", "location")),
    (("喜欢", "偏好", "爱好", "like", "prefer"), ("user", "preference")),
    (("手机", "phone"), ("user.phone", "model")),
    (("工作", "公司", "上班", "work", "company"), ("user", "workplace")),
    (("名字", "叫什么", "name"), ("user", "name")),
    (("用户", "身份", "identity"), ("user", "user_type")),
]

_HINTED_TYPES = (QuestionType.RECENCY, QuestionType.UPDATE, QuestionType.GENERIC)

PROFILE_KEYWORDS = ("用户", "user", "类型", "type", "角色", "role", "身份", "identity")
PROFESSION_KEYWORDS = (
    "工作", "就职", "公司", "company", "work", "job",
    "职业", "profession", "工程师", "engineer", "开发", "developer",
)
LOCATION_KEYWORDS = (
    "住", "居住", "位置", "location", "地点", "place", "城市", "city", "地址", "address",
)
PREFERENCE_KEYWORDS = (
    "喜欢", "爱", "偏好", "prefer", "like", "love", "爱好", "hobby", "感兴趣", "interest",
)
COUNT_KEYWORDS = ("个", "只", "次", "数量", "count", "number", "total", "一共")

# 通用问句: 查询词覆盖率超过该值才加成
KEYWORD_OVERLAP_THRESHOLD = 0.3


class IntentReranker:
    """
    按问句意图对候选事实做乘法加成: score *= (1 + boost)

    - WHAT_KIND: 含身份/类型词 + 含职业词
    - WHERE: 按命中的地点词个数累加
    - PREFERENCE: 含偏好词 (1.5 倍关键词权重)
    - HOW_MANY: 含数字或量词
    - RECENCY: 按距今小时数衰减, 24 小时内接近满额
    - 其余: 查询词覆盖率超过阈值时给关键词权重

    加成只作用于非权威候选, 权威卡片的位置不受影响。
    """

    def __init__(
        self,
        *,
        keyword_weight: float = 0.2,
        recency_weight: float = 0.15,
        profile_weight: float = 0.25,
        enabled: bool = True,
    ) -> None:
        for name, w in (
            ("keyword", keyword_weight),
            ("recency", recency_weight),
            ("profile", profile_weight),
        ):
            if w < 0:
                raise ValueError(f"rerank weight {name} must be non-negative, got {w}")
        self.keyword_weight = keyword_weight
        self.recency_weight = recency_weight
        self.profile_weight = profile_weight
        self.enabled = enabled

    @classmethod
    def from_settings(cls, config: Settings) -> IntentReranker:
        return cls(
            keyword_weight=config.rerank_keyword_weight,
            recency_weight=config.rerank_recency_weight,
            profile_weight=config.rerank_profile_weight,
            enabled=config.rerank_enabled,
        )

    def boost(
        self,
        qtype: QuestionType,
        fact: MemoryFact,
        query_terms: list[str] | None = None,
        now: datetime | None = None,
    ) -> float:
        """计算加成系数 (>= 0), 未启用时恒为 0"""
        if not self.enabled:
            return 0.0
        text = fact.text.lower()

        if qtype == QuestionType.WHAT_KIND:
            value = self.profile_weight if _contains_any(text, PROFILE_KEYWORDS) else 0.0
            if _contains_any(text, PROFESSION_KEYWORDS):
                value += self.keyword_weight * 1.2
            return value
        if qtype == QuestionType.WHERE:
            hits = sum(1 for k in LOCATION_KEYWORDS if k in text)
            return hits * self.keyword_weight
        if qtype == QuestionType.PREFERENCE:
            return self.keyword_weight * 1.5 if _contains_any(text, PREFERENCE_KEYWORDS) else 0.0
        if qtype == QuestionType.HOW_MANY:
            has_digit = any(ch.isdigit() for ch in text)
            if has_digit or _contains_any(text, COUNT_KEYWORDS):
                return self.keyword_weight
            return 0.0
        if qtype == QuestionType.RECENCY:
            now = now or datetime.now()
            hours = max(0.0, (now - fact.happened_at).total_seconds() / 3600)
            return 24.0 / (hours + 24.0) * self.recency_weight

        terms = [t.lower() for t in (query_terms or [])]
        if not terms:
            return 0.0
        overlap = sum(1 for t in terms if t in text) / len(terms)
        return self.keyword_weight if overlap > KEYWORD_OVERLAP_THRESHOLD else 0.0

    def apply(
        self,
        qtype: QuestionType,
        fact: MemoryFact,
        score: float,
        query_terms: list[str] | None = None,
        now: datetime | None = None,
    ) -> float:
        value = self.boost(qtype, fact, query_terms, now)
        if value <= 0:
            return score
        return score * (1.0 + value)


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(k in text for k in keywords)


@dataclass
class SearchResult:
    """检索结果, 带综合评分"""

    fact_id: str = ""
    text: str = ""
    score: float = 0.0
    authoritative: bool = False
    sources: list[str] = field(default_factory=list)  # "card" / "vector" / "lexical"

    similarity: float = 0.0
    updated_at: datetime = field(default_factory=datetime.now)

    fact: MemoryFact | None = None
    card: Card | None = None

    def to_dict(self) -> dict:
        return {
            "fact_id": self.fact_id,
            "text": self.text,
            "score": self.score,
            "authoritative": self.authoritative,
            "sources": list(self.sources),
            "similarity": self.similarity,
            "updated_at": self.updated_at.isoformat(),
            "card": self.card.to_dict() if self.card else None,
        }

    def to_markdown(self) -> str:
        if self.card is not None:
            return self.card.to_markdown()
        return f"- {self.text}"


class RetrievalEngine:
    """卡片 + 向量 + 词法三路召回的检索引擎"""

    def __init__(
        self,
        repository: MemoryRepository,
        *,
        detector: QuestionDetector | None = None,
        expander: QueryExpander | None = None,
        scorer: SalienceScorer | None = None,
        versioner: CardVersioner | None = None,
        reranker: IntentReranker | None = None,
        vector_limit: int = 20,
        lexical_limit: int = 20,
    ) -> None:
        self.repository = repository
        self.detector = detector or QuestionDetector()
        self.expander = expander or QueryExpander()
        self.scorer = scorer or SalienceScorer()
        self.versioner = versioner or CardVersioner()
        self.reranker = reranker or IntentReranker()
        self.vector_limit = vector_limit
        self.lexical_limit = lexical_limit

    # ==================================================================
    # Public
    # ==================================================================

    async def search(
        self,
        scope: str,
        query_text: str,
        query_embedding: list[float] | None = None,
        top_k: int = 10,
    ) -> list[SearchResult]:
        if top_k <= 0:
            return []

        qtype = self.detector.detect(query_text)
        slot_key = self.resolve_slot(qtype, query_text)
        logger.debug(f"[Retrieval] query={query_text!r} intent={qtype.value} slot={slot_key}")

        cards = await self._lookup_cards(scope, slot_key)
        vector_hits = await self._search_vector(scope, query_embedding)
        lexical_hits = await self._search_lexical(scope, query_text)

        candidates = self._merge(cards, vector_hits, lexical_hits)
        if not candidates:
            return []

        fact_ids = [c.fact_id for c in candidates if c.fact is None and c.fact_id]
        facts = {f.id: f for f in await self.repository.get_facts(scope, fact_ids)}
        for c in candidates:
            if c.fact is None:
                c.fact = facts.get(c.fact_id)
            if c.fact is not None:
                c.text = c.fact.text
                c.updated_at = c.fact.updated_at
            elif c.card is not None:
                c.text = f"{c.card.entity}.{c.card.slot} = {c.card.value}"
                c.updated_at = c.card.updated_at

        # 事实已被删除的非权威候选直接丢弃
        candidates = [c for c in candidates if c.fact is not None or c.authoritative]

        ranked = self._rerank(candidates, qtype, query_text)
        results = self._suppress_near_duplicates(ranked)[:top_k]
        logger.info(
            f"[Retrieval] scope={scope} intent={qtype.value} cards={len(cards)} "
            f"vector={len(vector_hits)} lexical={len(lexical_hits)} -> {len(results)}"
        )
        return results

    def resolve_slot(self, qtype: QuestionType, query_text: str) -> SlotKey | None:
        """问句意图 -> (entity, slot), 无法映射返回 None"""
        if qtype in INTENT_SLOTS:
            return INTENT_SLOTS[qtype]
        if qtype in _HINTED_TYPES:
            lower = query_text.lower()
            for keywords, slot_key in SLOT_HINTS:
                if any(k in lower for k in keywords):
                    return slot_key
        return None

    # ==================================================================
    # Recall paths
    # ==================================================================

    async def _lookup_cards(self, scope: str, slot_key: SlotKey | None) -> list[Card]:
        if slot_key is None:
            return []
        entity, slot = slot_key
        cards = await self.versioner.get_active_values(scope, entity, slot, self.repository)
        # 多值槽位: 最近写入的在前
        return list(reversed(cards))

    async def _search_vector(
        self, scope: str, embedding: list[float] | None
    ) -> list[tuple[str, float]]:
        if not embedding:
            return []
        return await self.repository.vector_search(scope, embedding, self.vector_limit)

    async def _search_lexical(self, scope: str, query_text: str) -> list[tuple[str, float]]:
        expanded = self.expander.expand(query_text)
        if not expanded:
            return []
        return await self.repository.lexical_search(scope, expanded, self.lexical_limit)

    # ==================================================================
    # Merge & Rerank
    # ==================================================================

    def _merge(
        self,
        cards: list[Card],
        vector_hits: list[tuple[str, float]],
        lexical_hits: list[tuple[str, float]],
    ) -> list[SearchResult]:
        seen: dict[str, SearchResult] = {}
        for card in cards:
            key = card.source_memory_id or f"card:{card.id}"
            if key in seen:
                continue
            seen[key] = SearchResult(
                fact_id=card.source_memory_id or "",
                authoritative=True,
                sources=["card"],
                card=card,
            )
        for source, hits in (("vector", vector_hits), ("lexical", lexical_hits)):
            for fact_id, sim in hits:
                existing = seen.get(fact_id)
                if existing is None:
                    seen[fact_id] = SearchResult(fact_id=fact_id, sources=[source], similarity=sim)
                    continue
                if source not in existing.sources:
                    existing.sources.append(source)
                if sim > existing.similarity:
                    existing.similarity = sim
        return list(seen.values())

    def _rerank(
        self,
        candidates: list[SearchResult],
        qtype: QuestionType = QuestionType.GENERIC,
        query_text: str = "",
    ) -> list[SearchResult]:
        now = datetime.now()
        query_terms = self.expander.remove_stopwords(query_text) if query_text else []
        for c in candidates:
            confidence = c.card.confidence if c.card is not None else None
            if c.fact is not None:
                c.score = self.scorer.score(
                    c.fact, similarity=c.similarity, confidence=confidence, now=now
                )
                if not c.authoritative:
                    c.score = self.reranker.apply(qtype, c.fact, c.score, query_terms, now)
            else:
                c.score = self.scorer.w_confidence * (confidence or 0.0)

        authoritative = [c for c in candidates if c.authoritative]
        others = [c for c in candidates if not c.authoritative]
        others.sort(key=lambda c: (c.score, c.updated_at), reverse=True)
        return authoritative + others

    def _suppress_near_duplicates(self, ranked: list[SearchResult]) -> list[SearchResult]:
        kept: list[SearchResult] = []
        for c in ranked:
            if not c.authoritative and c.fact is not None:
                if any(
                    k.fact is not None and self.scorer.is_near_duplicate(c.fact, k.fact)
                    for k in kept
                ):
                    continue
            kept.append(c)
        return kept
