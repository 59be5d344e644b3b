"""
统一存储层

MemoryRepository 的 SQLite 实现:
- 写入: MemoryStorage 主写, 同一事务内同步 FTS5 索引 (jieba 分词)
- 向量检索: 读取 scope 内 embedding, 余弦相似度 top-k
- 词法检索: 扩展查询按 OR 拆分后走 FTS5 bm25

MemoryStorage 为同步实现, 这里统一通过 asyncio.to_thread 调度,
避免阻塞事件循环。
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .query_expander import OR_SEPARATOR
from .scoring import cosine_similarity
from .storage import MemoryStorage
from .tokenizer import cut_for_search, segment_for_index
from .types import Card, EnrichmentRecord, MemoryFact

logger = logging.getLogger(__name__)


class UnifiedStore:
    """SQLite 记忆仓储 (实现 MemoryRepository)"""

    def __init__(self, db_path: str | Path) -> None:
        self.db = MemoryStorage(db_path)

    def close(self) -> None:
        self.db.close()

    # ======================================================================
    # Facts
    # ======================================================================

    async def insert_fact(self, fact: MemoryFact) -> str:
        segmented = segment_for_index(fact.text)
        await asyncio.to_thread(self.db.insert_fact, fact.to_dict(), segmented)
        return fact.id

    async def upsert_fact(self, fact: MemoryFact) -> tuple[str, int, bool]:
        segmented = segment_for_index(fact.text)
        return await asyncio.to_thread(self.db.upsert_fact, fact.to_dict(), segmented)

    async def get_fact(self, scope: str, fact_id: str) -> MemoryFact | None:
        row = await asyncio.to_thread(self.db.get_fact, scope, fact_id)
        return MemoryFact.from_dict(row) if row else None

    async def get_facts(self, scope: str, fact_ids: list[str]) -> list[MemoryFact]:
        rows = await asyncio.to_thread(self.db.get_facts, scope, list(fact_ids))
        return [MemoryFact.from_dict(r) for r in rows]

    async def list_facts(self, scope: str, limit: int = 100, offset: int = 0) -> list[MemoryFact]:
        rows = await asyncio.to_thread(self.db.list_facts, scope, limit, offset)
        return [MemoryFact.from_dict(r) for r in rows]

    async def list_fact_ids(self, scope: str) -> list[str]:
        return await asyncio.to_thread(self.db.list_fact_ids, scope)

    async def delete_fact(self, scope: str, fact_id: str) -> bool:
        deleted = await asyncio.to_thread(self.db.delete_fact, scope, fact_id)
        if deleted:
            logger.info(f"[UnifiedStore] Deleted fact {fact_id} in scope {scope}")
        return deleted

    async def count_facts(self, scope: str) -> int:
        return await asyncio.to_thread(self.db.count_facts, scope)

    # ======================================================================
    # Search
    # ======================================================================

    async def vector_search(
        self, scope: str, embedding: list[float], limit: int = 20
    ) -> list[tuple[str, float]]:
        if not embedding or limit <= 0:
            return []
        rows = await asyncio.to_thread(self.db.iter_embeddings, scope)
        scored = [
            (fact_id, cosine_similarity(embedding, emb))
            for fact_id, emb in rows
            if len(emb) == len(embedding)
        ]
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored[:limit]

    async def lexical_search(
        self, scope: str, expanded_query: str, limit: int = 20
    ) -> list[tuple[str, float]]:
        if not expanded_query.strip() or limit <= 0:
            return []
        terms: list[str] = []
        for part in expanded_query.split(OR_SEPARATOR):
            part = part.strip()
            if not part:
                continue
            # 与索引保持同样的切分粒度
            for token in [part, *cut_for_search(part)]:
                if token not in terms:
                    terms.append(token)
        rows = await asyncio.to_thread(self.db.search_fts, scope, terms, limit)
        output: list[tuple[str, float]] = []
        for fact_id, rank in rows:
            strength = abs(rank)
            output.append((fact_id, strength / (1.0 + strength)))
        return output

    # ======================================================================
    # Cards
    # ======================================================================

    async def get_active_cards(self, scope: str, entity: str, slot: str) -> list[Card]:
        rows = await asyncio.to_thread(self.db.get_active_cards, scope, entity, slot)
        return [Card.from_dict(r) for r in rows]

    async def list_card_chain(self, scope: str, entity: str, slot: str) -> list[Card]:
        rows = await asyncio.to_thread(self.db.list_card_chain, scope, entity, slot)
        return [Card.from_dict(r) for r in rows]

    async def list_active_cards(self, scope: str) -> list[Card]:
        rows = await asyncio.to_thread(self.db.list_active_cards, scope)
        return [Card.from_dict(r) for r in rows]

    async def transition_cards(
        self,
        scope: str,
        entity: str,
        slot: str,
        expected_active: list[str],
        deactivate: list[str],
        new_card: Card | None,
    ) -> None:
        await asyncio.to_thread(
            self.db.card_transition,
            scope,
            entity,
            slot,
            list(expected_active),
            list(deactivate),
            new_card.to_dict() if new_card else None,
        )

    # ======================================================================
    # Enrichment
    # ======================================================================

    async def insert_enrichment(self, record: EnrichmentRecord) -> None:
        await asyncio.to_thread(self.db.insert_enrichment, record.to_dict())

    async def get_enrichment(
        self, scope: str, memory_id: str, engine_kind: str, engine_version: str
    ) -> EnrichmentRecord | None:
        row = await asyncio.to_thread(
            self.db.get_enrichment, scope, memory_id, engine_kind, engine_version
        )
        return EnrichmentRecord.from_dict(row) if row else None

    async def list_enrichments(
        self, scope: str, memory_id: str | None = None
    ) -> list[EnrichmentRecord]:
        rows = await asyncio.to_thread(self.db.list_enrichments, scope, memory_id)
        return [EnrichmentRecord.from_dict(r) for r in rows]
