"""
仓储抽象层

引擎只依赖两个窄接口:
- MemoryRepository: 事实 / 卡片 / enrichment 记录的异步读写, 向量与词法检索
- Embedder: 外部 Embedding 提供方, embed(text) -> list[float]

默认实现见 unified_store.UnifiedStore (SQLite + FTS5)。
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .types import Card, EnrichmentRecord, MemoryFact


@runtime_checkable
class Embedder(Protocol):
    """Embedding 提供方"""

    async def embed(self, text: str) -> list[float]:
        ...


@runtime_checkable
class MemoryRepository(Protocol):
    """记忆仓储接口, 所有方法都是挂起点"""

    # -- facts --------------------------------------------------------------

    async def insert_fact(self, fact: MemoryFact) -> str:
        ...

    async def upsert_fact(self, fact: MemoryFact) -> tuple[str, int, bool]:
        """
        按 (scope, content_hash) 精确去重写入。

        Returns:
            (fact_id, reinforcement_count, created)
        """
        ...

    async def get_fact(self, scope: str, fact_id: str) -> MemoryFact | None:
        ...

    async def get_facts(self, scope: str, fact_ids: list[str]) -> list[MemoryFact]:
        ...

    async def list_facts(self, scope: str, limit: int = 100, offset: int = 0) -> list[MemoryFact]:
        ...

    async def list_fact_ids(self, scope: str) -> list[str]:
        ...

    async def delete_fact(self, scope: str, fact_id: str) -> bool:
        """删除事实, 级联删除其卡片与 enrichment 记录"""
        ...

    # -- search -------------------------------------------------------------

    async def vector_search(
        self, scope: str, embedding: list[float], limit: int = 20
    ) -> list[tuple[str, float]]:
        """余弦相似度检索, 返回 [(fact_id, similarity), ...], 降序"""
        ...

    async def lexical_search(
        self, scope: str, expanded_query: str, limit: int = 20
    ) -> list[tuple[str, float]]:
        """词法 OR 检索, 返回 [(fact_id, score), ...], score 越高越相关"""
        ...

    # -- cards --------------------------------------------------------------

    async def get_active_cards(self, scope: str, entity: str, slot: str) -> list[Card]:
        ...

    async def list_card_chain(self, scope: str, entity: str, slot: str) -> list[Card]:
        ...

    async def transition_cards(
        self,
        scope: str,
        entity: str,
        slot: str,
        expected_active: list[str],
        deactivate: list[str],
        new_card: Card | None,
    ) -> None:
        """
        原子地失效 deactivate 中的卡片并写入 new_card。

        事务内的有效卡片集合与 expected_active 不一致, 或违反唯一约束时
        抛出 ConflictError。
        """
        ...

    # -- enrichment ---------------------------------------------------------

    async def insert_enrichment(self, record: EnrichmentRecord) -> None:
        """重复四元组抛出 ConflictError"""
        ...

    async def get_enrichment(
        self, scope: str, memory_id: str, engine_kind: str, engine_version: str
    ) -> EnrichmentRecord | None:
        ...

    async def list_enrichments(
        self, scope: str, memory_id: str | None = None
    ) -> list[EnrichmentRecord]:
        ...
