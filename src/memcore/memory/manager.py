"""
记忆管理器 — 核心协调器

写路径: store_turn -> 精确去重 (强化计数) -> 卡片提取 -> 版本链 -> enrichment 记录
读路径: search_enhanced -> 意图识别 -> 查询扩展 -> 三路召回 -> 显著性重排

子组件:
- store: MemoryRepository (默认 UnifiedStore, SQLite + FTS5)
- extractor: ExtractionEngine
- versioner: CardVersioner
- tracker: EnrichmentTracker (共享 EnrichmentCache)
- retrieval_engine: RetrievalEngine
- lifecycle: LifecycleManager (单条提取 / 后台回填)
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime

from ..config import Settings
from ..core.errors import ProviderError
from .enrichment import EnrichmentCache, EnrichmentTracker
from .extractor import ExtractionEngine
from .lifecycle import BackfillProgress, LifecycleManager
from .query_expander import QueryExpander
from .question import QuestionDetector
from .repository import Embedder, MemoryRepository
from .retrieval import IntentReranker, RetrievalEngine, SearchResult
from .schema import SchemaRegistry
from .scoring import SalienceScorer
from .types import Card, FactKind, MemoryFact
from .unified_store import UnifiedStore
from .versioning import CardVersioner

logger = logging.getLogger(__name__)


class MemoryManager:
    """记忆管理器"""

    def __init__(
        self,
        store: MemoryRepository,
        *,
        embedder: Embedder | None = None,
        schema: SchemaRegistry | None = None,
        extractor: ExtractionEngine | None = None,
        scorer: SalienceScorer | None = None,
        detector: QuestionDetector | None = None,
        expander: QueryExpander | None = None,
        reranker: IntentReranker | None = None,
        cache: EnrichmentCache | None = None,
        extract_on_store: bool = True,
        vector_limit: int = 20,
        lexical_limit: int = 20,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.extract_on_store = extract_on_store

        self.schema = schema or SchemaRegistry()
        self.extractor = extractor or ExtractionEngine(schema=self.schema)
        self.versioner = CardVersioner(self.schema)
        self.tracker = EnrichmentTracker(store, cache)
        self.retrieval_engine = RetrievalEngine(
            store,
            detector=detector,
            expander=expander,
            scorer=scorer,
            versioner=self.versioner,
            reranker=reranker,
            vector_limit=vector_limit,
            lexical_limit=lexical_limit,
        )
        self.lifecycle = LifecycleManager(store, self.extractor, self.versioner, self.tracker)

    @classmethod
    def from_settings(
        cls, config: Settings | None = None, embedder: Embedder | None = None
    ) -> MemoryManager:
        if config is None:
            from ..config import settings as default_settings
            config = default_settings

        schema = SchemaRegistry.from_settings(config)
        store = UnifiedStore(config.db_full_path)
        logger.info(f"[MemoryManager] Using database {config.db_full_path}")
        return cls(
            store,
            embedder=embedder,
            schema=schema,
            extractor=ExtractionEngine.from_settings(config, schema),
            scorer=SalienceScorer.from_settings(config),
            reranker=IntentReranker.from_settings(config),
            extract_on_store=config.extract_on_store,
            vector_limit=config.vector_candidate_limit,
            lexical_limit=config.lexical_candidate_limit,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()

    # ==================================================================
    # Write path
    # ==================================================================

    async def store_turn(
        self,
        scope: str,
        text: str,
        happened_at: datetime | None = None,
        kind: FactKind = FactKind.EPISODIC,
        embedding: list[float] | None = None,
    ) -> str:
        """
        存储一轮对话事实, 返回事实 id。

        同 scope 下文本完全相同的事实只强化计数, 不新增行;
        未提取出卡片的文本照常存储。
        """
        text = text.strip()
        if not text:
            raise ValueError("text must not be empty")

        if embedding is None and self.embedder is not None:
            embedding = await self._embed(text)

        fact = MemoryFact.create(scope, text, kind=kind, embedding=embedding, happened_at=happened_at)
        fact_id, count, created = await self.store.upsert_fact(fact)
        if created:
            logger.debug(f"[MemoryManager] Stored fact {fact_id} in scope {scope}")
        else:
            logger.info(f"[MemoryManager] Reinforced fact {fact_id} (count={count})")
            fact = dataclasses.replace(fact, id=fact_id, reinforcement_count=count)

        if self.extract_on_store:
            await self.lifecycle.enrich_fact(fact)
        return fact_id

    async def delete_fact(self, scope: str, fact_id: str) -> bool:
        """删除事实, 其卡片与 enrichment 记录级联删除"""
        return await self.store.delete_fact(scope, fact_id)

    def backfill(
        self, scope: str
    ) -> tuple[asyncio.Task[BackfillProgress], asyncio.Queue[BackfillProgress]]:
        """后台回填 scope 内所有事实的卡片, 返回 (task, 进度队列)"""
        return self.lifecycle.start_backfill(scope)

    # ==================================================================
    # Read path
    # ==================================================================

    async def search_enhanced(
        self,
        scope: str,
        query_text: str,
        query_embedding: list[float] | None = None,
        top_k: int = 10,
    ) -> list[SearchResult]:
        return await self.retrieval_engine.search(scope, query_text, query_embedding, top_k)

    async def search(self, scope: str, query_text: str, top_k: int = 10) -> list[SearchResult]:
        """使用 embedder 对查询做一次 embedding 后检索; 未配置 embedder 时只走卡片与词法"""
        embedding = await self._embed(query_text) if self.embedder is not None else None
        return await self.search_enhanced(scope, query_text, embedding, top_k)

    async def get_fact(self, scope: str, fact_id: str) -> MemoryFact | None:
        return await self.store.get_fact(scope, fact_id)

    async def get_card(self, scope: str, entity: str, slot: str) -> Card | None:
        return await self.versioner.get_active(scope, entity, slot, self.store)

    async def get_cards(self, scope: str, entity: str, slot: str) -> list[Card]:
        """槽位的全部有效卡片 (多值槽位可能多张)"""
        return await self.versioner.get_active_values(scope, entity, slot, self.store)

    async def card_history(self, scope: str, entity: str, slot: str) -> list[Card]:
        return await self.versioner.history(scope, entity, slot, self.store)

    async def card_value_at(
        self, scope: str, entity: str, slot: str, at: datetime
    ) -> Card | None:
        return await self.versioner.value_at(scope, entity, slot, at, self.store)

    # ==================================================================
    # Helpers
    # ==================================================================

    async def _embed(self, text: str) -> list[float]:
        """单次 embedding 调用, 失败统一转为 ProviderError"""
        assert self.embedder is not None
        provider = type(self.embedder).__name__
        try:
            return await self.embedder.embed(text)
        except ProviderError:
            raise
        except Exception as e:
            logger.warning(f"[MemoryManager] Embedding failed ({provider}): {e}")
            raise ProviderError(str(e), provider=provider) from e
