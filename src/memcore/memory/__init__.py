"""
memcore 记忆系统

架构:
- UnifiedStore: SQLite (主存储 + FTS5), 实现 MemoryRepository
- ExtractionEngine: 规则卡片提取 (entity / slot / value)
- CardVersioner: 卡片版本链, 单值槽位至多一张有效卡片
- EnrichmentTracker: (记忆, 引擎, 版本) 幂等记录 + 进程级缓存
- RetrievalEngine: 卡片直查 + 向量 + 词法三路召回, 显著性重排
- LifecycleManager: 单条提取 + 后台回填

数据类型:
- MemoryFact: 对话事实
- Card: 结构化事实卡片
- EnrichmentRecord: 提取记录
"""

from .enrichment import EnrichmentCache, EnrichmentTracker
from .extractor import ExtractionConfig, ExtractionEngine, PatternDef, default_patterns
from .lifecycle import BackfillProgress, LifecycleManager
from .manager import MemoryManager
from .query_expander import QueryExpander
from .question import QuestionDetector, QuestionPattern
from .repository import Embedder, MemoryRepository
from .retrieval import IntentReranker, RetrievalEngine, SearchResult
from .schema import Cardinality, SchemaRegistry, SlotSchema, ValueType
from .scoring import SalienceScorer, cosine_similarity
from .types import (
    Card,
    CardKind,
    EngineKind,
    EnrichmentRecord,
    FactKind,
    MemoryFact,
    Polarity,
    QuestionType,
    VersionRelation,
)
from .unified_store import UnifiedStore
from .versioning import CardVersioner

__all__ = [
    "MemoryManager",
    "UnifiedStore",
    "MemoryRepository",
    "Embedder",
    "ExtractionEngine",
    "ExtractionConfig",
    "PatternDef",
    "default_patterns",
    "CardVersioner",
    "EnrichmentTracker",
    "EnrichmentCache",
    "QuestionDetector",
    "QuestionPattern",
    "QueryExpander",
    "SalienceScorer",
    "cosine_similarity",
    "IntentReranker",
    "RetrievalEngine",
    "SearchResult",
    "LifecycleManager",
    "BackfillProgress",
    "SchemaRegistry",
    "SlotSchema",
    "Cardinality",
    "ValueType",
    # Types
    "MemoryFact",
    "Card",
    "EnrichmentRecord",
    "FactKind",
    "CardKind",
    "VersionRelation",
    "Polarity",
    "EngineKind",
    "QuestionType",
]
