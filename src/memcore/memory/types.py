"""
记忆类型定义

- MemoryFact: 由对话轮次生成的原始记忆, 按 content_hash 精确去重
- Card: 实体-槽位-值结构的事实卡片, 按 version_key 维护有效/失效版本链
- EnrichmentRecord: (记忆, 引擎, 引擎版本) 处理记录, 增量提取的幂等键
- QuestionType: 问句意图分类结果, 不持久化
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class FactKind(Enum):
    """记忆类型"""

    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"


class CardKind(Enum):
    """卡片类型"""

    FACT = "fact"
    PREFERENCE = "preference"
    EVENT = "event"
    PROFILE = "profile"
    RELATIONSHIP = "relationship"
    GOAL = "goal"


class VersionRelation(Enum):
    """新卡片与同一槽位旧版本的关系"""

    SETS = "sets"
    UPDATES = "updates"
    EXTENDS = "extends"
    RETRACTS = "retracts"

    @property
    def supersedes(self) -> bool:
        return self in (VersionRelation.SETS, VersionRelation.UPDATES)


class Polarity(Enum):
    """偏好极性"""

    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class EngineKind(Enum):
    """产出卡片的提取引擎 (封闭集合)"""

    RULES = "rules"
    LLM = "llm"


class QuestionType(Enum):
    """问句意图"""

    WHAT_KIND = "what_kind"
    HOW_MANY = "how_many"
    RECENCY = "recency"
    UPDATE = "update"
    WHERE = "where"
    PREFERENCE = "preference"
    WHEN = "when"
    HAVE = "have"
    CAN = "can"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value: str) -> QuestionType:
        try:
            return cls(value.lower())
        except ValueError:
            return cls.GENERIC


def _new_id() -> str:
    return uuid.uuid4().hex


def content_hash(kind: str, text: str) -> str:
    """精确去重键: sha256("{kind}:{text}")"""
    return hashlib.sha256(f"{kind}:{text}".encode("utf-8")).hexdigest()


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# MemoryFact
# ---------------------------------------------------------------------------


@dataclass
class MemoryFact:
    """对话事实记忆"""

    id: str = field(default_factory=_new_id)
    scope: str = ""
    kind: FactKind = FactKind.EPISODIC
    text: str = ""
    embedding: list[float] | None = None
    content_hash: str = ""
    reinforcement_count: int = 1

    happened_at: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        if not self.content_hash and self.text:
            self.content_hash = content_hash(self.kind.value, self.text)

    @classmethod
    def create(
        cls,
        scope: str,
        text: str,
        kind: FactKind = FactKind.EPISODIC,
        embedding: list[float] | None = None,
        happened_at: datetime | None = None,
    ) -> MemoryFact:
        now = datetime.now()
        return cls(
            scope=scope,
            kind=kind,
            text=text,
            embedding=embedding,
            happened_at=happened_at or now,
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "kind": self.kind.value,
            "text": self.text,
            "embedding": self.embedding,
            "content_hash": self.content_hash,
            "reinforcement_count": self.reinforcement_count,
            "happened_at": self.happened_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> MemoryFact:
        now = datetime.now()
        return cls(
            id=data.get("id") or _new_id(),
            scope=data.get("scope", ""),
            kind=FactKind(data.get("kind", "episodic")),
            text=data.get("text", ""),
            embedding=data.get("embedding"),
            content_hash=data.get("content_hash", ""),
            reinforcement_count=data.get("reinforcement_count", 1),
            happened_at=_parse_dt(data.get("happened_at")) or now,
            created_at=_parse_dt(data.get("created_at")) or now,
            updated_at=_parse_dt(data.get("updated_at")) or now,
        )

    def to_markdown(self) -> str:
        suffix = f" (x{self.reinforcement_count})" if self.reinforcement_count > 1 else ""
        return f"- [{self.kind.value}] {self.text}{suffix}"


# ---------------------------------------------------------------------------
# Card
# ---------------------------------------------------------------------------


@dataclass
class Card:
    """结构化事实卡片: entity/slot/value, 支持版本链"""

    id: str = field(default_factory=_new_id)
    scope: str = ""
    kind: CardKind = CardKind.FACT
    entity: str = ""
    slot: str = ""
    value: str = ""
    polarity: Polarity | None = None

    version_relation: VersionRelation = VersionRelation.SETS
    source_memory_id: str | None = None
    engine: EngineKind = EngineKind.RULES
    engine_version: str = "1.0.0"
    confidence: float = 0.5

    # 版本链状态, 由 CardVersioner 写入; 草稿卡片为 None
    is_active: bool | None = None
    multi_valued: bool = False
    predecessor_id: str | None = None

    # 仅作记录, 不参与版本排序
    event_date: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        self.confidence = min(1.0, max(0.0, float(self.confidence)))

    @property
    def version_key(self) -> str:
        return f"{self.entity}:{self.slot}"

    @property
    def is_draft(self) -> bool:
        return self.is_active is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "kind": self.kind.value,
            "entity": self.entity,
            "slot": self.slot,
            "value": self.value,
            "polarity": self.polarity.value if self.polarity else None,
            "version_key": self.version_key,
            "version_relation": self.version_relation.value,
            "source_memory_id": self.source_memory_id,
            "engine": self.engine.value,
            "engine_version": self.engine_version,
            "confidence": self.confidence,
            "is_active": self.is_active,
            "multi_valued": self.multi_valued,
            "predecessor_id": self.predecessor_id,
            "event_date": self.event_date.isoformat() if self.event_date else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Card:
        polarity = data.get("polarity")
        is_active = data.get("is_active")
        now = datetime.now()
        return cls(
            id=data.get("id") or _new_id(),
            scope=data.get("scope", ""),
            kind=CardKind(data.get("kind", "fact")),
            entity=data.get("entity", ""),
            slot=data.get("slot", ""),
            value=data.get("value", ""),
            polarity=Polarity(polarity) if polarity else None,
            version_relation=VersionRelation(data.get("version_relation", "sets")),
            source_memory_id=data.get("source_memory_id"),
            engine=EngineKind(data.get("engine", "rules")),
            engine_version=data.get("engine_version", "1.0.0"),
            confidence=data.get("confidence") if data.get("confidence") is not None else 0.5,
            is_active=bool(is_active) if is_active is not None else None,
            multi_valued=bool(data.get("multi_valued", False)),
            predecessor_id=data.get("predecessor_id"),
            event_date=_parse_dt(data.get("event_date")),
            created_at=_parse_dt(data.get("created_at")) or now,
            updated_at=_parse_dt(data.get("updated_at")) or now,
        )

    def to_markdown(self) -> str:
        pol = f" ({self.polarity.value})" if self.polarity and self.polarity != Polarity.NEUTRAL else ""
        return f"- [card] {self.entity}.{self.slot} = {self.value}{pol}"


# ---------------------------------------------------------------------------
# EnrichmentRecord
# ---------------------------------------------------------------------------


@dataclass
class EnrichmentRecord:
    """增量提取记录, (scope, memory_id, engine_kind, engine_version) 唯一"""

    scope: str = ""
    memory_id: str = ""
    engine_kind: EngineKind = EngineKind.RULES
    engine_version: str = "1.0.0"
    success: bool = True
    card_ids: list[str] = field(default_factory=list)
    error_message: str | None = None
    id: str = field(default_factory=_new_id)
    enriched_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.scope, self.memory_id, self.engine_kind.value, self.engine_version)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "memory_id": self.memory_id,
            "engine_kind": self.engine_kind.value,
            "engine_version": self.engine_version,
            "success": self.success,
            "card_ids": self.card_ids,
            "error_message": self.error_message,
            "enriched_at": self.enriched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> EnrichmentRecord:
        return cls(
            id=data.get("id") or _new_id(),
            scope=data.get("scope", ""),
            memory_id=data.get("memory_id", ""),
            engine_kind=EngineKind(data.get("engine_kind", "rules")),
            engine_version=data.get("engine_version", "1.0.0"),
            success=bool(data.get("success", True)),
            card_ids=data.get("card_ids") or [],
            error_message=data.get("error_message"),
            enriched_at=_parse_dt(data.get("enriched_at")) or datetime.now(),
        )
