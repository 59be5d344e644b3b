"""
SQLite 存储层

三张主表 + 一张 FTS5 索引:
- memory_facts: 事实记忆, (scope, content_hash) 索引用于精确去重
- memory_facts_fts: 分词后的事实文本 (FTS5), 词法 OR 检索
- memory_cards: 卡片版本链, 部分唯一索引保证单值槽位至多一张有效卡片
- enrichment_records: 增量提取记录, 四元组唯一约束

所有方法为同步调用, 由 UnifiedStore 通过 asyncio.to_thread 调度;
同一连接上的访问由 RLock 串行化, 多语句写入使用 BEGIN IMMEDIATE 事务。
"""

from __future__ import annotations

import json
import logging
import sqlite3
import struct
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from ..core.errors import ConflictError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS memory_facts (
    id TEXT PRIMARY KEY,
    scope TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'episodic',
    text TEXT NOT NULL,
    embedding BLOB,
    content_hash TEXT NOT NULL,
    reinforcement_count INTEGER NOT NULL DEFAULT 1,
    happened_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_facts_scope_hash
    ON memory_facts(scope, content_hash);

CREATE INDEX IF NOT EXISTS idx_facts_scope_updated
    ON memory_facts(scope, updated_at DESC);

CREATE VIRTUAL TABLE IF NOT EXISTS memory_facts_fts USING fts5(
    fact_id UNINDEXED,
    scope UNINDEXED,
    content
);

CREATE TABLE IF NOT EXISTS memory_cards (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    scope TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'fact',
    entity TEXT NOT NULL,
    slot TEXT NOT NULL,
    value TEXT NOT NULL,
    polarity TEXT,
    version_key TEXT NOT NULL,
    version_relation TEXT NOT NULL DEFAULT 'sets',
    source_memory_id TEXT REFERENCES memory_facts(id) ON DELETE CASCADE,
    engine TEXT NOT NULL DEFAULT 'rules',
    engine_version TEXT NOT NULL DEFAULT '1.0.0',
    confidence REAL NOT NULL DEFAULT 0.5,
    is_active INTEGER NOT NULL DEFAULT 1,
    multi_valued INTEGER NOT NULL DEFAULT 0,
    predecessor_id TEXT,
    event_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cards_entity_slot
    ON memory_cards(scope, entity, slot, is_active);

CREATE INDEX IF NOT EXISTS idx_cards_source_memory
    ON memory_cards(source_memory_id);

CREATE UNIQUE INDEX IF NOT EXISTS uq_cards_one_active
    ON memory_cards(scope, version_key)
    WHERE is_active = 1 AND multi_valued = 0;

CREATE TABLE IF NOT EXISTS enrichment_records (
    id TEXT PRIMARY KEY,
    scope TEXT NOT NULL,
    memory_id TEXT NOT NULL REFERENCES memory_facts(id) ON DELETE CASCADE,
    engine_kind TEXT NOT NULL,
    engine_version TEXT NOT NULL,
    success INTEGER NOT NULL DEFAULT 1,
    card_ids TEXT NOT NULL DEFAULT '[]',
    error_message TEXT,
    enriched_at TEXT NOT NULL,
    UNIQUE (scope, memory_id, engine_kind, engine_version)
);

CREATE INDEX IF NOT EXISTS idx_enrichment_memory
    ON enrichment_records(scope, memory_id);

CREATE TABLE IF NOT EXISTS schema_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_FACT_COLUMNS = (
    "id", "scope", "kind", "text", "embedding", "content_hash",
    "reinforcement_count", "happened_at", "created_at", "updated_at",
)

_CARD_COLUMNS = (
    "id", "scope", "kind", "entity", "slot", "value", "polarity", "version_key",
    "version_relation", "source_memory_id", "engine", "engine_version",
    "confidence", "is_active", "multi_valued", "predecessor_id", "event_date",
    "created_at", "updated_at",
)


def floats_to_bytes(floats: list[float]) -> bytes:
    return struct.pack(f"{len(floats)}f", *floats)


def bytes_to_floats(data: bytes) -> list[float]:
    n = len(data) // 4
    return list(struct.unpack(f"{n}f", data))


def _sanitize_term(term: str) -> str:
    cleaned = term.replace('"', " ").strip()
    return f'"{cleaned}"' if cleaned else ""


class MemoryStorage:
    """SQLite 主存储"""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('version', ?)",
                (str(SCHEMA_VERSION),),
            )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ======================================================================
    # Facts
    # ======================================================================

    def insert_fact(self, fact: dict, segmented: str) -> None:
        row = dict(fact)
        emb = row.get("embedding")
        row["embedding"] = floats_to_bytes(emb) if emb else None
        cols = ", ".join(_FACT_COLUMNS)
        marks = ", ".join("?" for _ in _FACT_COLUMNS)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO memory_facts ({cols}) VALUES ({marks})",
                tuple(row.get(c) for c in _FACT_COLUMNS),
            )
            conn.execute(
                "INSERT INTO memory_facts_fts (fact_id, scope, content) VALUES (?, ?, ?)",
                (row["id"], row["scope"], segmented),
            )

    def upsert_fact(self, fact: dict, segmented: str) -> tuple[str, int, bool]:
        """
        精确去重写入

        同 scope 下已存在相同 content_hash 时自增 reinforcement_count,
        否则插入新行。返回 (fact_id, reinforcement_count, created)。
        """
        row = dict(fact)
        emb = row.get("embedding")
        row["embedding"] = floats_to_bytes(emb) if emb else None
        cols = ", ".join(_FACT_COLUMNS)
        marks = ", ".join("?" for _ in _FACT_COLUMNS)
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM memory_facts WHERE scope = ? AND content_hash = ? "
                "ORDER BY created_at LIMIT 1",
                (row["scope"], row["content_hash"]),
            ).fetchone()
            if existing:
                fact_id = existing[0]
                conn.execute(
                    "UPDATE memory_facts SET reinforcement_count = reinforcement_count + 1, "
                    "updated_at = ? WHERE id = ?",
                    (row["updated_at"], fact_id),
                )
                count = conn.execute(
                    "SELECT reinforcement_count FROM memory_facts WHERE id = ?", (fact_id,)
                ).fetchone()[0]
                return fact_id, int(count), False

            conn.execute(
                f"INSERT INTO memory_facts ({cols}) VALUES ({marks})",
                tuple(row.get(c) for c in _FACT_COLUMNS),
            )
            conn.execute(
                "INSERT INTO memory_facts_fts (fact_id, scope, content) VALUES (?, ?, ?)",
                (row["id"], row["scope"], segmented),
            )
            return row["id"], int(row.get("reinforcement_count") or 1), True

    def get_fact(self, scope: str, fact_id: str) -> dict | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM memory_facts WHERE scope = ? AND id = ?",
                (scope, fact_id),
            ).fetchone()
        return self._fact_row(row) if row else None

    def get_facts(self, scope: str, fact_ids: list[str]) -> list[dict]:
        if not fact_ids:
            return []
        marks = ", ".join("?" for _ in fact_ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM memory_facts WHERE scope = ? AND id IN ({marks})",
                (scope, *fact_ids),
            ).fetchall()
        return [self._fact_row(r) for r in rows]

    def list_facts(self, scope: str, limit: int = 100, offset: int = 0) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM memory_facts WHERE scope = ? "
                "ORDER BY created_at, id LIMIT ? OFFSET ?",
                (scope, limit, offset),
            ).fetchall()
        return [self._fact_row(r) for r in rows]

    def list_fact_ids(self, scope: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM memory_facts WHERE scope = ? ORDER BY created_at, id",
                (scope,),
            ).fetchall()
        return [r[0] for r in rows]

    def iter_embeddings(self, scope: str) -> list[tuple[str, list[float]]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, embedding FROM memory_facts "
                "WHERE scope = ? AND embedding IS NOT NULL",
                (scope,),
            ).fetchall()
        return [(r["id"], bytes_to_floats(r["embedding"])) for r in rows]

    def delete_fact(self, scope: str, fact_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM memory_facts WHERE scope = ? AND id = ?", (scope, fact_id)
            )
            conn.execute("DELETE FROM memory_facts_fts WHERE fact_id = ?", (fact_id,))
        return cur.rowcount > 0

    def count_facts(self, scope: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM memory_facts WHERE scope = ?", (scope,)
            ).fetchone()
        return int(row[0])

    def search_fts(self, scope: str, terms: list[str], limit: int = 20) -> list[tuple[str, float]]:
        """OR 检索, 返回 [(fact_id, bm25_rank), ...], rank 越小越相关"""
        quoted = [q for q in (_sanitize_term(t) for t in terms) if q]
        if not quoted:
            return []
        match = " OR ".join(quoted)
        with self._lock:
            rows = self._conn.execute(
                "SELECT fact_id, bm25(memory_facts_fts) AS score FROM memory_facts_fts "
                "WHERE memory_facts_fts MATCH ? AND scope = ? ORDER BY score LIMIT ?",
                (match, scope, limit),
            ).fetchall()
        return [(r["fact_id"], float(r["score"])) for r in rows]

    @staticmethod
    def _fact_row(row: sqlite3.Row) -> dict:
        d = dict(row)
        if d.get("embedding") is not None:
            d["embedding"] = bytes_to_floats(d["embedding"])
        return d

    # ======================================================================
    # Cards
    # ======================================================================

    def get_active_cards(self, scope: str, entity: str, slot: str) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM memory_cards WHERE scope = ? AND entity = ? AND slot = ? "
                "AND is_active = 1 ORDER BY seq",
                (scope, entity, slot),
            ).fetchall()
        return [self._card_row(r) for r in rows]

    def list_card_chain(self, scope: str, entity: str, slot: str) -> list[dict]:
        """按写入顺序返回某槽位的全部卡片 (含失效版本)"""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM memory_cards WHERE scope = ? AND entity = ? AND slot = ? "
                "ORDER BY seq",
                (scope, entity, slot),
            ).fetchall()
        return [self._card_row(r) for r in rows]

    def list_active_cards(self, scope: str) -> list[dict]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM memory_cards WHERE scope = ? AND is_active = 1 ORDER BY seq",
                (scope,),
            ).fetchall()
        return [self._card_row(r) for r in rows]

    def card_transition(
        self,
        scope: str,
        entity: str,
        slot: str,
        expected_active: list[str],
        deactivate: list[str],
        new_card: dict | None,
    ) -> None:
        """
        单事务完成 "失效旧卡片 + 写入新卡片"

        事务内重新读取有效卡片集合, 与调用方读取时的 expected_active 不一致
        说明有并发写入者先提交, 抛出 ConflictError 由调用方重试。
        """
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    "SELECT id FROM memory_cards WHERE scope = ? AND entity = ? AND slot = ? "
                    "AND is_active = 1",
                    (scope, entity, slot),
                ).fetchall()
                current = sorted(r[0] for r in rows)
                if current != sorted(expected_active):
                    raise ConflictError(
                        f"active set changed for {scope}/{entity}:{slot}",
                        key=f"{entity}:{slot}",
                    )
                for card_id in deactivate:
                    conn.execute(
                        "UPDATE memory_cards SET is_active = 0, updated_at = ? WHERE id = ?",
                        (new_card["created_at"] if new_card else _now_iso(), card_id),
                    )
                if new_card is not None:
                    self._insert_card(conn, new_card)
        except sqlite3.IntegrityError as e:
            raise ConflictError(str(e), key=f"{entity}:{slot}") from e

    @staticmethod
    def _insert_card(conn: sqlite3.Connection, card: dict) -> None:
        row = dict(card)
        row["is_active"] = 1 if row.get("is_active") else 0
        row["multi_valued"] = 1 if row.get("multi_valued") else 0
        cols = ", ".join(_CARD_COLUMNS)
        marks = ", ".join("?" for _ in _CARD_COLUMNS)
        conn.execute(
            f"INSERT INTO memory_cards ({cols}) VALUES ({marks})",
            tuple(row.get(c) for c in _CARD_COLUMNS),
        )

    @staticmethod
    def _card_row(row: sqlite3.Row) -> dict:
        d = dict(row)
        d.pop("seq", None)
        d["is_active"] = bool(d["is_active"])
        d["multi_valued"] = bool(d["multi_valued"])
        return d

    # ======================================================================
    # Enrichment records
    # ======================================================================

    def insert_enrichment(self, record: dict) -> None:
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT INTO enrichment_records (id, scope, memory_id, engine_kind, "
                    "engine_version, success, card_ids, error_message, enriched_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record["id"], record["scope"], record["memory_id"],
                        record["engine_kind"], record["engine_version"],
                        1 if record.get("success", True) else 0,
                        json.dumps(record.get("card_ids") or []),
                        record.get("error_message"), record["enriched_at"],
                    ),
                )
        except sqlite3.IntegrityError as e:
            key = "/".join(
                str(record.get(k)) for k in ("scope", "memory_id", "engine_kind", "engine_version")
            )
            raise ConflictError(str(e), key=key) from e

    def get_enrichment(
        self, scope: str, memory_id: str, engine_kind: str, engine_version: str
    ) -> dict | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM enrichment_records WHERE scope = ? AND memory_id = ? "
                "AND engine_kind = ? AND engine_version = ?",
                (scope, memory_id, engine_kind, engine_version),
            ).fetchone()
        return self._enrichment_row(row) if row else None

    def list_enrichments(self, scope: str, memory_id: str | None = None) -> list[dict]:
        sql = "SELECT * FROM enrichment_records WHERE scope = ?"
        params: tuple = (scope,)
        if memory_id is not None:
            sql += " AND memory_id = ?"
            params = (scope, memory_id)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY enriched_at", params).fetchall()
        return [self._enrichment_row(r) for r in rows]

    @staticmethod
    def _enrichment_row(row: sqlite3.Row) -> dict:
        d = dict(row)
        d["success"] = bool(d["success"])
        d["card_ids"] = json.loads(d.get("card_ids") or "[]")
        return d


def _now_iso() -> str:
    return datetime.now().isoformat()
