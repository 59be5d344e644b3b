"""
记忆生命周期管理

- 单条事实的卡片提取: 提取 -> 版本链写入 -> enrichment 记录
- 历史语料回填: 独立 asyncio 任务, 逐条处理并通过队列汇报进度, 可取消

回填与交互写入共用 EnrichmentTracker, 已处理的 (记忆, 引擎版本) 会被跳过,
重复执行回填是幂等的。
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..core.errors import MemcoreError
from .enrichment import EnrichmentTracker
from .extractor import ExtractionEngine
from .repository import MemoryRepository
from .types import Card, MemoryFact
from .versioning import CardVersioner

logger = logging.getLogger(__name__)


@dataclass
class BackfillProgress:
    """回填进度快照"""

    scope: str = ""
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    cards_written: int = 0
    current_id: str | None = None
    done: bool = False
    cancelled: bool = False
    error: str | None = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None

    @property
    def finished(self) -> bool:
        """终态快照: 完成 / 取消 / 异常中止"""
        return self.done or self.cancelled or self.error is not None

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed - self.skipped - self.failed)

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "total": self.total,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "cards_written": self.cards_written,
            "current_id": self.current_id,
            "done": self.done,
            "cancelled": self.cancelled,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class LifecycleManager:
    """记忆生命周期管理器"""

    def __init__(
        self,
        repository: MemoryRepository,
        extractor: ExtractionEngine,
        versioner: CardVersioner,
        tracker: EnrichmentTracker,
    ) -> None:
        self.repository = repository
        self.extractor = extractor
        self.versioner = versioner
        self.tracker = tracker

    # ==================================================================
    # Enrichment of a single fact
    # ==================================================================

    async def enrich_fact(self, fact: MemoryFact) -> list[Card] | None:
        """
        对一条事实运行提取引擎并写入卡片。

        Returns:
            写入的卡片列表; 该引擎版本已处理过时返回 None。
        """
        kind = self.extractor.engine_kind
        version = self.extractor.engine_version
        if not await self.tracker.should_process(fact.scope, fact.id, kind, version):
            return None

        drafts = self.extractor.extract_from_fact(fact)
        applied: list[Card] = []
        try:
            for draft in drafts:
                card = await self.versioner.apply(draft, self.repository)
                if card is not None:
                    applied.append(card)
        except MemcoreError as e:
            logger.error(f"[Lifecycle] Enrichment failed for {fact.scope}/{fact.id}: {e}")
            await self.tracker.record_failure(fact.scope, fact.id, kind, version, str(e))
            raise

        await self.tracker.record_success(
            fact.scope, fact.id, kind, version, [c.id for c in applied]
        )
        if applied:
            logger.info(
                f"[Lifecycle] Fact {fact.id}: {len(applied)} card(s) "
                f"({', '.join(c.version_key for c in applied)})"
            )
        return applied

    # ==================================================================
    # Backfill
    # ==================================================================

    def start_backfill(
        self, scope: str
    ) -> tuple[asyncio.Task[BackfillProgress], asyncio.Queue[BackfillProgress]]:
        """
        启动后台回填任务

        Returns:
            (task, queue): task 结果为最终进度; queue 中依次收到进度快照,
            最后一个快照为终态 (finished): done、cancelled 为 True
            或 error 非空。异常中止时 task 重新抛出原异常。
        """
        queue: asyncio.Queue[BackfillProgress] = asyncio.Queue()
        task = asyncio.create_task(
            self.run_backfill(scope, queue), name=f"memcore-backfill-{scope}"
        )
        return task, queue

    async def run_backfill(
        self, scope: str, queue: asyncio.Queue[BackfillProgress] | None = None
    ) -> BackfillProgress:
        progress = BackfillProgress(scope=scope)

        def report() -> None:
            if queue is not None:
                queue.put_nowait(dataclasses.replace(progress))

        try:
            fact_ids = await self.repository.list_fact_ids(scope)
            progress.total = len(fact_ids)
            logger.info(f"[Lifecycle] Backfill started for scope {scope}: {len(fact_ids)} facts")
            for fact_id in fact_ids:
                progress.current_id = fact_id
                fact = await self.repository.get_fact(scope, fact_id)
                if fact is None:
                    # 回填期间被删除
                    progress.skipped += 1
                else:
                    try:
                        cards = await self.enrich_fact(fact)
                    except MemcoreError as e:
                        progress.failed += 1
                        logger.warning(f"[Lifecycle] Backfill: fact {fact_id} failed: {e}")
                    else:
                        if cards is None:
                            progress.skipped += 1
                        else:
                            progress.processed += 1
                            progress.cards_written += len(cards)
                report()
                # 每条之间让出事件循环, 不阻塞交互请求
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            progress.cancelled = True
            progress.finished_at = datetime.now()
            report()
            logger.info(
                f"[Lifecycle] Backfill cancelled for scope {scope} "
                f"after {progress.processed + progress.skipped + progress.failed}/{progress.total}"
            )
            raise
        except Exception as e:
            progress.error = f"{type(e).__name__}: {e}"
            progress.finished_at = datetime.now()
            report()
            logger.error(f"[Lifecycle] Backfill aborted for scope {scope}: {progress.error}")
            raise

        progress.current_id = None
        progress.done = True
        progress.finished_at = datetime.now()
        report()
        logger.info(
            f"[Lifecycle] Backfill done for scope {scope}: processed={progress.processed} "
            f"skipped={progress.skipped} failed={progress.failed} cards={progress.cards_written}"
        )
        return progress
