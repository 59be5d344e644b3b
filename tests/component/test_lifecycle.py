"""L2 Component Tests: single-fact enrichment and background backfill."""

import asyncio

import pytest

from memcore.core.errors import DataIntegrityError
from memcore.memory.enrichment import EnrichmentTracker
from memcore.memory.extractor import ExtractionConfig, ExtractionEngine
from memcore.memory.lifecycle import BackfillProgress, LifecycleManager
from memcore.memory.types import Card, MemoryFact
from memcore.memory.unified_store import UnifiedStore
from memcore.memory.versioning import CardVersioner


@pytest.fixture
def store(tmp_path):
    s = UnifiedStore(tmp_path / "test.db")
    yield s
    s.close()


@pytest.fixture
def versioner():
    return CardVersioner()


@pytest.fixture
def lifecycle(store, versioner):
    return LifecycleManager(store, ExtractionEngine(), versioner, EnrichmentTracker(store))


async def _insert(store, text, scope="u1"):
    fact = MemoryFact.create(scope, text)
    await store.insert_fact(fact)
    return fact


def _drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


class TestEnrichFact:
    @pytest.mark.asyncio
    async def test_extracts_and_records(self, store, versioner, lifecycle):
        fact = await _insert(store, "我住朝阳区")
        cards = await lifecycle.enrich_fact(fact)

        assert [c.value for c in cards] == ["朝阳区"]
        assert cards[0].source_memory_id == fact.id
        assert (await versioner.get_active("u1", "user", "location", store)).value == "朝阳区"

        stamps = await lifecycle.tracker.stamps("u1", fact.id)
        assert len(stamps) == 1
        assert stamps[0].card_ids == [cards[0].id]

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, store, lifecycle):
        fact = await _insert(store, "我住朝阳区")
        await lifecycle.enrich_fact(fact)
        assert await lifecycle.enrich_fact(fact) is None

    @pytest.mark.asyncio
    async def test_no_cards_still_recorded(self, store, lifecycle):
        fact = await _insert(store, "今天天气不错")
        assert await lifecycle.enrich_fact(fact) == []
        assert len(await lifecycle.tracker.stamps("u1", fact.id)) == 1

    @pytest.mark.asyncio
    async def test_engine_version_bump_reprocesses(self, store, versioner, lifecycle):
        fact = await _insert(store, "我住朝阳区")
        await lifecycle.enrich_fact(fact)

        bumped = LifecycleManager(
            store,
            ExtractionEngine(ExtractionConfig(engine_version="2.0.0")),
            versioner,
            lifecycle.tracker,
        )
        cards = await bumped.enrich_fact(fact)
        assert cards is not None
        # 同值重放不产生新版本
        assert len(await versioner.history("u1", "user", "location", store)) == 1
        assert len(await lifecycle.tracker.stamps("u1", fact.id)) == 2

    @pytest.mark.asyncio
    async def test_failure_recorded_and_raised(self, store, lifecycle):
        await _corrupt_location(store)
        fact = await _insert(store, "我住朝阳区")

        with pytest.raises(DataIntegrityError):
            await lifecycle.enrich_fact(fact)
        stamps = await lifecycle.tracker.stamps("u1", fact.id)
        assert stamps[0].success is False
        assert stamps[0].error_message


async def _corrupt_location(store):
    a = Card(scope="u1", entity="user", slot="location", value="A", is_active=True, multi_valued=True)
    b = Card(scope="u1", entity="user", slot="location", value="B", is_active=True, multi_valued=True)
    await store.transition_cards("u1", "user", "location", [], [], a)
    await store.transition_cards("u1", "user", "location", [a.id], [], b)


class TestBackfill:
    @pytest.mark.asyncio
    async def test_backfill_processes_all(self, store, versioner, lifecycle):
        await _insert(store, "我住朝阳区")
        await _insert(store, "我喜欢咖啡")
        await _insert(store, "今天天气不错")

        task, queue = lifecycle.start_backfill("u1")
        final = await task

        assert isinstance(final, BackfillProgress)
        assert final.done and not final.cancelled
        assert final.total == 3
        assert final.processed == 3
        assert final.cards_written == 2
        assert final.remaining == 0
        assert final.finished_at is not None

        snapshots = _drain(queue)
        assert len(snapshots) == 4
        assert [s.processed for s in snapshots[:3]] == [1, 2, 3]
        assert snapshots[-1].done
        assert not any(s.done for s in snapshots[:-1])

        assert (await versioner.get_active("u1", "user", "location", store)).value == "朝阳区"

    @pytest.mark.asyncio
    async def test_backfill_is_idempotent(self, store, lifecycle):
        await _insert(store, "我住朝阳区")
        await _insert(store, "我喜欢咖啡")
        await lifecycle.run_backfill("u1")

        second = await lifecycle.run_backfill("u1")
        assert second.processed == 0
        assert second.skipped == 2
        assert second.cards_written == 0

    @pytest.mark.asyncio
    async def test_backfill_skips_already_enriched(self, store, lifecycle):
        done = await _insert(store, "我住朝阳区")
        await lifecycle.enrich_fact(done)
        await _insert(store, "我喜欢咖啡")

        progress = await lifecycle.run_backfill("u1")
        assert progress.skipped == 1
        assert progress.processed == 1

    @pytest.mark.asyncio
    async def test_backfill_counts_failures(self, store, lifecycle):
        await _corrupt_location(store)
        await _insert(store, "我住朝阳区")
        await _insert(store, "我喜欢咖啡")

        progress = await lifecycle.run_backfill("u1")
        assert progress.failed == 1
        assert progress.processed == 1
        assert progress.done

    @pytest.mark.asyncio
    async def test_backfill_empty_scope(self, lifecycle):
        progress = await lifecycle.run_backfill("nobody")
        assert progress.total == 0
        assert progress.done

    @pytest.mark.asyncio
    async def test_backfill_cancel(self, store, lifecycle):
        for i in range(30):
            await _insert(store, f"我喜欢东西{i}")

        task, queue = lifecycle.start_backfill("u1")
        first = await queue.get()
        assert first.processed + first.skipped + first.failed == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        # 已开始的卡片写入不随取消中断, 等其落盘
        await asyncio.sleep(0.1)

        snapshots = _drain(queue)
        assert snapshots[-1].cancelled
        assert not snapshots[-1].done
        assert snapshots[-1].processed < 30

    @pytest.mark.asyncio
    async def test_progress_to_dict(self, store, lifecycle):
        await _insert(store, "我住朝阳区")
        progress = await lifecycle.run_backfill("u1")
        d = progress.to_dict()
        assert d["scope"] == "u1"
        assert d["done"] is True
        assert d["current_id"] is None
        assert d["error"] is None

    @pytest.mark.asyncio
    async def test_backfill_io_error_sends_terminal_snapshot(self, store, lifecycle, monkeypatch):
        await _insert(store, "我住朝阳区")
        await _insert(store, "我喜欢咖啡")

        async def broken_get_fact(scope, fact_id):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(store, "get_fact", broken_get_fact)

        task, queue = lifecycle.start_backfill("u1")
        # 消费方等待终态快照, 不会永久阻塞
        last = await asyncio.wait_for(queue.get(), timeout=1.0)
        while not last.finished:
            last = await asyncio.wait_for(queue.get(), timeout=1.0)

        with pytest.raises(RuntimeError, match="disk I/O error"):
            await task

        assert last.error == "RuntimeError: disk I/O error"
        assert not last.done
        assert not last.cancelled
        assert last.finished_at is not None
        assert last.to_dict()["error"] == "RuntimeError: disk I/O error"
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_backfill_listing_error_sends_terminal_snapshot(self, store, lifecycle, monkeypatch):
        async def broken_list(scope):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(store, "list_fact_ids", broken_list)

        task, queue = lifecycle.start_backfill("u1")
        with pytest.raises(RuntimeError):
            await task

        snapshots = _drain(queue)
        assert len(snapshots) == 1
        assert snapshots[0].finished
        assert snapshots[0].total == 0
        assert "database is locked" in snapshots[0].error
