"""L1 Unit Tests: MemoryStorage schema, dedup, card transitions, cascades."""

import sqlite3

import pytest

from memcore.core.errors import ConflictError
from memcore.memory.storage import MemoryStorage, bytes_to_floats, floats_to_bytes
from memcore.memory.types import Card, EnrichmentRecord, MemoryFact


@pytest.fixture
def storage(tmp_path):
    db = MemoryStorage(tmp_path / "test.db")
    yield db
    db.close()


def _fact(text: str, scope: str = "u1") -> dict:
    return MemoryFact.create(scope, text).to_dict()


def _card(value: str, *, active: bool = True, multi: bool = False, source: str | None = None) -> dict:
    return Card(
        scope="u1", entity="user", slot="location", value=value,
        is_active=active, multi_valued=multi, source_memory_id=source,
    ).to_dict()


class TestVectorPacking:
    def test_roundtrip(self):
        data = floats_to_bytes([0.5, -1.0, 2.0])
        assert bytes_to_floats(data) == [0.5, -1.0, 2.0]


class TestFacts:
    def test_upsert_inserts_then_reinforces(self, storage):
        first = _fact("我住朝阳区")
        fid, count, created = storage.upsert_fact(first, "我 住 朝阳 朝阳区")
        assert created is True
        assert count == 1
        assert fid == first["id"]

        second = _fact("我住朝阳区")
        fid2, count2, created2 = storage.upsert_fact(second, "我 住 朝阳 朝阳区")
        assert created2 is False
        assert fid2 == fid
        assert count2 == 2
        assert storage.count_facts("u1") == 1

    def test_same_text_other_scope_is_new(self, storage):
        storage.upsert_fact(_fact("hello", "u1"), "hello")
        _, _, created = storage.upsert_fact(_fact("hello", "u2"), "hello")
        assert created is True

    def test_embedding_persisted(self, storage):
        fact = MemoryFact.create("u1", "vec", embedding=[1.0, 0.0]).to_dict()
        storage.insert_fact(fact, "vec")
        assert storage.get_fact("u1", fact["id"])["embedding"] == [1.0, 0.0]
        assert storage.iter_embeddings("u1") == [(fact["id"], [1.0, 0.0])]

    def test_scope_isolation(self, storage):
        fact = _fact("secret", "u1")
        storage.insert_fact(fact, "secret")
        assert storage.get_fact("u2", fact["id"]) is None

    def test_fts_or_search(self, storage):
        a = _fact("我喜欢喝咖啡")
        b = _fact("今天天气很好")
        storage.insert_fact(a, "我 喜欢 喝 咖啡")
        storage.insert_fact(b, "今天 天气 很 好")
        hits = storage.search_fts("u1", ["咖啡", "不存在"], limit=10)
        assert [h[0] for h in hits] == [a["id"]]

    def test_fts_empty_terms(self, storage):
        assert storage.search_fts("u1", ["", '"'], limit=5) == []


class TestCardTransitions:
    def test_insert_first_card(self, storage):
        card = _card("朝阳区")
        storage.card_transition("u1", "user", "location", [], [], card)
        active = storage.get_active_cards("u1", "user", "location")
        assert [c["id"] for c in active] == [card["id"]]

    def test_supersede(self, storage):
        old = _card("朝阳区")
        storage.card_transition("u1", "user", "location", [], [], old)
        new = _card("海淀区")
        storage.card_transition("u1", "user", "location", [old["id"]], [old["id"]], new)

        active = storage.get_active_cards("u1", "user", "location")
        assert [c["value"] for c in active] == ["海淀区"]
        chain = storage.list_card_chain("u1", "user", "location")
        assert [c["value"] for c in chain] == ["朝阳区", "海淀区"]
        assert chain[0]["is_active"] is False

    def test_stale_expected_set_conflicts(self, storage):
        storage.card_transition("u1", "user", "location", [], [], _card("朝阳区"))
        with pytest.raises(ConflictError):
            storage.card_transition("u1", "user", "location", [], [], _card("海淀区"))
        assert len(storage.get_active_cards("u1", "user", "location")) == 1

    def test_partial_unique_index(self, storage):
        storage.card_transition("u1", "user", "location", [], [], _card("朝阳区"))
        with pytest.raises(sqlite3.IntegrityError):
            with storage._transaction() as conn:
                storage._insert_card(conn, _card("海淀区"))

    def test_multi_valued_cards_may_coexist(self, storage):
        a = _card("咖啡", multi=True)
        b = _card("茶", multi=True)
        storage.card_transition("u1", "user", "location", [], [], a)
        storage.card_transition("u1", "user", "location", [a["id"]], [], b)
        assert len(storage.get_active_cards("u1", "user", "location")) == 2


class TestCascade:
    def test_delete_fact_removes_cards_and_records(self, storage):
        fact = _fact("我住朝阳区")
        storage.insert_fact(fact, "我 住 朝阳区")
        storage.card_transition(
            "u1", "user", "location", [], [], _card("朝阳区", source=fact["id"])
        )
        storage.insert_enrichment(
            EnrichmentRecord(scope="u1", memory_id=fact["id"]).to_dict()
        )

        assert storage.delete_fact("u1", fact["id"]) is True
        assert storage.get_active_cards("u1", "user", "location") == []
        assert storage.list_enrichments("u1") == []
        assert storage.search_fts("u1", ["朝阳区"]) == []

    def test_delete_missing(self, storage):
        assert storage.delete_fact("u1", "nope") is False


class TestEnrichmentRecords:
    def test_unique_key(self, storage):
        fact = _fact("x")
        storage.insert_fact(fact, "x")
        storage.insert_enrichment(EnrichmentRecord(scope="u1", memory_id=fact["id"]).to_dict())
        with pytest.raises(ConflictError):
            storage.insert_enrichment(
                EnrichmentRecord(scope="u1", memory_id=fact["id"]).to_dict()
            )

    def test_new_engine_version_is_new_record(self, storage):
        fact = _fact("x")
        storage.insert_fact(fact, "x")
        storage.insert_enrichment(EnrichmentRecord(scope="u1", memory_id=fact["id"]).to_dict())
        storage.insert_enrichment(
            EnrichmentRecord(scope="u1", memory_id=fact["id"], engine_version="2.0.0").to_dict()
        )
        assert len(storage.list_enrichments("u1", fact["id"])) == 2

    def test_card_ids_json(self, storage):
        fact = _fact("x")
        storage.insert_fact(fact, "x")
        storage.insert_enrichment(
            EnrichmentRecord(scope="u1", memory_id=fact["id"], card_ids=["a", "b"]).to_dict()
        )
        rec = storage.get_enrichment("u1", fact["id"], "rules", "1.0.0")
        assert rec["card_ids"] == ["a", "b"]
        assert rec["success"] is True
