"""Tests for status computation and snapshot publishing."""
import pytest

from src.data_models.indexer_schemas import DomainEvent, EntityStore, EventKind, SurveyRecord
from src.indexer.publisher import (BALANCES_KEY, DOMAIN_KEY, LEDGER_KEY, STATE_KEY, SURVEYS_KEY, SURVEYS_LIST_KEY,
                                   SnapshotPublisher, append_ledger, compute_status, load_entity_store, read_cursor)
from src.services.kv_store import FileKVStore, KVStoreError

from .fakes import BASE_TS, SURVEY_A, SURVEY_B, VOTER_1, tx_hash


@pytest.mark.parametrize("start, end, finalized, now, expected", [
    (100, 200, None, 150, "active"),
    (100, 200, None, 250, "past"),
    (300, 400, None, 50, "upcoming"),
    (100, 200, 210, 150, "past"),
    (100, 200, None, 200, "past"),
    (0, 0, None, 50, "active"),
])
def test_compute_status(start, end, finalized, now, expected):
    assert compute_status(start, end, finalized, now) == expected


def vote(block, log_index):
    return DomainEvent(kind=EventKind.VOTED, address=SURVEY_A, block_number=block, log_index=log_index,
                       block_timestamp=BASE_TS, tx_hash=tx_hash(block, log_index), args={"voter": VOTER_1})


@pytest.fixture
def kv(tmp_path):
    return FileKVStore(str(tmp_path / "api"))


@pytest.fixture
def store():
    return EntityStore(
        surveys={
            SURVEY_A: SurveyRecord(address=SURVEY_A, start_time=100, end_time=200, deployed_block=1,
                                   prize_funded=10**21),
            SURVEY_B: SurveyRecord(address=SURVEY_B, start_time=300, end_time=400, deployed_block=2),
        },
        balances={VOTER_1: 1},
        voted=frozenset({f"{SURVEY_A}|{VOTER_1}"}),
        seen_events=frozenset({"0x01:0"}),
        last_block=42,
    )


class TestSnapshotPublisher:
    def test_publish_writes_every_document(self, kv, store):
        publisher = SnapshotPublisher(kv, domain_descriptor={"eip712": {"domain": {"name": "D"}}})

        publisher.publish(store, now=150)

        surveys = kv.read(SURVEYS_KEY)
        assert surveys[SURVEY_A]["prizeFunded"] == str(10**21)
        assert [row["status"] for row in kv.read(SURVEYS_LIST_KEY)] == ["active", "upcoming"]
        assert kv.read(BALANCES_KEY) == {VOTER_1: 1}
        assert kv.read(STATE_KEY)["lastBlock"] == 42
        assert kv.read(DOMAIN_KEY)["eip712"]["domain"]["name"] == "D"
        assert read_cursor(kv) == 42

    def test_persisted_store_reloads_equal(self, kv, store):
        SnapshotPublisher(kv).publish(store, now=150)

        assert load_entity_store(kv) == store

    def test_failed_staging_keeps_previous_snapshot(self, kv, store):
        publisher = SnapshotPublisher(kv)
        publisher.publish(store, now=150)
        broken = store.with_changes(last_block=99)
        publisher.build_snapshot = lambda s, now=None: {STATE_KEY: {"lastBlock": 99}, BALANCES_KEY: object()}

        with pytest.raises(KVStoreError):
            publisher.publish(broken, now=160)

        assert read_cursor(kv) == 42


class TestLedger:
    def test_appends_only_past_high_water_mark(self, kv):
        assert append_ledger(kv, [vote(5, 0), vote(5, 1)]) == 2
        assert append_ledger(kv, [vote(5, 1), vote(6, 0)]) == 1

        lines = kv.read_lines(LEDGER_KEY)
        assert [(l["block"], l["logIndex"]) for l in lines] == [(5, 0), (5, 1), (6, 0)]
        assert lines[0]["t"] == "Voted"
        assert lines[0]["voter"] == VOTER_1

    def test_synthetic_events_stay_out_of_the_ledger(self, kv):
        synthetic = DomainEvent(kind=EventKind.TREASURY_FUNDED, address=SURVEY_A, block_number=9, log_index=-1,
                                block_timestamp=0, tx_hash="0xaa", event_id="TreasuryFunded:x")

        assert append_ledger(kv, [synthetic]) == 0
        assert kv.read_last_line(LEDGER_KEY) is None


class TestPublishedLayout:
    def test_dashboard_file_names_and_state_fields(self, kv, store):
        descriptor = {"eip712": {"domain": {"name": "D", "chainId": 300}}}
        publisher = SnapshotPublisher(kv, domain_descriptor=descriptor,
                                      factory_addresses=["0x" + "AB" * 20], chain_id=300)

        publisher.publish(store, [vote(3, 0)], now=150)

        assert SURVEYS_LIST_KEY == "surveys.list.json"
        assert LEDGER_KEY == "ledger.ndjson"
        state = kv.read("state.json")
        assert state["chainId"] == 300
        assert state["factoryAddress"] == "0x" + "ab" * 20
        assert state["updatedAt"] == 150
        assert kv.read("gates.json")["eip712"]["domain"]["chainId"] == 300
        assert len(kv.read_lines("ledger.ndjson")) == 1
        assert [row["address"] for row in kv.read("surveys.list.json")] == [SURVEY_A, SURVEY_B]

    def test_records_carry_short_field_names(self, kv, store):
        store = store.with_changes(surveys={
            SURVEY_A: store.surveys[SURVEY_A].model_copy(update={"planned_reward": 10**18, "meta_url": "/meta/a.json"}),
        })

        SnapshotPublisher(kv).publish(store, now=150)

        record = kv.read(SURVEYS_KEY)[SURVEY_A]
        assert (record["start"], record["end"]) == (100, 200)
        assert record["plannedRewardWei"] == str(10**18)
        assert record["metaUrl"] == "/meta/a.json"
        assert load_entity_store(kv).surveys[SURVEY_A].meta_url == "/meta/a.json"
