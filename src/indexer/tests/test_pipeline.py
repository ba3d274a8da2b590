"""End-to-end pipeline runs against an in-memory ledger and a file store."""
import json

import pytest

from src.indexer import abi
from src.indexer.__main__ import main
from src.indexer.enrichment import MetadataSource, metadata_hash
from src.indexer.errors import DiscoveryError
from src.indexer.pipeline import IndexerPipeline
from src.indexer.publisher import LEDGER_KEY, STATE_KEY, SURVEYS_KEY, SnapshotPublisher, load_entity_store
from src.indexer.scanner import CheckpointedScanner
from src.services.kv_store import FileKVStore

from .fakes import BASE_TS, CREATOR, FACTORY, SURVEY_A, TREASURY, VOTER_1, VOTER_2, FakeLedger, make_log

META = {"title": "Bridges", "rewardWei": "100"}
FUND_TX = "0x" + "f0" * 32


def chain_logs():
    meta_hash = bytes.fromhex(metadata_hash(META)[2:])
    deploy = {
        "survey": SURVEY_A, "creator": CREATOR, "startTime": BASE_TS, "endTime": BASE_TS + 10_000,
        "surveyType": 0, "metaHash": meta_hash, "plannedReward": 100, "initialValue": 0,
    }
    return [
        make_log(abi.SURVEY_DEPLOYED_EXTENDED, deploy, FACTORY, 3),
        make_log(abi.QUESTION_ADDED, {"index": 0, "text": "Which bridge?"}, SURVEY_A, 4),
        make_log(abi.VOTED, {"voter": VOTER_1}, SURVEY_A, 8),
        make_log(abi.PRIZE_FUNDED, {"funder": CREATOR, "amount": 60}, SURVEY_A, 9),
        make_log(abi.PRIZE_FUNDED, {"funder": CREATOR, "amount": 40}, SURVEY_A, 14),
        make_log(abi.VOTED, {"voter": VOTER_2}, SURVEY_A, 14, 1),
    ]


@pytest.fixture
def ledger():
    ledger = FakeLedger(logs=chain_logs(), latest=20, balances={SURVEY_A: 77})
    ledger.transactions[FUND_TX] = {"from": CREATOR, "to": TREASURY, "value": 100}
    ledger.receipts[FUND_TX] = {"status": 1, "blockNumber": 15}
    return ledger


@pytest.fixture
def workspace(tmp_path):
    meta_dir = tmp_path / "meta"
    meta_dir.mkdir()
    (meta_dir / f"{SURVEY_A}.json").write_text(json.dumps(META), encoding="utf-8")
    funding_dir = tmp_path / "funding" / "300"
    funding_dir.mkdir(parents=True)
    (funding_dir / f"{SURVEY_A}.json").write_text(
        json.dumps({"survey": SURVEY_A, "txHash": FUND_TX, "createdAt": 0}), encoding="utf-8")
    return tmp_path


def make_pipeline(ledger, workspace, **kwargs):
    kv = FileKVStore(str(workspace / "api"))
    scanner = CheckpointedScanner(ledger, [FACTORY], batch_size=5)
    return IndexerPipeline(
        ledger, kv, scanner, SnapshotPublisher(kv, factory_addresses=[FACTORY]),
        metadata_source=MetadataSource(directory=str(workspace / "meta")),
        funding_dir=str(workspace / "funding"),
        treasury=TREASURY,
        min_confirmations=2,
        **kwargs,
    )


class TestIndexerPipeline:
    def test_first_run_publishes_enriched_snapshot(self, ledger, workspace):
        pipeline = make_pipeline(ledger, workspace)

        summary = pipeline.run_once(now=BASE_TS + 5)

        assert summary.cursor_after == 20
        assert summary.new_surveys == [SURVEY_A]
        assert summary.funded == [SURVEY_A]
        survey = pipeline.kv.read(SURVEYS_KEY)[SURVEY_A]
        assert survey["votes"] == 2
        assert survey["prizeFunded"] == "100"
        assert survey["valid"] is True
        assert survey["title"] == "Bridges"
        assert survey["fundedByTreasury"] is True
        assert survey["balance"] == "77"
        assert survey["metaUrl"] == f"/meta/{SURVEY_A}.json"
        assert len(pipeline.kv.read_lines(LEDGER_KEY)) == 6

    def test_second_run_without_new_blocks_is_stable(self, ledger, workspace):
        pipeline = make_pipeline(ledger, workspace)
        pipeline.run_once(now=BASE_TS + 5)
        first = load_entity_store(pipeline.kv)

        summary = pipeline.run_once(now=BASE_TS + 6)

        assert summary.events_applied == 0
        assert load_entity_store(pipeline.kv) == first

    def test_rescanning_a_range_does_not_double_count(self, ledger, workspace):
        pipeline = make_pipeline(ledger, workspace)
        pipeline.run_once(now=BASE_TS + 5)
        first = load_entity_store(pipeline.kv)

        state = pipeline.kv.read(STATE_KEY)
        pipeline.kv.write_json(STATE_KEY, dict(state, lastBlock=0))
        pipeline.run_once(now=BASE_TS + 6)

        again = load_entity_store(pipeline.kv)
        assert again.surveys[SURVEY_A].prize_funded == 100
        assert again.balances == {VOTER_1: 1, VOTER_2: 1}
        assert again == first
        assert len(pipeline.kv.read_lines(LEDGER_KEY)) == 6

    def test_discovery_failure_writes_nothing(self, ledger, workspace):
        ledger.fail_addresses = {FACTORY}
        pipeline = make_pipeline(ledger, workspace)

        with pytest.raises(DiscoveryError):
            pipeline.run_once()

        assert pipeline.kv.read(STATE_KEY) is None

    def test_push_queue_receives_snapshot(self, ledger, workspace):
        class RecordingQueue:
            def __init__(self):
                self.payloads = []

            def submit(self, payload):
                self.payloads.append(payload)

        queue = RecordingQueue()
        pipeline = make_pipeline(ledger, workspace, push_queue=queue)

        pipeline.run_once(now=BASE_TS + 5)

        assert queue.payloads[0]["state"]["lastBlock"] == 20
        assert queue.payloads[0]["surveys"][0]["address"] == SURVEY_A


class TestCommandLine:
    def test_reset_moves_cursor(self, ledger, workspace, monkeypatch, capsys):
        pipeline = make_pipeline(ledger, workspace)
        pipeline.run_once(now=BASE_TS + 5)
        monkeypatch.setattr("src.indexer.__main__._open_store", lambda: pipeline.kv)

        assert main(["reset", "--to", "7"]) == 0
        assert main(["status"]) == 0

        assert json.loads(capsys.readouterr().out)["lastBlock"] == 7
        assert load_entity_store(pipeline.kv).surveys[SURVEY_A].votes == 2

    def test_reset_rejects_negative_height(self):
        assert main(["reset", "--to", "-1"]) == 2
