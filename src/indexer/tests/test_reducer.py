"""Tests for the state reducer."""
import pytest

from src.data_models.indexer_schemas import DomainEvent, EntityStore, EventKind
from src.indexer.reducer import reduce, reduce_all

from .fakes import BASE_TS, CREATOR, SURVEY_A, SURVEY_B, VOTER_1, VOTER_2, tx_hash


def event(kind, address, block, log_index=0, ts=None, event_id=None, **args):
    return DomainEvent(
        kind=kind,
        address=address,
        block_number=block,
        log_index=log_index,
        block_timestamp=BASE_TS + block if ts is None else ts,
        tx_hash=tx_hash(block, log_index),
        args=args,
        event_id=event_id,
    )


def deployed(survey=SURVEY_A, block=1, **extra):
    args = dict(survey=survey, creator=CREATOR, startTime=BASE_TS, endTime=BASE_TS + 100,
                surveyType=0, metaHash="0x01", plannedReward=None, initialValue=None)
    args.update(extra)
    return event(EventKind.SURVEY_DEPLOYED, "0x" + "fa" * 20, block, **args)


@pytest.fixture
def history():
    return [
        deployed(plannedReward=1000),
        event(EventKind.QUESTION_ADDED, SURVEY_A, 2, index=0, text="Q0"),
        event(EventKind.VOTED, SURVEY_A, 3, voter=VOTER_1),
        event(EventKind.VOTED, SURVEY_A, 3, log_index=1, voter=VOTER_2),
        event(EventKind.PRIZE_FUNDED, SURVEY_A, 4, funder=CREATOR, amount=300),
        event(EventKind.PRIZE_FUNDED, SURVEY_A, 5, funder=CREATOR, amount=700),
        event(EventKind.PRIZE_SWEPT, SURVEY_A, 6, to=CREATOR, amount=250),
        event(EventKind.FINALIZED, SURVEY_A, 7, rulesHash="0x02", resultsHash="0x03",
              claimOpenAt=BASE_TS + 200, claimDeadline=None),
    ]


class TestReduce:
    def test_folds_full_history(self, history):
        store = reduce_all(EntityStore(), history)
        record = store.surveys[SURVEY_A]

        assert record.creator == CREATOR
        assert record.planned_reward == 1000
        assert record.questions == {"0": "Q0"}
        assert record.votes == 2
        assert record.prize_funded == 1000
        assert record.prize_swept == 250
        assert record.finalized_at == BASE_TS + 7
        assert record.claim_open_at == BASE_TS + 200
        assert record.claim_deadline is None
        assert store.balances == {VOTER_1: 1, VOTER_2: 1}

    def test_replaying_history_changes_nothing(self, history):
        once = reduce_all(EntityStore(), history)
        twice = reduce_all(once, history)

        assert twice == once

    def test_input_store_is_not_mutated(self, history):
        empty = EntityStore()
        reduce_all(empty, history)

        assert empty.surveys == {}
        assert empty.balances == {}
        assert empty.seen_events == frozenset()

    def test_prize_sum_is_independent_of_batching(self, history):
        funded = [e for e in history if e.kind != EventKind.PRIZE_SWEPT]
        one_batch = reduce_all(EntityStore(), funded)
        store = EntityStore()
        for e in funded:
            store = reduce(store, e)

        assert store.surveys[SURVEY_A].prize_funded == 1000
        assert store == one_batch

    def test_applied_lists_only_new_events(self, history):
        store = reduce_all(EntityStore(), history[:3])
        applied = []
        reduce_all(store, history, applied)

        assert applied == history[3:]


class TestVotes:
    def test_same_voter_counts_once_per_survey(self):
        store = reduce_all(EntityStore(), [
            deployed(),
            event(EventKind.VOTED, SURVEY_A, 2, voter=VOTER_1),
            event(EventKind.VOTED, SURVEY_A, 3, voter=VOTER_1),
        ])

        assert store.surveys[SURVEY_A].votes == 1
        assert store.balances[VOTER_1] == 1

    def test_balance_spans_surveys(self):
        store = reduce_all(EntityStore(), [
            deployed(),
            deployed(survey=SURVEY_B, block=2),
            event(EventKind.VOTED, SURVEY_A, 3, voter=VOTER_1),
            event(EventKind.VOTED, SURVEY_B, 4, voter=VOTER_1),
        ])

        assert store.balances[VOTER_1] == 2


class TestSyntheticEvents:
    def test_backfill_only_fills_missing_schedule(self):
        store = reduce_all(EntityStore(), [deployed(startTime=0, endTime=BASE_TS + 100)])
        backfill = event(EventKind.BACKFILLED_SCHEDULE, SURVEY_A, 10, log_index=-1, ts=0,
                         event_id="BackfilledSchedule:a", startTime=BASE_TS - 5, endTime=BASE_TS + 999)

        record = reduce(store, backfill).surveys[SURVEY_A]

        assert record.start_time == BASE_TS - 5
        assert record.end_time == BASE_TS + 100

    def test_survey_level_created_keeps_known_schedule(self):
        store = reduce_all(EntityStore(), [
            deployed(),
            event(EventKind.SURVEY_DEPLOYED, SURVEY_A, 2, creator=CREATOR, metaHash="0x09", source="SurveyCreated"),
        ])
        record = store.surveys[SURVEY_A]

        assert record.start_time == BASE_TS
        assert record.meta_hash == "0x09"
        assert record.deployed_block == 1

    def test_treasury_funding_is_recorded_once(self):
        store = reduce_all(EntityStore(), [deployed()])
        first = event(EventKind.TREASURY_FUNDED, SURVEY_A, 5, log_index=-1, event_id="TreasuryFunded:a",
                      txHash="0xaaa", value=1)
        second = event(EventKind.TREASURY_FUNDED, SURVEY_A, 6, log_index=-1, event_id="TreasuryFunded:b",
                       txHash="0xbbb", value=1)

        record = reduce_all(store, [first, second]).surveys[SURVEY_A]

        assert record.funded_by_treasury is True
        assert record.funding_tx == "0xaaa"

    def test_negative_prize_amount_is_ignored(self):
        store = reduce_all(EntityStore(), [
            deployed(),
            event(EventKind.PRIZE_FUNDED, SURVEY_A, 2, funder=CREATOR, amount=-5),
        ])

        assert store.surveys[SURVEY_A].prize_funded == 0
