"""
State reducer: folds domain events into the entity store.

``reduce`` and ``reduce_all`` never mutate their input store. Scalar fields
use keyed overwrite; ``prizeFunded``/``prizeSwept`` and vote balances are the
only additive fields, and every event key is remembered in ``seen_events``
so replaying a block range is a no-op.

Vote balances are keyed by voter address alone, so they count distinct
surveys a voter took part in across the whole factory.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Set

from src.data_models.indexer_schemas import DomainEvent, EntityStore, EventKind, SurveyRecord
from src.utils.logger import logger


class _WorkingState:
    """Mutable copy of an EntityStore used while folding one batch."""

    def __init__(self, store: EntityStore):
        self.surveys: Dict[str, SurveyRecord] = dict(store.surveys)
        self.balances: Dict[str, int] = dict(store.balances)
        self.voted: Set[str] = set(store.voted)
        self.seen: Set[str] = set(store.seen_events)
        self.last_block = store.last_block

    def record(self, address: str) -> SurveyRecord:
        address = address.lower()
        existing = self.surveys.get(address)
        if existing is None:
            return SurveyRecord(address=address)
        return existing

    def put(self, record: SurveyRecord, **changes: Any) -> None:
        self.surveys[record.address] = record.model_copy(update=changes)

    def freeze(self) -> EntityStore:
        return EntityStore(
            surveys=self.surveys,
            balances=self.balances,
            voted=frozenset(self.voted),
            seen_events=frozenset(self.seen),
            last_block=self.last_block,
        )


def _not_none(**values: Any) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def _apply_survey_deployed(state: _WorkingState, event: DomainEvent) -> None:
    args = event.args
    record = state.record(event.survey_address)
    changes = _not_none(
        creator=(args.get("creator") or "").lower() or None,
        meta_hash=args.get("metaHash") or None,
        survey_type=args.get("surveyType"),
        planned_reward=args.get("plannedReward"),
        initial_value=args.get("initialValue"),
    )
    # A survey-level SurveyCreated carries no schedule; keep a known one
    if args.get("startTime"):
        changes["start_time"] = args["startTime"]
    if args.get("endTime"):
        changes["end_time"] = args["endTime"]
    if "survey" in args:
        changes["deployed_block"] = event.block_number
        changes["deployed_tx"] = event.tx_hash
    state.put(record, **changes)


def _apply_question_added(state: _WorkingState, event: DomainEvent) -> None:
    record = state.record(event.survey_address)
    questions = dict(record.questions)
    questions[str(event.args["index"])] = event.args["text"]
    state.put(record, questions=questions)


def _apply_voted(state: _WorkingState, event: DomainEvent) -> None:
    survey = event.survey_address
    voter = str(event.args["voter"]).lower()
    pair = f"{survey}|{voter}"
    if pair in state.voted:
        return
    state.voted.add(pair)
    state.balances[voter] = state.balances.get(voter, 0) + 1
    record = state.record(survey)
    state.put(record, votes=record.votes + 1)


def _apply_finalized(state: _WorkingState, event: DomainEvent) -> None:
    args = event.args
    record = state.record(event.survey_address)
    changes = _not_none(
        rules_hash=args.get("rulesHash"),
        results_hash=args.get("resultsHash"),
        claim_open_at=args.get("claimOpenAt"),
        claim_deadline=args.get("claimDeadline"),
    )
    changes["finalized_at"] = event.block_timestamp or record.finalized_at
    state.put(record, **changes)


def _apply_prize(state: _WorkingState, event: DomainEvent, field_name: str) -> None:
    amount = int(event.args.get("amount") or 0)
    if amount < 0:
        logger.warning("Reducer: ignoring negative %s amount in %s", event.kind.value, event.key)
        return
    record = state.record(event.survey_address)
    state.put(record, **{field_name: getattr(record, field_name) + amount})


def _apply_treasury_funded(state: _WorkingState, event: DomainEvent) -> None:
    record = state.record(event.survey_address)
    if record.funded_by_treasury:
        return
    state.put(record, funded_by_treasury=True, funding_tx=event.args.get("txHash") or event.tx_hash)


def _apply_backfilled_schedule(state: _WorkingState, event: DomainEvent) -> None:
    record = state.record(event.survey_address)
    changes = {}
    if not record.start_time and event.args.get("startTime"):
        changes["start_time"] = event.args["startTime"]
    if not record.end_time and event.args.get("endTime"):
        changes["end_time"] = event.args["endTime"]
    if changes:
        state.put(record, **changes)


_HANDLERS = {
    EventKind.SURVEY_DEPLOYED: _apply_survey_deployed,
    EventKind.QUESTION_ADDED: _apply_question_added,
    EventKind.VOTED: _apply_voted,
    EventKind.FINALIZED: _apply_finalized,
    EventKind.PRIZE_FUNDED: lambda s, e: _apply_prize(s, e, "prize_funded"),
    EventKind.PRIZE_SWEPT: lambda s, e: _apply_prize(s, e, "prize_swept"),
    EventKind.TREASURY_FUNDED: _apply_treasury_funded,
    EventKind.BACKFILLED_SCHEDULE: _apply_backfilled_schedule,
}


def _apply(state: _WorkingState, event: DomainEvent) -> bool:
    if event.key in state.seen:
        return False
    handler = _HANDLERS.get(event.kind)
    if handler is None:
        logger.warning("Reducer: no handler for %s", event.kind)
        return False
    handler(state, event)
    state.seen.add(event.key)
    return True


def reduce(store: EntityStore, event: DomainEvent) -> EntityStore:
    """Apply one event and return the resulting store."""
    return reduce_all(store, [event])


def reduce_all(
    store: EntityStore,
    events: Iterable[DomainEvent],
    applied: Optional[list] = None,
) -> EntityStore:
    """
    Fold ``events`` into ``store`` in order.

    Args:
        store: Prior store (left untouched)
        events: Events in (block, logIndex) order
        applied: If given, receives the events that were not replays

    Returns:
        The new store
    """
    state = _WorkingState(store)
    for event in events:
        if _apply(state, event) and applied is not None:
            applied.append(event)
    return state.freeze()
