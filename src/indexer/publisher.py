"""
Snapshot publisher.

Turns the entity store into the documents dashboards read and writes them
through a KVStore in one ``write_many`` call, so readers never see a mix of
old and new files. The persisted entity store and cursor travel in the same
batch, which makes the cursor advance atomic with the data it describes.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from src.data_models.indexer_schemas import DomainEvent, EntityStore, SurveyRecord
from src.services.kv_store import KVStore
from src.utils.logger import logger
from src.utils.time_utils import now_sec

SURVEYS_KEY = "surveys.json"
SURVEYS_LIST_KEY = "surveys.list.json"
BALANCES_KEY = "balances.json"
STATE_KEY = "state.json"
DOMAIN_KEY = "gates.json"
LEDGER_KEY = "ledger.ndjson"
STORE_KEY = "_index/entity_store.json"

STATUS_UPCOMING = "upcoming"
STATUS_ACTIVE = "active"
STATUS_PAST = "past"


def compute_status(start_time: int, end_time: int, finalized_at: Optional[int], now: int) -> str:
    """Lifecycle status of a survey at ``now``; a zero bound counts as unknown."""
    if finalized_at:
        return STATUS_PAST
    if end_time and now >= end_time:
        return STATUS_PAST
    if start_time and now < start_time:
        return STATUS_UPCOMING
    return STATUS_ACTIVE


def published_record(record: SurveyRecord) -> Dict[str, Any]:
    """Public form of a record plus the short field names older dashboards read."""
    row = record.to_public()
    row["start"] = record.start_time
    row["end"] = record.end_time
    row["plannedRewardWei"] = str(record.planned_reward)
    return row


def survey_rows(store: EntityStore, now: int) -> List[Dict[str, Any]]:
    rows = []
    records = sorted(store.surveys.values(), key=lambda r: (r.deployed_block or 0, r.address))
    for record in records:
        row = published_record(record)
        row["status"] = compute_status(record.start_time, record.end_time, record.finalized_at, now)
        rows.append(row)
    return rows


def dump_entity_store(store: EntityStore) -> Dict[str, Any]:
    return {
        "lastBlock": store.last_block,
        "surveys": {addr: rec.to_public() for addr, rec in store.surveys.items()},
        "balances": dict(store.balances),
        "voted": sorted(store.voted),
        "seenEvents": sorted(store.seen_events),
    }


def load_entity_store(kv: KVStore) -> EntityStore:
    """Rebuild the store persisted by the last publish (empty store if none)."""
    doc = kv.read(STORE_KEY)
    if not doc:
        return EntityStore()
    surveys = {
        addr: SurveyRecord.model_validate(raw)
        for addr, raw in (doc.get("surveys") or {}).items()
    }
    return EntityStore(
        surveys=surveys,
        balances={k: int(v) for k, v in (doc.get("balances") or {}).items()},
        voted=frozenset(doc.get("voted") or ()),
        seen_events=frozenset(doc.get("seenEvents") or ()),
        last_block=int(doc.get("lastBlock") or 0),
    )


def read_cursor(kv: KVStore) -> int:
    state = kv.read(STATE_KEY, {})
    return int(state.get("lastBlock") or 0)


def ledger_high_water_mark(kv: KVStore) -> Optional[Tuple[int, int]]:
    last = kv.read_last_line(LEDGER_KEY)
    if not last:
        return None
    return int(last.get("block") or 0), int(last.get("logIndex") or 0)


def append_ledger(kv: KVStore, events: Iterable[DomainEvent]) -> int:
    """
    Append on-chain events newer than the ledger's last line.

    Lines are never rewritten; a replayed range finds everything at or below
    the high-water mark already present and appends nothing.
    """
    mark = ledger_high_water_mark(kv)
    fresh = [
        e for e in sorted(events, key=lambda e: e.sort_key)
        if e.log_index >= 0 and (mark is None or e.sort_key > mark)
    ]
    written = kv.append_lines(LEDGER_KEY, (e.to_ledger_entry() for e in fresh))
    if written:
        logger.info("Publisher: appended %d ledger line(s)", written)
    return written


class SnapshotPublisher:
    """Writes the published view of an EntityStore."""

    def __init__(self, kv: KVStore, domain_descriptor: Optional[Dict[str, Any]] = None,
                 factory_addresses: Iterable[str] = (), chain_id: Optional[int] = None):
        self.kv = kv
        self.domain_descriptor = domain_descriptor or {}
        self.factory_addresses = [a.lower() for a in factory_addresses]
        self.chain_id = chain_id

    def build_snapshot(self, store: EntityStore, now: Optional[int] = None) -> Dict[str, Any]:
        now = now_sec() if now is None else now
        state = {
            "lastBlock": store.last_block,
            "updatedAt": now,
            "chainId": self.chain_id,
            "factoryAddress": self.factory_addresses[0] if self.factory_addresses else None,
            "factories": self.factory_addresses,
            "surveys": len(store.surveys),
            "voters": len(store.balances),
        }
        return {
            SURVEYS_KEY: {addr: published_record(rec) for addr, rec in sorted(store.surveys.items())},
            SURVEYS_LIST_KEY: survey_rows(store, now),
            BALANCES_KEY: dict(sorted(store.balances.items())),
            STATE_KEY: state,
            DOMAIN_KEY: dict(self.domain_descriptor, updatedAt=now),
            STORE_KEY: dump_entity_store(store),
        }

    def publish(self, store: EntityStore, events: Iterable[DomainEvent] = (),
                now: Optional[int] = None) -> Dict[str, Any]:
        """
        Append new ledger lines, then write every snapshot document at once.

        Returns:
            The documents that were written
        """
        append_ledger(self.kv, events)
        snapshot = self.build_snapshot(store, now)
        self.kv.write_many(snapshot)
        logger.info(
            "Publisher: published %d survey(s), %d voter(s) at block %d",
            len(store.surveys), len(store.balances), store.last_block,
        )
        return snapshot
