"""
One indexer invocation: scan, reduce, enrich, publish, push.

The pipeline is a single sequential job. It must not run concurrently with
itself against the same store; the cursor read and the final publish are
not one transaction.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from src.data_models.indexer_schemas import DomainEvent, EntityStore
from src.indexer import enrichment
from src.indexer.publisher import SnapshotPublisher, load_entity_store, read_cursor, SURVEYS_LIST_KEY, STATE_KEY
from src.indexer.push_queue import PushQueue
from src.indexer.reducer import reduce_all
from src.indexer.scanner import CheckpointedScanner
from src.services.kv_store import KVStore
from src.utils.logger import logger


@dataclass
class RunSummary:
    cursor_before: int
    cursor_after: int
    latest_block: int
    events_applied: int = 0
    new_surveys: List[str] = field(default_factory=list)
    skipped_batches: List[Tuple[int, int]] = field(default_factory=list)
    funded: List[str] = field(default_factory=list)


class IndexerPipeline:
    def __init__(
        self,
        ledger,
        kv: KVStore,
        scanner: CheckpointedScanner,
        publisher: SnapshotPublisher,
        metadata_source: Optional[enrichment.MetadataSource] = None,
        push_queue: Optional[PushQueue] = None,
        funding_dir: Optional[str] = None,
        funding_chain_id: int = 300,
        treasury: str = "",
        min_confirmations: int = 2,
        refresh_balances: bool = True,
    ):
        self.ledger = ledger
        self.kv = kv
        self.scanner = scanner
        self.publisher = publisher
        self.metadata_source = metadata_source
        self.push_queue = push_queue
        self.funding_dir = funding_dir
        self.funding_chain_id = funding_chain_id
        self.treasury = treasury
        self.min_confirmations = min_confirmations
        self.refresh_balances = refresh_balances

    def _scan(self, store: EntityStore, cursor: int, latest: int,
              summary: RunSummary, events: List[DomainEvent]) -> EntityStore:
        known_before = set(store.surveys)
        for batch in self.scanner.iter_batches(cursor, latest, known_before):
            applied: List[DomainEvent] = []
            store = reduce_all(store, batch.events, applied)
            store = store.with_changes(last_block=batch.to_block)
            events.extend(batch.events)
            summary.events_applied += len(applied)
            if batch.skipped:
                summary.skipped_batches.append((batch.from_block, batch.to_block))
            logger.debug("Pipeline: folded blocks %d-%d (%d new event(s))",
                         batch.from_block, batch.to_block, len(applied))
        summary.new_surveys = sorted(set(store.surveys) - known_before)
        return store

    def _enrich(self, store: EntityStore, latest: int, summary: RunSummary) -> EntityStore:
        backfill = self.scanner.backfill_schedules(store.surveys, latest)
        if backfill:
            store = reduce_all(store, backfill)

        if self.metadata_source is not None:
            store = enrichment.enrich_metadata(store, self.metadata_source)

        if self.funding_dir:
            submissions = enrichment.load_funding_submissions(self.funding_dir, self.funding_chain_id)
            funded = enrichment.verify_funding(
                store, self.ledger, submissions, self.treasury, self.min_confirmations, latest,
            )
            if funded:
                store = reduce_all(store, funded)
                summary.funded = [e.survey_address for e in funded]

        if self.refresh_balances:
            store = enrichment.refresh_balances(store, self.ledger)
        return store

    def run_once(self, now: Optional[int] = None) -> RunSummary:
        """
        Bring the published snapshot up to the ledger's latest height.

        Raises:
            DiscoveryError: Factory discovery failed; nothing was written
            LedgerQueryError: The latest height could not be read
        """
        cursor = read_cursor(self.kv)
        store = load_entity_store(self.kv).with_changes(last_block=cursor)
        latest = self.ledger.latest_block_height()
        summary = RunSummary(cursor_before=cursor, cursor_after=cursor, latest_block=latest)

        events: List[DomainEvent] = []
        store = self._scan(store, cursor, latest, summary, events)
        store = self._enrich(store, latest, summary)

        snapshot = self.publisher.publish(store, events, now=now)
        summary.cursor_after = store.last_block

        if self.push_queue is not None:
            self.push_queue.submit({
                "surveys": snapshot[SURVEYS_LIST_KEY],
                "state": snapshot[STATE_KEY],
            })

        logger.info(
            "Pipeline: cursor %d -> %d (latest %d), %d event(s), %d new survey(s), %d skipped batch(es)",
            summary.cursor_before, summary.cursor_after, latest, summary.events_applied,
            len(summary.new_surveys), len(summary.skipped_batches),
        )
        return summary


def build_pipeline() -> IndexerPipeline:
    """Wire a pipeline from ``src.config.common_settings``."""
    from src.attestation.signer import domain_descriptor
    from src.config import common_settings as settings
    from src.indexer.ledger_client import Web3LedgerClient
    from src.services.kv_store import create_store

    ledger = Web3LedgerClient(
        settings.RPC_URL,
        timeout=settings.RPC_TIMEOUT_SECONDS,
        max_retries=settings.RPC_MAX_RETRIES,
        backoff=settings.RPC_BACKOFF_SECONDS,
    )
    kv = create_store(settings.STORE_BACKEND, settings.OUTPUT_DIR)
    scanner = CheckpointedScanner(
        ledger,
        settings.FACTORY_ADDRESSES,
        batch_size=settings.SCAN_BATCH_SIZE,
        address_chunk_size=settings.ADDRESS_CHUNK_SIZE,
        start_block=settings.START_BLOCK,
        tail_window=settings.TAIL_WINDOW_BLOCKS,
    )
    publisher = SnapshotPublisher(
        kv,
        domain_descriptor=domain_descriptor(
            settings.ELIGIBILITY_DOMAIN_NAME,
            settings.ELIGIBILITY_DOMAIN_VERSION,
            settings.INDEXER_CHAIN_ID,
            settings.GATE_ADDR or None,
        ),
        factory_addresses=settings.FACTORY_ADDRESSES,
        chain_id=settings.INDEXER_CHAIN_ID,
    )
    metadata = enrichment.MetadataSource(
        directory=settings.METADATA_DIR,
        base_url=settings.METADATA_BASE_URL,
        timeout=settings.METADATA_TIMEOUT_SECONDS,
        public_path=settings.METADATA_PUBLIC_PATH,
    )
    push = None
    if settings.DOWNSTREAM_URL:
        push = PushQueue(
            settings.DOWNSTREAM_URL,
            token=settings.DOWNSTREAM_TOKEN,
            max_retries=settings.PUSH_MAX_RETRIES,
            timeout=settings.PUSH_TIMEOUT_SECONDS,
        )
    return IndexerPipeline(
        ledger, kv, scanner, publisher,
        metadata_source=metadata,
        push_queue=push,
        funding_dir=settings.FUNDING_DIR,
        funding_chain_id=settings.INDEXER_CHAIN_ID,
        treasury=settings.TREASURY_ADDRESS,
        min_confirmations=settings.MIN_CONFIRMATIONS,
    )
