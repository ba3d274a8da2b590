"""
Checkpointed two-pass scanner.

Pass 1 reads only the factory address(es) over the whole pending range and
discovers new survey contracts. Pass 2 walks the same range batch by batch,
reading instance events for every known survey. Batches are yielded in
strictly increasing height order; the caller advances its cursor after it
has folded a batch.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from src.data_models.indexer_schemas import DomainEvent, EventKind
from src.indexer.abi import END_GETTERS, FACTORY_CANDIDATES, START_GETTERS, SURVEY_CANDIDATES
from src.indexer.decoder import EventDecoder
from src.indexer.errors import ConfigurationError, DiscoveryError, LedgerQueryError
from src.utils.logger import logger
from src.utils.time_utils import normalize_timestamp


@dataclass
class ScanBatch:
    from_block: int
    to_block: int
    events: List[DomainEvent] = field(default_factory=list)
    skipped: bool = False


@dataclass
class ScanResult:
    new_cursor: int
    events: List[DomainEvent]
    discovered: Set[str]
    skipped_batches: List[Tuple[int, int]]


class CheckpointedScanner:
    """Drives batched range queries over a ledger client."""

    def __init__(
        self,
        ledger,
        factory_addresses: Sequence[str],
        batch_size: int = 500,
        address_chunk_size: int = 50,
        start_block: int = 0,
        tail_window: int = 0,
    ):
        if not factory_addresses:
            raise ConfigurationError("At least one factory address is required")
        self.ledger = ledger
        self.factory_addresses = [a.lower() for a in factory_addresses]
        self.batch_size = max(1, int(batch_size))
        self.address_chunk_size = max(1, int(address_chunk_size))
        self.start_block = max(0, int(start_block))
        self.tail_window = max(0, int(tail_window))
        self.factory_decoder = EventDecoder(FACTORY_CANDIDATES, family="factory")
        self.survey_decoder = EventDecoder(SURVEY_CANDIDATES, family="survey")

    # ------------------------------------------------------------------
    # Range planning
    # ------------------------------------------------------------------
    def effective_start(self, cursor: int, latest: int) -> int:
        tail_floor = latest - self.tail_window + 1 if self.tail_window else 0
        return max(cursor + 1, self.start_block, tail_floor)

    def batches(self, start: int, latest: int) -> Iterator[Tuple[int, int]]:
        current = start
        while current <= latest:
            end = min(current + self.batch_size - 1, latest)
            yield current, end
            current = end + 1

    # ------------------------------------------------------------------
    # Pass 1: discovery
    # ------------------------------------------------------------------
    def discover(self, start: int, latest: int) -> List[DomainEvent]:
        """
        Read deploy events from the factories over ``[start, latest]``.

        Raises:
            DiscoveryError: If any batch cannot be read. Nothing is advanced.
        """
        events: List[DomainEvent] = []
        for from_block, to_block in self.batches(start, latest):
            try:
                logs = self.ledger.get_logs(from_block, to_block, self.factory_addresses)
            except LedgerQueryError as e:
                raise DiscoveryError(
                    f"Factory discovery failed for blocks {from_block}-{to_block}: {e}"
                ) from e
            factories = set(self.factory_addresses)
            for log in sorted(logs, key=lambda l: (l["blockNumber"], l["logIndex"])):
                if log["address"] not in factories:
                    continue
                try:
                    event = self._decode(self.factory_decoder, log)
                except LedgerQueryError as e:
                    raise DiscoveryError(
                        f"No timestamp for deployment block {log['blockNumber']}: {e}"
                    ) from e
                if event is not None and event.kind == EventKind.SURVEY_DEPLOYED and "survey" in event.args:
                    events.append(event)
        if events:
            logger.info("Scanner: discovered %d survey deployment(s) in %d-%d", len(events), start, latest)
        return events

    # ------------------------------------------------------------------
    # Pass 2: instance events
    # ------------------------------------------------------------------
    def _query_chunk(self, from_block: int, to_block: int, chunk: List[str]) -> Optional[List[dict]]:
        try:
            return self.ledger.get_logs(from_block, to_block, chunk)
        except LedgerQueryError as e:
            logger.warning(
                "Scanner: multi-address getLogs rejected for %d-%d (%d addresses): %s; querying per address",
                from_block, to_block, len(chunk), e,
            )

        logs: List[dict] = []
        try:
            for address in chunk:
                logs.extend(self.ledger.get_logs(from_block, to_block, address))
            return logs
        except LedgerQueryError as e:
            logger.warning(
                "Scanner: per-address getLogs failed for %d-%d: %s; falling back to unfiltered range",
                from_block, to_block, e,
            )

        try:
            return self.ledger.get_logs(from_block, to_block, None)
        except LedgerQueryError as e:
            logger.error("Scanner: unfiltered getLogs failed for %d-%d: %s", from_block, to_block, e)
            return None

    def fetch_instance_logs(self, from_block: int, to_block: int, addresses: Sequence[str]) -> Optional[List[dict]]:
        """Logs of ``addresses`` in one batch, or None if every fallback failed."""
        wanted = set(addresses)
        collected: Dict[Tuple[str, int], dict] = {}
        ordered = sorted(wanted)
        for i in range(0, len(ordered), self.address_chunk_size):
            chunk = ordered[i:i + self.address_chunk_size]
            logs = self._query_chunk(from_block, to_block, chunk)
            if logs is None:
                return None
            for log in logs:
                # Fallback queries can return anything; keep only addresses of interest
                if log["address"] in wanted:
                    collected[(log["transactionHash"], log["logIndex"])] = log
        return sorted(collected.values(), key=lambda l: (l["blockNumber"], l["logIndex"]))

    def _decode(self, decoder: EventDecoder, log: dict) -> Optional[DomainEvent]:
        """
        Decode one log and stamp it with its block time.

        Raises:
            LedgerQueryError: The block timestamp could not be read
        """
        decoded = decoder.decode(log)
        if decoded is None:
            return None
        ts = self.ledger.get_block_timestamp(log["blockNumber"])
        return decoder.to_domain_event(decoded, log, ts)

    def _decode_instance_logs(self, logs: List[dict]) -> List[DomainEvent]:
        events: List[DomainEvent] = []
        for log in logs:
            event = self._decode(self.survey_decoder, log)
            if event is not None:
                events.append(event)
        return events

    def iter_batches(self, cursor: int, latest: int, known_addresses: Iterable[str]) -> Iterator[ScanBatch]:
        """
        Yield one ScanBatch per block batch, lowest heights first.

        Discovery runs to completion before the first batch is yielded, so a
        discovery failure leaves the caller's cursor untouched.
        """
        start = self.effective_start(cursor, latest)
        if start > latest:
            logger.info("Scanner: no new blocks (cursor=%d, latest=%d)", cursor, latest)
            return

        logger.info("Scanner: range %d -> %d", start, latest)
        deployments = self.discover(start, latest)
        known = {a.lower() for a in known_addresses}
        known.update(e.survey_address for e in deployments)

        for from_block, to_block in self.batches(start, latest):
            batch = ScanBatch(from_block, to_block)
            batch.events.extend(e for e in deployments if from_block <= e.block_number <= to_block)

            if known:
                logs = self.fetch_instance_logs(from_block, to_block, sorted(known))
                if logs is None:
                    logger.error(
                        "Scanner: skipping instance events for blocks %d-%d after all fallbacks failed",
                        from_block, to_block,
                    )
                    batch.skipped = True
                else:
                    try:
                        batch.events.extend(self._decode_instance_logs(logs))
                    except LedgerQueryError as e:
                        # No event of the batch is folded without its real block time
                        logger.error(
                            "Scanner: skipping instance events for blocks %d-%d, block timestamp unavailable: %s",
                            from_block, to_block, e,
                        )
                        batch.skipped = True

            batch.events.sort(key=lambda e: e.sort_key)
            yield batch

    def scan(self, cursor: int, latest: int, known_addresses: Iterable[str] = ()) -> ScanResult:
        """Run both passes and return ``(new_cursor, events)`` plus bookkeeping."""
        events: List[DomainEvent] = []
        discovered: Set[str] = set()
        skipped: List[Tuple[int, int]] = []
        new_cursor = cursor
        for batch in self.iter_batches(cursor, latest, known_addresses):
            events.extend(batch.events)
            discovered.update(
                e.survey_address for e in batch.events if e.kind == EventKind.SURVEY_DEPLOYED
            )
            if batch.skipped:
                skipped.append((batch.from_block, batch.to_block))
            new_cursor = batch.to_block
        return ScanResult(new_cursor=new_cursor, events=events, discovered=discovered, skipped_batches=skipped)

    # ------------------------------------------------------------------
    # Schedule backfill
    # ------------------------------------------------------------------
    def backfill_schedules(self, surveys: Dict[str, object], latest: int) -> List[DomainEvent]:
        """
        Read start/end getters for surveys that still have no schedule.

        Returns BackfilledSchedule events; unreadable contracts are skipped.
        """
        events: List[DomainEvent] = []
        for address, record in sorted(surveys.items()):
            if getattr(record, "start_time", 0) and getattr(record, "end_time", 0):
                continue
            try:
                start = self.ledger.call_uint(address, START_GETTERS)
                end = self.ledger.call_uint(address, END_GETTERS)
            except LedgerQueryError as e:
                logger.warning("Scanner: schedule backfill failed for %s: %s", address, e)
                continue
            if not start and not end:
                continue
            start_ts = normalize_timestamp(start)
            end_ts = normalize_timestamp(end)
            events.append(DomainEvent(
                kind=EventKind.BACKFILLED_SCHEDULE,
                address=address,
                block_number=latest,
                log_index=-1,
                block_timestamp=0,
                tx_hash="",
                args={"startTime": start_ts, "endTime": end_ts},
                event_id=f"BackfilledSchedule:{address}:{start_ts}:{end_ts}",
            ))
        return events
