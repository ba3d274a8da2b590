"""
Enrichment stage: off-chain metadata join, treasury funding verification and
live balance refresh.

Every step is idempotent and safe to re-run each cycle. Metadata and balances
are point-in-time fields copied onto records directly; accepted funding is
emitted as ``TreasuryFunded`` events so it flows through the reducer like
any other fact.
"""
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from eth_utils import keccak, to_hex
from web3 import Web3

from src.data_models.indexer_schemas import DomainEvent, EntityStore, EventKind, SurveyRecord
from src.indexer.errors import LedgerQueryError
from src.utils.logger import logger
from src.utils.time_utils import normalize_timestamp

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class MetadataFetchError(Exception):
    """Metadata could not be read this cycle (not the same as absent)."""


# ----------------------------------------------------------------------
# Metadata join
# ----------------------------------------------------------------------
class MetadataSource:
    """
    Finds the metadata document of a survey by convention path.

    Looks for ``<directory>/<address>.json`` first, then
    ``<base_url>/<address>.json`` when a base URL is configured. Published
    records point at the base URL, or at ``<public_path>/<address>.json``
    on the dashboard host.
    """

    def __init__(self, directory: Optional[str] = None, base_url: str = "", timeout: float = 10.0,
                 client: Optional[httpx.Client] = None, public_path: str = "/meta"):
        self.directory = directory
        self.base_url = (base_url or "").rstrip("/")
        self.public_path = (public_path or "").rstrip("/")
        self.client = client or (httpx.Client(timeout=timeout) if self.base_url else None)

    def url_for(self, address: str) -> str:
        return f"{self.base_url or self.public_path}/{address.lower()}.json"

    def fetch(self, address: str) -> Optional[Dict[str, Any]]:
        """
        Returns:
            The parsed document, or None if no document exists

        Raises:
            MetadataFetchError: If a document exists but could not be read
        """
        address = address.lower()
        if self.directory:
            path = os.path.join(self.directory, f"{address}.json")
            if os.path.exists(path):
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        doc = json.load(f)
                except (OSError, ValueError) as e:
                    raise MetadataFetchError(f"{path}: {e}") from e
                return doc if isinstance(doc, dict) else None

        if not self.client:
            return None

        url = f"{self.base_url}/{address}.json"
        try:
            response = self.client.get(url)
        except httpx.HTTPError as e:
            raise MetadataFetchError(f"{url}: {e}") from e
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise MetadataFetchError(f"{url}: HTTP {response.status_code}")
        try:
            doc = response.json()
        except ValueError as e:
            raise MetadataFetchError(f"{url}: invalid JSON ({e})") from e
        return doc if isinstance(doc, dict) else None

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


def canonical_metadata_bytes(doc: Dict[str, Any]) -> bytes:
    """Deterministic encoding: sorted keys, no whitespace, UTF-8."""
    return json.dumps(doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def metadata_hash(doc: Dict[str, Any]) -> str:
    return to_hex(keccak(canonical_metadata_bytes(doc)))


def short_address(address: str) -> str:
    return f"{address[:6]}…{address[-4:]}"


def wei_to_eth(wei: int) -> str:
    if not wei:
        return "0"
    return format(Web3.from_wei(int(wei), "ether"), "f")


def _parse_wei(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        wei = int(str(value), 0) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, wei)


def display_defaults(address: str) -> Dict[str, Any]:
    return {
        "title": f"Survey {short_address(address)}",
        "summary": "",
        "reward_wei": 0,
        "reward_eth": "0",
        "valid": False,
        "gate": None,
        "eligibility": {},
    }


def metadata_fields(record: SurveyRecord, doc: Optional[Dict[str, Any]],
                    meta_url: Optional[str] = None) -> Dict[str, Any]:
    """Display fields and validity flag for ``record`` given its document."""
    fields = display_defaults(record.address)
    fields["meta_url"] = meta_url
    if doc is None:
        return fields

    if isinstance(doc.get("metaUrl"), str) and doc["metaUrl"].strip():
        fields["meta_url"] = doc["metaUrl"].strip()

    expected = (record.meta_hash or "").lower()
    fields["valid"] = bool(expected) and metadata_hash(doc) == expected

    title = doc.get("title")
    if isinstance(title, str) and title.strip():
        fields["title"] = title.strip()
    summary = doc.get("summary", doc.get("description"))
    if isinstance(summary, str):
        fields["summary"] = summary
    reward_wei = _parse_wei(doc.get("rewardWei"))
    fields["reward_wei"] = reward_wei
    fields["reward_eth"] = wei_to_eth(reward_wei)
    gate = doc.get("gate")
    if isinstance(gate, str) and ADDRESS_RE.match(gate):
        fields["gate"] = gate.lower()
    if isinstance(doc.get("eligibility"), dict):
        fields["eligibility"] = doc["eligibility"]
    return fields


def enrich_metadata(store: EntityStore, source: MetadataSource) -> EntityStore:
    surveys = dict(store.surveys)
    valid = 0
    for address, record in store.surveys.items():
        try:
            doc = source.fetch(address)
        except MetadataFetchError as e:
            logger.warning("Enrichment: metadata unavailable for %s, keeping previous fields: %s", address, e)
            continue
        fields = metadata_fields(record, doc, source.url_for(address))
        if doc is not None and not fields["valid"]:
            logger.info("Enrichment: metadata hash mismatch for %s", address)
        valid += int(fields["valid"])
        surveys[address] = record.model_copy(update=fields)
    logger.info("Enrichment: metadata joined for %d survey(s), %d valid", len(surveys), valid)
    return store.with_changes(surveys=surveys)


# ----------------------------------------------------------------------
# Funding verification
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class FundingSubmission:
    survey: str
    tx_hash: str
    created_at: int


@dataclass(frozen=True)
class FundingDecision:
    accepted: bool
    reason: str = ""


def load_funding_submissions(funding_dir: str, chain_id: int) -> List[FundingSubmission]:
    """Read ``<funding_dir>/<chain_id>/<survey>.json`` files; bad files are skipped."""
    directory = os.path.join(funding_dir, str(chain_id))
    if not os.path.isdir(directory):
        return []

    submissions = []
    for name in sorted(os.listdir(directory)):
        if not name.endswith(".json"):
            continue
        path = os.path.join(directory, name)
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Enrichment: unreadable funding submission %s: %s", path, e)
            continue
        survey = str(payload.get("survey") or "").lower()
        tx_hash = str(payload.get("txHash") or "").lower()
        if not ADDRESS_RE.match(survey) or not TX_HASH_RE.match(tx_hash):
            logger.warning("Enrichment: malformed funding submission %s", path)
            continue
        submissions.append(FundingSubmission(
            survey=survey,
            tx_hash=tx_hash,
            created_at=normalize_timestamp(payload.get("createdAt")),
        ))
    return submissions


def evaluate_funding(
    tx: Dict[str, Any],
    receipt: Dict[str, Any],
    latest_block: int,
    record: SurveyRecord,
    treasury: str,
    min_confirmations: int,
) -> FundingDecision:
    """Pure acceptance check for one funding transaction."""
    if int(receipt.get("status") or 0) != 1:
        return FundingDecision(False, "receipt failed")
    mined_at = receipt.get("blockNumber")
    confirmations = latest_block - int(mined_at) + 1 if mined_at else 0
    if confirmations < min_confirmations:
        return FundingDecision(False, f"{confirmations} confirmation(s), need {min_confirmations}")
    if not treasury or str(tx.get("to") or "").lower() != treasury.lower():
        return FundingDecision(False, "recipient is not the treasury")
    if not record.creator or str(tx.get("from") or "").lower() != record.creator.lower():
        return FundingDecision(False, "sender is not the survey creator")
    if int(tx.get("value") or 0) < record.planned_reward:
        return FundingDecision(False, "value below planned reward")
    return FundingDecision(True)


def verify_funding(
    store: EntityStore,
    ledger,
    submissions: List[FundingSubmission],
    treasury: str,
    min_confirmations: int,
    latest_block: int,
) -> List[DomainEvent]:
    """TreasuryFunded events for every submission that passes ``evaluate_funding``."""
    events: List[DomainEvent] = []
    if not submissions:
        return events
    if not treasury:
        logger.warning("Enrichment: TREASURY_ADDRESS not set, %d funding submission(s) left pending",
                       len(submissions))
        return events

    for sub in submissions:
        record = store.surveys.get(sub.survey)
        if record is None:
            logger.info("Enrichment: funding submission for unknown survey %s", sub.survey)
            continue
        if record.funded_by_treasury:
            continue
        try:
            tx = ledger.get_transaction(sub.tx_hash)
            receipt = ledger.get_receipt(sub.tx_hash)
        except LedgerQueryError as e:
            logger.warning("Enrichment: funding tx %s not readable yet: %s", sub.tx_hash, e)
            continue

        decision = evaluate_funding(tx, receipt, latest_block, record, treasury, min_confirmations)
        if not decision.accepted:
            logger.info("Enrichment: funding %s for %s pending: %s", sub.tx_hash, sub.survey, decision.reason)
            continue

        logger.info("Enrichment: accepted treasury funding %s for %s", sub.tx_hash, sub.survey)
        events.append(DomainEvent(
            kind=EventKind.TREASURY_FUNDED,
            address=sub.survey,
            block_number=int(receipt.get("blockNumber") or 0),
            log_index=-1,
            block_timestamp=0,
            tx_hash=sub.tx_hash,
            args={"txHash": sub.tx_hash, "value": int(tx.get("value") or 0)},
            event_id=f"TreasuryFunded:{sub.survey}",
        ))
    return events


# ----------------------------------------------------------------------
# Balances
# ----------------------------------------------------------------------
def refresh_balances(store: EntityStore, ledger) -> EntityStore:
    surveys = dict(store.surveys)
    for address, record in store.surveys.items():
        try:
            balance = ledger.get_balance(address)
        except LedgerQueryError as e:
            logger.warning("Enrichment: balance refresh failed for %s: %s", address, e)
            continue
        surveys[address] = record.model_copy(update={"balance": int(balance)})
    return store.with_changes(surveys=surveys)
