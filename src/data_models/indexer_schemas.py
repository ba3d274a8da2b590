# Indexer schemas: decoded ledger events and the derived entity store
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel


class EventKind(str, Enum):
    SURVEY_DEPLOYED = "SurveyDeployed"
    QUESTION_ADDED = "QuestionAdded"
    VOTED = "Voted"
    FINALIZED = "Finalized"
    PRIZE_FUNDED = "PrizeFunded"
    PRIZE_SWEPT = "PrizeSwept"
    TREASURY_FUNDED = "TreasuryFunded"
    BACKFILLED_SCHEDULE = "BackfilledSchedule"


@dataclass(frozen=True)
class DomainEvent:
    """A decoded, immutable ledger event.

    ``args`` holds the kind-specific fields. Amounts are Python ints,
    addresses are lower-cased, hashes are 0x-prefixed hex, timestamps are
    already normalized to seconds. Synthetic events (schedule backfill,
    treasury funding) use ``log_index=-1`` and carry their own ``event_id``.
    """
    kind: EventKind
    address: str
    block_number: int
    log_index: int
    block_timestamp: int
    tx_hash: str
    args: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None

    @property
    def key(self) -> str:
        if self.event_id:
            return self.event_id
        return f"{self.tx_hash}:{self.log_index}"

    @property
    def survey_address(self) -> str:
        """Survey the event belongs to; deploy events name it in their args."""
        return str(self.args.get("survey") or self.address).lower()

    @property
    def sort_key(self) -> tuple:
        return (self.block_number, self.log_index)

    def to_ledger_entry(self) -> Dict[str, Any]:
        """One line of the append-only ledger."""
        entry: Dict[str, Any] = {
            "t": self.kind.value,
            "survey": self.survey_address,
            "block": self.block_number,
            "logIndex": self.log_index,
            "ts": self.block_timestamp,
            "tx": self.tx_hash,
        }
        for name, value in self.args.items():
            if value is None:
                continue
            # Amounts can exceed what JSON consumers parse losslessly
            entry[name] = str(value) if name in AMOUNT_ARGS else value
        return entry


AMOUNT_ARGS = frozenset({"amount", "plannedReward", "initialValue", "value"})


class SurveyRecord(BaseModel):
    """Derived state of one survey contract, keyed by lower-cased address."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    address: str
    creator: str = ""
    start_time: int = 0
    end_time: int = 0
    meta_hash: str = ""
    survey_type: Optional[int] = None
    deployed_block: Optional[int] = None
    deployed_tx: Optional[str] = None

    questions: Dict[str, str] = Field(default_factory=dict)
    votes: int = 0

    rules_hash: Optional[str] = None
    results_hash: Optional[str] = None
    finalized_at: Optional[int] = None
    claim_open_at: Optional[int] = None
    claim_deadline: Optional[int] = None

    planned_reward: int = 0
    initial_value: int = 0
    # Append-only accumulators: only ever increased by PrizeFunded/PrizeSwept
    prize_funded: int = 0
    prize_swept: int = 0
    # Point-in-time, overwritten on every refresh
    balance: Optional[int] = None

    # Off-chain enrichment
    title: str = ""
    summary: str = ""
    reward_wei: int = 0
    reward_eth: str = "0"
    valid: bool = False
    gate: Optional[str] = None
    eligibility: Dict[str, Any] = Field(default_factory=dict)
    meta_url: Optional[str] = None

    funded_by_treasury: bool = False
    funding_tx: Optional[str] = None

    @field_serializer("planned_reward", "initial_value", "prize_funded", "prize_swept", "reward_wei")
    def _amount_to_str(self, value: int) -> str:
        return str(value)

    @field_serializer("balance")
    def _balance_to_str(self, value: Optional[int]) -> Optional[str]:
        return None if value is None else str(value)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class EntityStore:
    """Everything the reducer folds events into.

    ``voted`` holds ``"<survey>|<voter>"`` pairs and ``seen_events`` the keys
    of every applied event; both make replays no-ops.
    """
    surveys: Dict[str, SurveyRecord] = field(default_factory=dict)
    balances: Dict[str, int] = field(default_factory=dict)
    voted: FrozenSet[str] = frozenset()
    seen_events: FrozenSet[str] = frozenset()
    last_block: int = 0

    def with_changes(self, **changes: Any) -> "EntityStore":
        return replace(self, **changes)
