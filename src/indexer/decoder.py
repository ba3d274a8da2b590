"""
Log decoding against ordered schema candidates.

A raw log is tried against each candidate of its contract family in
priority order; the first schema whose topic and layout match wins. Logs
that match nothing are skipped, never fatal.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import event_abi_to_log_topic, to_hex

from src.data_models.indexer_schemas import DomainEvent, EventKind
from src.indexer.errors import DecodeError
from src.utils.logger import logger
from src.utils.time_utils import normalize_timestamp, optional_timestamp


def _is_dynamic(abi_type: str) -> bool:
    # Indexed dynamic values are stored as their keccak hash in the topic
    return abi_type in ("string", "bytes") or abi_type.endswith("]")


def _plain(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return str(value).lower()
    if isinstance(value, (bytes, bytearray)):
        return to_hex(value)
    return value


class CandidateSchema:
    """One event ABI variant bound to the domain kind it produces."""

    def __init__(self, event_abi: Dict[str, Any], kind: EventKind):
        self.event_abi = event_abi
        self.kind = kind
        self.name: str = event_abi["name"]
        self.topic: bytes = bytes(event_abi_to_log_topic(event_abi))
        self.indexed = [i for i in event_abi["inputs"] if i.get("indexed")]
        self.unindexed = [i for i in event_abi["inputs"] if not i.get("indexed")]

    @property
    def signature(self) -> str:
        types = ",".join(i["type"] for i in self.event_abi["inputs"])
        indexed = ",".join(i["name"] for i in self.indexed)
        return f"{self.name}({types})[indexed:{indexed}]"

    def decode(self, log: Dict[str, Any]) -> Dict[str, Any]:
        topics = log.get("topics") or []
        if not topics or bytes(topics[0]) != self.topic:
            raise DecodeError(f"topic mismatch for {self.name}")
        if len(topics) - 1 != len(self.indexed):
            raise DecodeError(f"{self.name}: expected {len(self.indexed)} indexed topics, got {len(topics) - 1}")

        args: Dict[str, Any] = {}
        try:
            for inp, topic in zip(self.indexed, topics[1:]):
                if _is_dynamic(inp["type"]):
                    args[inp["name"]] = to_hex(bytes(topic))
                else:
                    args[inp["name"]] = _plain(inp["type"], abi_decode([inp["type"]], bytes(topic))[0])

            data = bytes(log.get("data") or b"")
            values = abi_decode([i["type"] for i in self.unindexed], data) if self.unindexed else ()
        except (DecodingError, ValueError, OverflowError) as e:
            raise DecodeError(f"{self.name}: {e}") from e

        for inp, value in zip(self.unindexed, values):
            args[inp["name"]] = _plain(inp["type"], value)
        return args


@dataclass(frozen=True)
class DecodedLog:
    kind: EventKind
    name: str
    args: Dict[str, Any]
    variant: str
    fallback: bool


class EventDecoder:
    """Decoder for one contract family (factory or survey)."""

    def __init__(self, candidates: Sequence[Tuple[Dict[str, Any], EventKind]], family: str = "contract"):
        self.family = family
        self.candidates: List[CandidateSchema] = [CandidateSchema(abi, kind) for abi, kind in candidates]
        # Primary schema per event name; anything after it is a fallback
        self._primary: Dict[str, CandidateSchema] = {}
        for cand in self.candidates:
            self._primary.setdefault(cand.name, cand)

    def decode(self, log: Dict[str, Any]) -> Optional[DecodedLog]:
        for cand in self.candidates:
            try:
                args = cand.decode(log)
            except DecodeError:
                continue
            fallback = self._primary.get(cand.name) is not cand
            if fallback:
                logger.debug(
                    "Decoder[%s]: %s at block %s matched fallback variant %s",
                    self.family, cand.name, log.get("blockNumber"), cand.signature,
                )
            return DecodedLog(kind=cand.kind, name=cand.name, args=args, variant=cand.signature, fallback=fallback)

        logger.info(
            "Decoder[%s]: skipping log %s:%s from %s (no schema matched)",
            self.family, log.get("transactionHash"), log.get("logIndex"), log.get("address"),
        )
        return None

    def to_domain_event(self, decoded: DecodedLog, log: Dict[str, Any], block_timestamp: int) -> DomainEvent:
        return DomainEvent(
            kind=decoded.kind,
            address=str(log.get("address") or "").lower(),
            block_number=int(log.get("blockNumber") or 0),
            log_index=int(log.get("logIndex") or 0),
            block_timestamp=normalize_timestamp(block_timestamp),
            tx_hash=str(log.get("transactionHash") or ""),
            args=normalize_args(decoded.kind, decoded.name, decoded.args),
        )


def normalize_args(kind: EventKind, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    """Map decoded ABI arguments onto the fields the reducer understands.

    Timestamps, block timestamps included, are normalized in this module only.
    """
    if kind == EventKind.SURVEY_DEPLOYED:
        if "survey" not in args:
            # Emitted by the survey itself: no schedule in the payload
            return {
                "creator": args.get("creator", ""),
                "metaHash": args.get("metaHash", ""),
                "source": name,
            }
        return {
            "survey": args["survey"],
            "creator": args.get("creator", ""),
            "startTime": normalize_timestamp(args.get("startTime")),
            "endTime": normalize_timestamp(args.get("endTime")),
            "surveyType": args.get("surveyType"),
            "metaHash": args.get("metaHash", ""),
            "plannedReward": args.get("plannedReward"),
            "initialValue": args.get("initialValue"),
            "source": name,
        }
    if kind == EventKind.QUESTION_ADDED:
        return {"index": int(args["index"]), "text": str(args["text"])}
    if kind == EventKind.VOTED:
        return {"voter": args["voter"]}
    if kind == EventKind.FINALIZED:
        return {
            "rulesHash": args.get("rulesHash"),
            "resultsHash": args.get("resultsHash"),
            "claimOpenAt": optional_timestamp(args.get("claimOpenAt")),
            "claimDeadline": optional_timestamp(args.get("claimDeadline")),
        }
    if kind == EventKind.PRIZE_FUNDED:
        return {"funder": args["funder"], "amount": int(args["amount"])}
    if kind == EventKind.PRIZE_SWEPT:
        return {"to": args["to"], "amount": int(args["amount"])}
    return dict(args)
