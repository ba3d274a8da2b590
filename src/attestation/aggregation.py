"""
Proof ingest and aggregate maintenance.

A submission is reduced to derived attributes (age bucket, region/country,
verified flag) and merged into the Person stored for its pseudonym. Only the
difference between the Person before and after is applied to the survey's
aggregate rows, so re-submitting the same proof never double-counts. A
Person contributes to exactly one row; when a later proof changes its
region or country, its whole contribution moves to the new row.
The Person and the survey analytics it changes are written in one store
batch.

Raw birth dates and country codes are never persisted or logged.
"""
from __future__ import annotations

import asyncio
import re
import weakref
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from src.attestation.errors import InvalidInputError
from src.attestation.fanout import LiveStreamHub
from src.attestation.regions import normalize_country, region_for
from src.data_models.attestation_schemas import (
    UNKNOWN_REGION,
    AggregateRow,
    AnalyticsSnapshot,
    AppliedDelta,
    Person,
    RowDelta,
    SubmitResponse,
    SubmitTotals,
)
from src.services.kv_store import KVStore
from src.utils.logger import logger
from src.utils.time_utils import now_sec

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
PSEUDONYM_RE = re.compile(r"^0x[0-9a-f]{64}$")

KIND_AGE = "binanceDob"
KIND_COUNTRY = "kucoinCountry"
KIND_VERIFIED = "kucoinKyc"
SCHEMA_KINDS = (KIND_AGE, KIND_COUNTRY, KIND_VERIFIED)

BIRTH_DATE_FIELDS = ("data|birthday", "birthday", "dob")
COUNTRY_FIELDS = ("data|countryCode", "countryCode")


# ----------------------------------------------------------------------
# Derivation
# ----------------------------------------------------------------------
def parse_birth_date(value: Any) -> Optional[date]:
    raw = str(value or "").strip()
    for fmt, length in (("%Y-%m-%d", 10), ("%Y%m%d", 8)):
        if len(raw) >= length:
            try:
                return datetime.strptime(raw[:length], fmt).date()
            except ValueError:
                continue
    return None


def age_in_years(birth: date, today: date) -> int:
    had_birthday = (today.month, today.day) >= (birth.month, birth.day)
    return today.year - birth.year - (0 if had_birthday else 1)


def age_bucket(age: int) -> Optional[str]:
    if age < 18:
        return None
    if age <= 25:
        return "18-25"
    if age <= 30:
        return "26-30"
    if age <= 40:
        return "31-40"
    if age <= 50:
        return "41-50"
    return "51+"


def age_bucket_from_birth_date(value: Any, today: Optional[date] = None) -> Optional[str]:
    birth = parse_birth_date(value)
    if birth is None:
        return None
    return age_bucket(age_in_years(birth, today or date.today()))


def _first(fields: Mapping[str, Any], names) -> Any:
    for name in names:
        if fields.get(name) not in (None, ""):
            return fields[name]
    return None


@dataclass(frozen=True)
class DerivedFields:
    age_bucket: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    verified: bool = False


def resolve_schema_kind(schema_kind: Optional[str], schema_id: Optional[str],
                        schemas: Mapping[str, str]) -> str:
    """Map a schema kind or provider schema id onto one of SCHEMA_KINDS."""
    if schema_kind:
        if schema_kind in SCHEMA_KINDS:
            return schema_kind
        raise InvalidInputError(f"unknown schemaKind: {schema_kind}")
    if schema_id:
        for kind, known_id in schemas.items():
            if known_id and schema_id == known_id and kind in SCHEMA_KINDS:
                return kind
        raise InvalidInputError(f"unknown schemaId: {schema_id}")
    raise InvalidInputError("schemaKind is required")


def derive_fields(kind: str, fields: Mapping[str, Any], today: Optional[date] = None) -> DerivedFields:
    """At most one attribute group per proof kind."""
    if kind == KIND_AGE:
        return DerivedFields(age_bucket=age_bucket_from_birth_date(_first(fields, BIRTH_DATE_FIELDS), today))
    if kind == KIND_COUNTRY:
        country = normalize_country(_first(fields, COUNTRY_FIELDS))
        if country is None:
            return DerivedFields()
        return DerivedFields(region=region_for(country), country=country)
    if kind == KIND_VERIFIED:
        return DerivedFields(verified=True)
    raise InvalidInputError(f"unknown schemaKind: {kind}")


# ----------------------------------------------------------------------
# Deltas
# ----------------------------------------------------------------------
def merge_person(prior: Optional[Person], pseudonym: str, derived: DerivedFields) -> Person:
    person = prior.model_copy() if prior is not None else Person(pseudonym=pseudonym)
    changes: Dict[str, Any] = {}
    if derived.age_bucket:
        changes["age_bucket"] = derived.age_bucket
    if derived.country:
        changes["country"] = derived.country
        changes["region"] = derived.region
    if derived.verified:
        changes["verified"] = True
    return person.model_copy(update=changes) if changes else person


def _contribution(person: Person) -> Tuple[str, RowDelta]:
    row = RowDelta(
        region=person.region or UNKNOWN_REGION,
        country=person.country or "",
        count=1,
        verified=int(person.verified),
        age_buckets={person.age_bucket: 1} if person.age_bucket else {},
    )
    return person.row_key, row


def _subtract(row: RowDelta, other: RowDelta) -> RowDelta:
    ages = dict(row.age_buckets)
    for bucket, n in other.age_buckets.items():
        ages[bucket] = ages.get(bucket, 0) - n
    return RowDelta(
        region=row.region,
        country=row.country,
        count=row.count - other.count,
        verified=row.verified - other.verified,
        age_buckets={k: v for k, v in ages.items() if v},
    )


def _negate(row: RowDelta) -> RowDelta:
    return _subtract(RowDelta(region=row.region, country=row.country), row)


def _nonzero(row: RowDelta) -> bool:
    return bool(row.count or row.verified or row.age_buckets)


def compute_delta(prior: Optional[Person], updated: Person) -> AppliedDelta:
    """Row-level difference between a Person's old and new contribution."""
    new_key, new_row = _contribution(updated)
    rows: List[RowDelta] = []
    if prior is None:
        rows.append(new_row)
    else:
        old_key, old_row = _contribution(prior)
        if old_key == new_key:
            rows.append(_subtract(new_row, old_row))
        else:
            rows.extend([_negate(old_row), new_row])
    rows = [r for r in rows if _nonzero(r)]

    age_delta: Dict[str, int] = {}
    if updated.age_bucket:
        age_delta[updated.age_bucket] = 1
    if prior is not None and prior.age_bucket:
        age_delta[prior.age_bucket] = age_delta.get(prior.age_bucket, 0) - 1
    age_delta = {k: v for k, v in age_delta.items() if v}

    return AppliedDelta(
        count_delta=0 if prior is not None else 1,
        verified_delta=int(updated.verified) - int(prior.verified if prior is not None else False),
        age_delta=age_delta,
        region=new_row.region,
        country=new_row.country,
        rows=rows,
    )


def apply_delta(snapshot: AnalyticsSnapshot, delta: AppliedDelta, now: int) -> AnalyticsSnapshot:
    """New snapshot with ``delta`` applied and totals recomputed."""
    rows: Dict[str, AggregateRow] = {row.key: row.model_copy(deep=True) for row in snapshot.rows}
    for change in delta.rows:
        key = f"{change.region}|{change.country}"
        row = rows.get(key)
        if row is None:
            row = AggregateRow(region=change.region, country=change.country)
            rows[key] = row
        row.count += change.count
        row.verified += change.verified
        for bucket, n in change.age_buckets.items():
            value = row.age_buckets.get(bucket, 0) + n
            if value:
                row.age_buckets[bucket] = value
            else:
                row.age_buckets.pop(bucket, None)

    kept = [row for row in rows.values() if not row.is_empty()]
    total = sum(row.count for row in kept)
    return AnalyticsSnapshot(
        updated_at=now,
        total=total,
        eligible=total,
        verified=sum(row.verified for row in kept),
        rows=kept,
    )


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------
class AttestationAggregator:
    """
    Ingests proof submissions for many surveys concurrently.

    Submissions for the same (survey, pseudonym) are serialized by a
    per-pseudonym lock; the aggregate read-modify-write of one survey is
    serialized by a per-survey lock held only while the delta is applied.
    """

    def __init__(
        self,
        store: KVStore,
        hub: Optional[LiveStreamHub] = None,
        schemas: Optional[Mapping[str, str]] = None,
        clock: Callable[[], int] = now_sec,
        today: Optional[Callable[[], date]] = None,
    ):
        self.store = store
        self.hub = hub
        self.schemas = dict(schemas or {})
        self.clock = clock
        self.today = today or date.today
        self._person_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._survey_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @staticmethod
    def _lock(registry, key: str) -> asyncio.Lock:
        lock = registry.get(key)
        if lock is None:
            lock = asyncio.Lock()
            registry[key] = lock
        return lock

    @staticmethod
    def person_key(survey: str, pseudonym: str) -> str:
        return f"people/{survey}/{pseudonym}.json"

    @staticmethod
    def analytics_key(survey: str) -> str:
        return f"analytics/{survey}.json"

    def _load_person(self, survey: str, pseudonym: str) -> Optional[Person]:
        raw = self.store.read(self.person_key(survey, pseudonym))
        return Person.model_validate(raw) if raw else None

    def _load_snapshot(self, survey: str) -> AnalyticsSnapshot:
        raw = self.store.read(self.analytics_key(survey))
        return AnalyticsSnapshot.model_validate(raw) if raw else AnalyticsSnapshot(updated_at=self.clock())

    async def snapshot(self, survey: str) -> AnalyticsSnapshot:
        survey = validate_survey(survey)
        return await asyncio.to_thread(self._load_snapshot, survey)

    async def submit(
        self,
        survey: str,
        schema_kind: Optional[str],
        fields: Mapping[str, Any],
        pseudonym: str,
        schema_id: Optional[str] = None,
    ) -> SubmitResponse:
        """
        Merge one proof into the Person for ``pseudonym`` and the survey aggregate.

        Raises:
            InvalidInputError: Bad survey address, pseudonym or schema kind
        """
        survey = validate_survey(survey)
        pseudonym = validate_pseudonym(pseudonym)
        kind = resolve_schema_kind(schema_kind, schema_id, self.schemas)
        derived = derive_fields(kind, fields or {}, self.today())

        person_lock = self._lock(self._person_locks, f"{survey}|{pseudonym}")
        async with person_lock:
            prior = await asyncio.to_thread(self._load_person, survey, pseudonym)
            updated = merge_person(prior, pseudonym, derived)
            delta = compute_delta(prior, updated)

            if delta.is_zero():
                logger.info("Ingest: %s proof for %s…%s on %s deduplicated",
                            kind, pseudonym[:10], pseudonym[-4:], survey)
                return SubmitResponse(ok=True, deduped=True, applied=delta)

            survey_lock = self._lock(self._survey_locks, survey)
            async with survey_lock:
                current = await asyncio.to_thread(self._load_snapshot, survey)
                snapshot = apply_delta(current, delta, self.clock())
                await asyncio.to_thread(self.store.write_many, {
                    self.person_key(survey, pseudonym): updated.model_dump(by_alias=True),
                    self.analytics_key(survey): snapshot.model_dump(by_alias=True),
                })

        logger.info(
            "Ingest: %s proof applied on %s (count %+d, verified %+d, %d row change(s))",
            kind, survey, delta.count_delta, delta.verified_delta, len(delta.rows),
        )
        if self.hub is not None:
            await self.hub.broadcast(survey, delta_event(survey, delta))

        return SubmitResponse(
            ok=True,
            deduped=False,
            applied=delta,
            totals=SubmitTotals(
                updated_at=snapshot.updated_at,
                total=snapshot.total,
                eligible=snapshot.eligible,
                verified=snapshot.verified,
            ),
        )


def delta_event(survey: str, delta: AppliedDelta) -> Dict[str, Any]:
    """Stream payload for one applied delta."""
    target = next(
        (r for r in delta.rows if r.region == delta.region and r.country == delta.country),
        delta.rows[-1],
    )
    return {
        "type": "append",
        "survey": survey,
        "row": target.model_dump(by_alias=True),
        "delta": delta.model_dump(by_alias=True),
    }


def validate_survey(survey: str) -> str:
    survey = str(survey or "").strip()
    if not ADDRESS_RE.match(survey):
        raise InvalidInputError("bad survey")
    return survey.lower()


def validate_pseudonym(pseudonym: str) -> str:
    pseudonym = str(pseudonym or "").strip().lower()
    if not PSEUDONYM_RE.match(pseudonym):
        raise InvalidInputError("bad nullifier")
    return pseudonym
