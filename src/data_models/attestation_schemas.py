# Attestation service schemas: proof ingest, aggregates and eligibility signing
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

AGE_BUCKETS = ("18-25", "26-30", "31-40", "41-50", "51+")
UNKNOWN_REGION = "Unknown"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AttestationSubmitRequest(CamelModel):
    """
    Proof submission.

    ``schemaKind`` names the proof type (binanceDob, kucoinCountry,
    kucoinKyc); a raw provider ``schemaId`` is accepted instead. Fields and
    the pseudonym may come flat or inside the provider's ``data`` envelope.
    """
    survey: str
    schema_kind: Optional[str] = None
    schema_id: Optional[str] = None
    pseudonym: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("pseudonym", "nullifier", "nullifierHash"),
    )
    fields: Dict[str, Any] = Field(default_factory=dict)
    data: Optional[Dict[str, Any]] = None

    def _envelopes(self) -> List[Dict[str, Any]]:
        if not isinstance(self.data, dict):
            return []
        inner = self.data.get("data")
        return [self.data, inner] if isinstance(inner, dict) else [self.data]

    def resolved_pseudonym(self) -> str:
        if self.pseudonym:
            return self.pseudonym.strip().lower()
        for env in self._envelopes():
            if env.get("nullifierHash"):
                return str(env["nullifierHash"]).strip().lower()
        return ""

    def resolved_fields(self) -> Dict[str, Any]:
        if self.fields:
            return self.fields
        for env in self._envelopes():
            if isinstance(env.get("fieldAssets"), dict):
                return env["fieldAssets"]
        return {}


class Person(CamelModel):
    """Derived attributes of one pseudonym within one survey; never raw values."""
    pseudonym: str
    age_bucket: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    verified: bool = False

    @property
    def row_key(self) -> str:
        return f"{self.region or UNKNOWN_REGION}|{self.country or ''}"


class AggregateRow(CamelModel):
    region: str = UNKNOWN_REGION
    country: str = ""
    count: int = 0
    verified: int = 0
    age_buckets: Dict[str, int] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.region or UNKNOWN_REGION}|{self.country or ''}"

    def is_empty(self) -> bool:
        return not self.count and not self.verified and not any(self.age_buckets.values())


class AnalyticsSnapshot(CamelModel):
    updated_at: int = 0
    total: int = 0
    eligible: int = 0
    verified: int = 0
    rows: List[AggregateRow] = Field(default_factory=list)


class RowDelta(CamelModel):
    region: str
    country: str = ""
    count: int = 0
    verified: int = 0
    age_buckets: Dict[str, int] = Field(default_factory=dict)


class AppliedDelta(CamelModel):
    count_delta: int = 0
    verified_delta: int = 0
    age_delta: Dict[str, int] = Field(default_factory=dict)
    region: str = UNKNOWN_REGION
    country: str = ""
    rows: List[RowDelta] = Field(default_factory=list)

    def is_zero(self) -> bool:
        return not self.rows


class SubmitTotals(CamelModel):
    updated_at: int
    total: int
    eligible: int
    verified: int


class SubmitResponse(CamelModel):
    ok: bool = True
    deduped: bool = False
    applied: AppliedDelta
    totals: Optional[SubmitTotals] = None


class DomainOverride(CamelModel):
    verifying_contract: Optional[str] = None
    chain_id: Optional[int] = None


class EligibilitySignRequest(CamelModel):
    subject: str = Field(validation_alias=AliasChoices("subject", "user"))
    survey: str
    pseudonym: str = Field(validation_alias=AliasChoices("pseudonym", "nullifier"))
    expiry: int = Field(validation_alias=AliasChoices("expiry", "deadline"))
    domain_override: Optional[DomainOverride] = Field(
        default=None,
        validation_alias=AliasChoices("domainOverride", "domain_override"),
    )
    # Older clients send only the gate address to override verifyingContract
    gate: Optional[str] = None


class EligibilitySignResponse(CamelModel):
    ok: bool = True
    signature: str
    digest: str
    domain: Dict[str, Any]
    types: Dict[str, List[Dict[str, str]]]
    message: Dict[str, Any]
