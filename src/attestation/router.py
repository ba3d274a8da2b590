"""
FastAPI router for the attestation service.

Mounted at the root and again under ``/api`` by ``src.routers.fastapi_router``.
"""
import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from src.attestation.aggregation import AttestationAggregator, validate_survey
from src.attestation.errors import AttestationError
from src.attestation.fanout import LiveStreamHub
from src.attestation.signer import EligibilitySigner, domain_descriptor
from src.config import common_settings as settings
from src.data_models.attestation_schemas import (
    AttestationSubmitRequest,
    EligibilitySignRequest,
    EligibilitySignResponse,
)
from src.services.kv_store import FileKVStore
from src.utils.logger import logger
from src.utils.time_utils import now_sec

STREAM_KEEPALIVE_SECONDS = 15.0

router = APIRouter()

_hub: Optional[LiveStreamHub] = None
_aggregator: Optional[AttestationAggregator] = None
_signer: Optional[EligibilitySigner] = None


def get_hub() -> LiveStreamHub:
    global _hub
    if _hub is None:
        _hub = LiveStreamHub()
    return _hub


def get_aggregator() -> AttestationAggregator:
    global _aggregator
    if _aggregator is None:
        _aggregator = AttestationAggregator(
            FileKVStore(settings.ATTESTATION_OUTPUT_DIR),
            hub=get_hub(),
            schemas=settings.ZKPASS_SCHEMAS,
        )
    return _aggregator


def get_signer() -> EligibilitySigner:
    global _signer
    if _signer is None:
        _signer = EligibilitySigner(
            settings.ATTESTER_PRIVKEY,
            settings.ELIGIBILITY_DOMAIN_NAME,
            settings.ELIGIBILITY_DOMAIN_VERSION,
            settings.CHAIN_ID,
            settings.GATE_ADDR or None,
        )
    return _signer


def _error(e: AttestationError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content={"error": e.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies answer 400 with the same ``{"error": ...}`` shape as every other rejection."""
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    message = ("invalid request: " + "; ".join(problems)) if problems else "invalid request"
    logger.info("Rejected malformed request to %s: %s", request.url.path, message)
    return JSONResponse(status_code=400, content={"error": message})


@router.post("/attestation/submit")
@router.post("/zkpass/submit")
async def submit_attestation(
    req: AttestationSubmitRequest,
    aggregator: AttestationAggregator = Depends(get_aggregator),
):
    """Merge one proof into the survey aggregate; replays answer ``deduped``."""
    try:
        result = await aggregator.submit(
            req.survey,
            req.schema_kind,
            req.resolved_fields(),
            req.resolved_pseudonym(),
            schema_id=req.schema_id,
        )
    except AttestationError as e:
        return _error(e)
    except Exception as e:
        logger.error("Ingest: unexpected failure: %s", e, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "ingest failed"})
    return result.model_dump(by_alias=True, exclude_none=True)


@router.post("/eligibility/sign")
async def sign_eligibility(
    req: EligibilitySignRequest,
    signer: EligibilitySigner = Depends(get_signer),
):
    override = req.domain_override
    verifying_contract = (override.verifying_contract if override else None) or req.gate
    chain_id = override.chain_id if override else None
    try:
        signed = signer.sign(
            req.subject,
            req.survey,
            req.pseudonym,
            req.expiry,
            verifying_contract=verifying_contract,
            chain_id=chain_id,
        )
    except AttestationError as e:
        return _error(e)
    except Exception as e:
        logger.error("Signer: unexpected failure: %s", e, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "signing failed"})
    return EligibilitySignResponse(ok=True, **signed).model_dump(by_alias=True)


@router.get("/aggregate/{survey}")
@router.get("/analytics/{survey}")
async def get_aggregate(survey: str, aggregator: AttestationAggregator = Depends(get_aggregator)):
    """Full analytics snapshot; ``/aggregate/<survey>.json`` is accepted too."""
    if survey.endswith(".json"):
        survey = survey[: -len(".json")]
    try:
        snapshot = await aggregator.snapshot(survey)
    except AttestationError as e:
        return _error(e)
    return snapshot.model_dump(by_alias=True)


@router.get("/gates")
@router.get("/gates.json")
async def get_gates():
    descriptor = domain_descriptor(
        settings.ELIGIBILITY_DOMAIN_NAME,
        settings.ELIGIBILITY_DOMAIN_VERSION,
        settings.CHAIN_ID,
        settings.GATE_ADDR or None,
    )
    return {
        "updatedAt": now_sec(),
        **descriptor,
        "zkpass": {"appId": settings.ZKPASS_APP_ID, "schemas": settings.ZKPASS_SCHEMAS},
        "k_anonymity": settings.K_ANONYMITY,
    }


@router.get("/stream/{survey}")
async def stream_survey(survey: str, request: Request, hub: LiveStreamHub = Depends(get_hub)):
    """Server-sent events: one ``data:`` line per applied delta of ``survey``."""
    try:
        survey = validate_survey(survey)
    except AttestationError as e:
        return _error(e)

    async def event_stream():
        queue = await hub.subscribe(survey)
        try:
            yield ": connected\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield "data: " + json.dumps(payload, ensure_ascii=False) + "\n\n"
        finally:
            await hub.unsubscribe(survey, queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
