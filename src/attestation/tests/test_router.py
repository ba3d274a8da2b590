"""HTTP surface of the attestation service, exercised with FastAPI's TestClient."""
import asyncio
import json
import time
from datetime import date

import pytest
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.testclient import TestClient

from src.attestation.aggregation import AttestationAggregator
from src.attestation.fanout import LiveStreamHub
from src.attestation.router import get_aggregator, get_hub, get_signer, request_validation_handler, stream_survey
from src.attestation.signer import EligibilitySigner
from src.config.common_settings import ZKPASS_SCHEMAS
from src.routers.fastapi_router import router as api_router
from src.services.kv_store import FileKVStore

from .test_signer import DEV_KEY, GATE, OTHER_GATE

SURVEY = "0x" + "5a" * 20
SUBJECT = "0x" + "1b" * 20
PSEUDONYM = "0x" + "ab" * 32


def make_client(tmp_path, signer_key=DEV_KEY):
    hub = LiveStreamHub()
    aggregator = AttestationAggregator(
        FileKVStore(str(tmp_path)),
        hub=hub,
        schemas=ZKPASS_SCHEMAS,
        clock=lambda: 1_700_000_000,
        today=lambda: date(2025, 6, 15),
    )
    signer = EligibilitySigner(signer_key, "DScopeEligibility", "1", 534351, GATE)

    app = FastAPI()
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(api_router)
    app.dependency_overrides[get_aggregator] = lambda: aggregator
    app.dependency_overrides[get_signer] = lambda: signer
    app.dependency_overrides[get_hub] = lambda: hub
    return TestClient(app)


@pytest.fixture
def client(tmp_path):
    return make_client(tmp_path)


class TestSubmit:
    def test_submit_then_replay(self, client):
        body = {"survey": SURVEY, "schemaKind": "binanceDob", "pseudonym": PSEUDONYM,
                "fields": {"data|birthday": "1990-03-01"}}

        first = client.post("/attestation/submit", json=body)
        second = client.post("/api/attestation/submit", json=body)

        assert first.status_code == 200
        assert first.json()["deduped"] is False
        assert first.json()["totals"]["total"] == 1
        assert first.json()["applied"]["ageDelta"] == {"31-40": 1}
        assert second.status_code == 200
        assert second.json()["deduped"] is True
        assert "totals" not in second.json()

    def test_provider_envelope(self, client):
        body = {
            "survey": SURVEY,
            "schemaId": ZKPASS_SCHEMAS["kucoinCountry"],
            "data": {"nullifierHash": PSEUDONYM, "fieldAssets": {"countryCode": "de"}},
        }

        response = client.post("/api/zkpass/submit", json=body)

        assert response.status_code == 200
        aggregate = client.get(f"/aggregate/{SURVEY}.json").json()
        assert [(r["region"], r["country"], r["count"]) for r in aggregate["rows"]] == [("Europe", "DE", 1)]

    @pytest.mark.parametrize("body, error", [
        ({"survey": SURVEY, "schemaKind": "passportAge", "pseudonym": PSEUDONYM}, "unknown schemaKind: passportAge"),
        ({"survey": "0x1234", "schemaKind": "kucoinKyc", "pseudonym": PSEUDONYM}, "bad survey"),
        ({"survey": SURVEY, "schemaKind": "kucoinKyc", "nullifier": "0xabc"}, "bad nullifier"),
    ])
    def test_rejects_bad_input(self, client, body, error):
        response = client.post("/attestation/submit", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": error}


class TestAggregate:
    def test_empty_survey(self, client):
        response = client.get(f"/api/analytics/{SURVEY}")

        assert response.status_code == 200
        assert response.json() == {"updatedAt": 1_700_000_000, "total": 0, "eligible": 0, "verified": 0, "rows": []}

    def test_bad_survey(self, client):
        assert client.get("/aggregate/nope.json").status_code == 400

    def test_bad_survey_stream(self, client):
        response = client.get("/stream/nope")

        assert response.status_code == 400
        assert response.json() == {"error": "bad survey"}


class TestGates:
    @pytest.mark.parametrize("path", ["/gates", "/gates.json", "/api/gates.json"])
    def test_gates(self, client, path):
        payload = client.get(path).json()

        assert set(payload) == {"updatedAt", "eip712", "zkpass", "k_anonymity"}
        assert payload["eip712"]["types"]["Eligibility"][0] == {"name": "user", "type": "address"}
        assert payload["zkpass"]["schemas"] == ZKPASS_SCHEMAS


class TestEligibilitySign:
    def test_sign_with_legacy_field_names(self, client):
        deadline = int(time.time()) + 3600
        body = {"user": SUBJECT, "survey": SURVEY, "nullifier": PSEUDONYM, "deadline": deadline, "gate": OTHER_GATE}

        response = client.post("/api/eligibility/sign", json=body)

        assert response.status_code == 200
        payload = response.json()
        assert payload["ok"] is True
        assert payload["signature"].startswith("0x") and len(payload["signature"]) == 132
        assert payload["domain"]["verifyingContract"] == OTHER_GATE
        assert payload["message"]["deadline"] == deadline

    def test_domain_override(self, client):
        body = {"subject": SUBJECT, "survey": SURVEY, "pseudonym": PSEUDONYM, "expiry": int(time.time()) + 60,
                "domainOverride": {"chainId": 1}}

        payload = client.post("/eligibility/sign", json=body).json()

        assert payload["domain"]["chainId"] == 1
        assert payload["domain"]["verifyingContract"] == GATE

    def test_expired(self, client):
        body = {"subject": SUBJECT, "survey": SURVEY, "pseudonym": PSEUDONYM, "expiry": 1}

        response = client.post("/eligibility/sign", json=body)

        assert response.status_code == 400
        assert response.json() == {"error": "bad deadline"}

    def test_signer_not_ready(self, tmp_path):
        client = make_client(tmp_path, signer_key="")
        body = {"subject": SUBJECT, "survey": SURVEY, "pseudonym": PSEUDONYM, "expiry": int(time.time()) + 60}

        response = client.post("/eligibility/sign", json=body)

        assert response.status_code == 500
        assert response.json() == {"error": "signer not ready"}


class DisconnectableRequest:
    """Stands in for the Starlette request the stream polls for disconnects."""

    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self):
        return self.disconnected


class TestLiveStream:
    def test_stream_sends_connected_then_each_applied_delta(self, tmp_path):
        hub = LiveStreamHub()
        aggregator = AttestationAggregator(FileKVStore(str(tmp_path)), hub=hub, schemas=ZKPASS_SCHEMAS,
                                           clock=lambda: 1_700_000_000, today=lambda: date(2025, 6, 15))
        other = "0x" + "cd" * 32

        async def scenario():
            request = DisconnectableRequest()
            response = await stream_survey(SURVEY, request, hub=hub)
            frames = response.body_iterator
            hello = await frames.__anext__()

            first = await aggregator.submit(SURVEY, "kucoinCountry", {"countryCode": "DE"}, PSEUDONYM)
            replay = await aggregator.submit(SURVEY, "kucoinCountry", {"countryCode": "DE"}, PSEUDONYM)
            second = await aggregator.submit(SURVEY, "kucoinKyc", {}, other)
            received = [await frames.__anext__(), await frames.__anext__()]

            request.disconnected = True
            await frames.aclose()
            return response, hello, received, first, replay, second

        response, hello, received, first, replay, second = asyncio.run(scenario())

        assert response.media_type == "text/event-stream"
        assert hello == ": connected\n\n"
        assert replay.deduped is True
        assert all(frame.startswith("data: ") and frame.endswith("\n\n") for frame in received)
        payloads = [json.loads(frame[len("data: "):]) for frame in received]
        assert payloads[0] == {
            "type": "append",
            "survey": SURVEY,
            "row": {"region": "Europe", "country": "DE", "count": 1, "verified": 0, "ageBuckets": {}},
            "delta": first.applied.model_dump(by_alias=True),
        }
        # The replay in between produced no frame
        assert payloads[1]["delta"] == second.applied.model_dump(by_alias=True)
        assert payloads[1]["row"]["region"] == "Unknown"
        assert hub.subscriber_count(SURVEY) == 0


class TestMalformedBodies:
    @pytest.mark.parametrize("path, body, field", [
        ("/attestation/submit", {"schemaKind": "kucoinKyc", "pseudonym": PSEUDONYM}, "survey"),
        ("/attestation/submit", {"survey": SURVEY, "schemaKind": "binanceDob", "fields": "1990-01-01"}, "fields"),
        ("/eligibility/sign", {"subject": SUBJECT, "survey": SURVEY, "pseudonym": PSEUDONYM, "expiry": "soon"},
         "expiry"),
    ])
    def test_validation_errors_use_error_shape(self, client, path, body, field):
        response = client.post(path, json=body)

        assert response.status_code == 400
        assert set(response.json()) == {"error"}
        assert response.json()["error"].startswith("invalid request: ")
        assert field in response.json()["error"]

    def test_service_app_registers_the_handler(self, tmp_path):
        from src.main import app as service_app

        aggregator = AttestationAggregator(FileKVStore(str(tmp_path)), schemas=ZKPASS_SCHEMAS)
        service_app.dependency_overrides[get_aggregator] = lambda: aggregator
        try:
            client = TestClient(service_app)
            response = client.post("/api/zkpass/submit", content=b"not json",
                                   headers={"Content-Type": "application/json"})
            health = client.get("/healthz")
        finally:
            service_app.dependency_overrides.clear()

        assert response.status_code == 400
        assert "error" in response.json()
        assert health.json()["ok"] is True
