"""Tests for the authority gateway: status mapping, UPO and webhook parsing, HTTP errors."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from vat_engine.config import EngineConfig
from vat_engine.exceptions import (
    AuthorityRejection,
    CredentialError,
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    ProofRetrievalError,
    WebhookVerificationError,
)
from vat_engine.gateway import (
    AuthorityState,
    AuthorityStatus,
    HttpAuthorityGateway,
    UploadMetadata,
    WebhookEventType,
    map_status_code,
    parse_proof,
    parse_webhook,
)
from vat_engine.signature import HmacDocumentSigner, sign_webhook_payload

UPO = b"""<?xml version="1.0" encoding="UTF-8"?>
<Potwierdzenie xmlns="http://e-deklaracje.mf.gov.pl/Repozytorium/Definicje/Potwierdzenie/">
  <NumerReferencyjny>REF-1</NumerReferencyjny>
  <DataWplyniecia>2024-04-10T09:05:00Z</DataWplyniecia>
  <SkrotDokumentu>ABCDEF</SkrotDokumentu>
  <NumerUPO>UPO-42</NumerUPO>
</Potwierdzenie>"""


def _response(status: int, payload=None, content: bytes = b"", headers=None) -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status
    response.headers = headers or {}
    response.content = content
    response.text = content.decode("utf-8") if content else json.dumps(payload)
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def session() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def gateway(session: MagicMock) -> HttpAuthorityGateway:
    config = EngineConfig(base_url="https://bramka.example/", request_timeout=5)
    return HttpAuthorityGateway(config, session=session)


@pytest.fixture
def metadata() -> UploadMetadata:
    signer = HmacDocumentSigner("secret", key_id="k1")
    signature = signer.sign(b"<JPK/>", datetime(2024, 4, 10, tzinfo=timezone.utc))
    return UploadMetadata(
        submission_id="SUB-1",
        client_id="ACME",
        period_label="2024-03",
        schema_version="JPK_V7M(2)",
        purpose_code="1",
        document_digest=signature.content_digest,
        signature=signature,
    )


# ── Status codes ─────────────────────────────────────────────────────


@pytest.mark.parametrize("code,state", [
    (120, AuthorityState.IN_PROGRESS),
    (300, AuthorityState.IN_PROGRESS),
    (399, AuthorityState.IN_PROGRESS),
    (200, AuthorityState.ACCEPTED),
    (400, AuthorityState.REJECTED),
    (420, AuthorityState.REJECTED),
])
def test_status_code_mapping(code: int, state: AuthorityState):
    assert map_status_code(code) == state


@pytest.mark.parametrize("code", [201, 500, 99])
def test_unknown_status_code(code: int):
    with pytest.raises(GatewayError):
        map_status_code(code)


def test_status_from_dict():
    status = AuthorityStatus.from_dict({"code": "410", "description": "Rejected", "details": "NIP"})
    assert status.code == 410
    assert status.state == AuthorityState.REJECTED
    with pytest.raises(GatewayError):
        AuthorityStatus.from_dict({"description": "no code"})


# ── Proof of receipt ─────────────────────────────────────────────────


def test_parse_proof():
    proof = parse_proof(UPO, "REF-1")
    assert proof.reference_number == "REF-1"
    assert proof.upo_number == "UPO-42"
    assert proof.document_digest == "ABCDEF"
    assert proof.received_at == datetime(2024, 4, 10, 9, 5, tzinfo=timezone.utc)
    assert proof.content == UPO


def test_proof_for_other_reference():
    with pytest.raises(ProofRetrievalError) as exc_info:
        parse_proof(UPO, "REF-2")
    assert exc_info.value.reference_number == "REF-2"


@pytest.mark.parametrize("content", [b"<broken", b"<Potwierdzenie/>"])
def test_unusable_proof(content: bytes):
    with pytest.raises(ProofRetrievalError):
        parse_proof(content, "REF-1")


# ── Webhooks ─────────────────────────────────────────────────────────


def test_parse_signed_webhook():
    body = json.dumps({"event": "status_changed", "referenceNumber": "REF-1",
                       "code": 301, "message": "queued"}).encode()
    event = parse_webhook(body, sign_webhook_payload("s3cret", body), "s3cret")
    assert event.event == WebhookEventType.STATUS_CHANGED
    assert event.reference_number == "REF-1"
    assert event.code == 301
    assert event.message == "queued"


def test_webhook_signature_checked_before_payload():
    body = b"not json"
    with pytest.raises(WebhookVerificationError, match="does not match"):
        parse_webhook(body, sign_webhook_payload("other", body), "s3cret")
    with pytest.raises(WebhookVerificationError, match="Malformed"):
        parse_webhook(body, sign_webhook_payload("s3cret", body), "s3cret")


def test_webhook_unknown_event():
    body = json.dumps({"event": "exploded", "referenceNumber": "REF-1"}).encode()
    with pytest.raises(WebhookVerificationError):
        parse_webhook(body, sign_webhook_payload("s3cret", body), "s3cret")


def test_webhook_without_secret():
    body = b"{}"
    with pytest.raises(WebhookVerificationError):
        parse_webhook(body, sign_webhook_payload("s3cret", body), None)


# ── HTTP client ──────────────────────────────────────────────────────


def test_upload(gateway: HttpAuthorityGateway, session: MagicMock, metadata: UploadMetadata):
    session.request.return_value = _response(200, {"referenceNumber": "REF-77"})
    assert gateway.upload(b"<JPK/>", metadata) == "REF-77"

    args, kwargs = session.request.call_args
    assert args == ("POST", "https://bramka.example/api/upload")
    assert kwargs["timeout"] == 5
    assert kwargs["data"] == b"<JPK/>"
    assert kwargs["headers"]["X-Document-Digest"] == metadata.document_digest
    assert kwargs["headers"]["X-Signature-Key-Id"] == "k1"
    assert kwargs["headers"]["X-Document-Name"] == (
        f"ACME_2024-03_{metadata.document_digest[:12]}.xml"
    )


def test_upload_without_reference(gateway, session, metadata):
    session.request.return_value = _response(200, {"status": "ok"})
    with pytest.raises(GatewayError):
        gateway.upload(b"<JPK/>", metadata)


def test_upload_rejected_at_intake(gateway, session, metadata):
    session.request.return_value = _response(
        422, {"code": 410, "description": "Rejected", "details": "Schema violation"}
    )
    with pytest.raises(AuthorityRejection) as exc_info:
        gateway.upload(b"<JPK/>", metadata)
    assert exc_info.value.authority_code == "410"
    assert exc_info.value.authority_message == "Schema violation"
    assert exc_info.value.code == "REJECTED"


@pytest.mark.parametrize("payload", [{"error": "bad request"}, {"code": 300}, None])
def test_upload_client_error_without_rejection_code(gateway, session, metadata, payload):
    session.request.return_value = _response(400, payload)
    with pytest.raises(GatewayError) as exc_info:
        gateway.upload(b"<JPK/>", metadata)
    assert not isinstance(exc_info.value, AuthorityRejection)


def test_rejection_code_outside_upload_is_protocol_error(gateway, session):
    session.request.return_value = _response(422, {"code": 410})
    with pytest.raises(GatewayError):
        gateway.check_status("REF-1")


def test_check_status(gateway, session):
    session.request.return_value = _response(200, {"code": 200, "description": "Accepted"})
    status = gateway.check_status("REF-1")
    assert status.state == AuthorityState.ACCEPTED
    assert session.request.call_args.args == ("GET", "https://bramka.example/api/status/REF-1")


def test_retrieve_proof(gateway, session):
    session.request.return_value = _response(200, content=UPO)
    assert gateway.retrieve_proof("REF-1") == UPO


def test_empty_proof(gateway, session):
    session.request.return_value = _response(200, content=b"")
    with pytest.raises(ProofRetrievalError):
        gateway.retrieve_proof("REF-1")


def test_timeout_is_transient(gateway, session):
    session.request.side_effect = requests.exceptions.Timeout()
    with pytest.raises(GatewayTimeoutError):
        gateway.check_status("REF-1")


def test_connection_error_is_transient(gateway, session):
    session.request.side_effect = requests.exceptions.ConnectionError("refused")
    with pytest.raises(GatewayUnavailableError):
        gateway.check_status("REF-1")


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures(gateway, session, status: int):
    session.request.return_value = _response(status, {"error": "auth"})
    with pytest.raises(CredentialError):
        gateway.check_status("REF-1")


@pytest.mark.parametrize("status", [429, 500, 503])
def test_unavailable(gateway, session, status: int):
    session.request.return_value = _response(status, {}, headers={"Retry-After": "120"})
    with pytest.raises(GatewayUnavailableError) as exc_info:
        gateway.check_status("REF-1")
    assert exc_info.value.retry_after == 120


def test_client_error_is_permanent(gateway, session):
    session.request.return_value = _response(404, {"error": "not found"})
    with pytest.raises(GatewayError) as exc_info:
        gateway.check_status("REF-1")
    assert exc_info.value.status_code == 404


def test_non_json_body(gateway, session):
    session.request.return_value = _response(200, content=b"<html/>")
    with pytest.raises(GatewayError):
        gateway.check_status("REF-1")
