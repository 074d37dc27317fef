"""
Tax authority gateway.

Handles:
- Document upload, status checks and proof-of-receipt (UPO) download
- Mapping HTTP and transport failures onto the engine error taxonomy
- Mapping authority status codes onto internal processing states
- Parsing UPO documents and signed webhook notifications
"""

from __future__ import annotations

import json
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

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
from vat_engine.signature import DocumentSignature, verify_webhook_payload

logger = logging.getLogger(__name__)


class AuthorityState(Enum):
    IN_PROGRESS = "in_progress"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


def map_status_code(code: int) -> AuthorityState:
    """
    The one mapping from authority status codes to internal states.

    1xx and 3xx: still processing. 200: accepted, UPO available.
    4xx: rejected. Anything else is a protocol error.
    """
    if 100 <= code <= 199 or 300 <= code <= 399:
        return AuthorityState.IN_PROGRESS
    if code == 200:
        return AuthorityState.ACCEPTED
    if 400 <= code <= 499:
        return AuthorityState.REJECTED
    raise GatewayError(f"Unknown authority status code {code}", status_code=code)


@dataclass(frozen=True)
class AuthorityStatus:
    code: int
    description: str = ""
    details: str = ""

    @property
    def state(self) -> AuthorityState:
        return map_status_code(self.code)

    @classmethod
    def from_dict(cls, data: dict) -> "AuthorityStatus":
        try:
            code = int(data["code"])
        except (KeyError, TypeError, ValueError):
            raise GatewayError("Status response without a numeric code", response_data=data)
        return cls(
            code=code,
            description=str(data.get("description") or ""),
            details=str(data.get("details") or ""),
        )


@dataclass(frozen=True)
class UploadMetadata:
    """What the authority needs next to the document bytes."""

    submission_id: str
    client_id: str
    period_label: str
    schema_version: str
    purpose_code: str
    document_digest: str
    signature: DocumentSignature

    @property
    def filename(self) -> str:
        return f"{self.client_id}_{self.period_label}_{self.document_digest[:12]}.xml"


@dataclass(frozen=True)
class ProofOfReceipt:
    """Parsed UPO."""

    reference_number: str
    received_at: Optional[datetime]
    document_digest: Optional[str]
    upo_number: Optional[str]
    content: bytes


class AuthorityGateway(Protocol):
    def upload(self, content: bytes, metadata: UploadMetadata) -> str:
        ...

    def check_status(self, reference_number: str) -> AuthorityStatus:
        ...

    def retrieve_proof(self, reference_number: str) -> bytes:
        ...


# ---------------------------------------------------------------------------
# UPO parsing
# ---------------------------------------------------------------------------


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(root: ET.Element, *names: str) -> Optional[str]:
    for element in root.iter():
        if _local(element.tag) in names and element.text and element.text.strip():
            return element.text.strip()
    return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_proof(content: bytes, expected_reference: str) -> ProofOfReceipt:
    """Parse a UPO and check it belongs to the expected submission."""
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ProofRetrievalError(
            f"Proof of receipt is not well-formed XML: {exc}", expected_reference
        )
    reference = _find_text(root, "NumerReferencyjny")
    if reference is None:
        raise ProofRetrievalError("Proof of receipt has no reference number", expected_reference)
    if reference != expected_reference:
        raise ProofRetrievalError(
            f"Proof of receipt is for {reference}, expected {expected_reference}",
            expected_reference,
        )
    return ProofOfReceipt(
        reference_number=reference,
        received_at=_parse_timestamp(_find_text(root, "DataWplyniecia", "DataOdbioru")),
        document_digest=_find_text(root, "SkrotDokumentu"),
        upo_number=_find_text(root, "NumerUPO"),
        content=content,
    )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookEventType(Enum):
    STATUS_CHANGED = "status_changed"
    PROOF_READY = "proof_ready"
    REJECTED = "rejected"


@dataclass(frozen=True)
class WebhookEvent:
    reference_number: str
    event: WebhookEventType
    code: Optional[int] = None
    message: str = ""


def parse_webhook(body: bytes, signature: Optional[str], secret: Optional[str]) -> WebhookEvent:
    """Verify the signature first; only then look at the payload."""
    verify_webhook_payload(secret or "", body, signature)
    try:
        data = json.loads(body.decode("utf-8"))
        event = WebhookEventType(data["event"])
        reference = str(data["referenceNumber"])
        code = data.get("code")
        return WebhookEvent(
            reference_number=reference,
            event=event,
            code=int(code) if code is not None else None,
            message=str(data.get("message") or ""),
        )
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        raise WebhookVerificationError(f"Malformed webhook payload: {exc}")


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------


def _retry_after(response: requests.Response) -> Optional[int]:
    value = response.headers.get("Retry-After", "")
    return int(value) if value.isdigit() else None


def _intake_rejection(response: requests.Response) -> Optional[AuthorityRejection]:
    """A 4xx upload answer that carries an authority rejection code (400-499)."""
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        code = int(data["code"])
    except (KeyError, TypeError, ValueError):
        return None
    if not 400 <= code <= 499:
        return None
    message = str(data.get("details") or data.get("description") or "rejected")
    return AuthorityRejection(str(code), message)


class HttpAuthorityGateway:
    """
    requests-based client for the e-Bramka REST interface.

    The session is configuration: it is reused across attempts and never
    carries per-submission state.
    """

    def __init__(self, config: EngineConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self.config.authority_url

    def _request(
        self, method: str, path: str, intake: bool = False, **kwargs: Any
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        start = time.monotonic()
        try:
            response = self.session.request(
                method, url, timeout=self.config.request_timeout, **kwargs
            )
        except requests.exceptions.Timeout:
            raise GatewayTimeoutError(
                f"{method} {path} timed out after {self.config.request_timeout}s"
            )
        except requests.exceptions.ConnectionError as exc:
            raise GatewayUnavailableError(f"Connection error: {exc}")
        finally:
            logger.debug(
                "%s %s finished in %.2fs", method, url, time.monotonic() - start
            )

        status = response.status_code
        if status in (401, 403):
            raise CredentialError(f"Authority refused credentials (HTTP {status})")
        if status == 429 or status >= 500:
            raise GatewayUnavailableError(
                f"Authority unavailable (HTTP {status})", retry_after=_retry_after(response)
            )
        if status >= 400 and intake:
            rejection = _intake_rejection(response)
            if rejection is not None:
                raise rejection
        if status >= 400:
            raise GatewayError(
                f"HTTP {status}: {response.text[:200]}",
                status_code=status,
                response_data=response.text[:2000],
            )
        return response

    @staticmethod
    def _json(response: requests.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            raise GatewayError(
                "Authority response is not JSON",
                status_code=response.status_code,
                response_data=response.text[:2000],
            )
        if not isinstance(data, dict):
            raise GatewayError("Unexpected authority response shape", response_data=data)
        return data

    def upload(self, content: bytes, metadata: UploadMetadata) -> str:
        headers = {
            "Content-Type": "application/xml",
            "Accept": "application/json",
            "X-Document-Name": metadata.filename,
            "X-Document-Digest": metadata.document_digest,
            "X-Schema-Version": metadata.schema_version,
            "X-Submission-Purpose": metadata.purpose_code,
            "X-Signature": metadata.signature.value,
            "X-Signature-Algorithm": metadata.signature.algorithm,
            "X-Signature-Key-Id": metadata.signature.key_id,
        }
        response = self._request(
            "POST", "/api/upload", intake=True, data=content, headers=headers
        )
        data = self._json(response)
        reference = data.get("referenceNumber")
        if not reference:
            raise GatewayError("Upload response without a reference number", response_data=data)
        logger.info("Uploaded %s as %s", metadata.submission_id, reference)
        return str(reference)

    def check_status(self, reference_number: str) -> AuthorityStatus:
        response = self._request(
            "GET", f"/api/status/{reference_number}", headers={"Accept": "application/json"}
        )
        return AuthorityStatus.from_dict(self._json(response))

    def retrieve_proof(self, reference_number: str) -> bytes:
        response = self._request(
            "GET", f"/api/upo/{reference_number}", headers={"Accept": "application/xml"}
        )
        if not response.content:
            raise ProofRetrievalError("Empty proof of receipt", reference_number)
        return response.content
