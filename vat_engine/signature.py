"""
Document signing and webhook payload verification.

Signing happens outside the engine (qualified certificate, trusted
profile, or an HMAC key in test setups). The engine only needs two
things from a signer: a signature over the exact bytes it is about to
upload, and a way to tell when the credential behind it has expired.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from vat_engine.exceptions import (
    CredentialError,
    SignatureError,
    WebhookVerificationError,
)

logger = logging.getLogger(__name__)

ALGORITHM_HMAC_SHA256 = "HMAC-SHA256"


@dataclass(frozen=True)
class DocumentSignature:
    """Detached signature over one document's content."""

    algorithm: str
    value: str  # base64
    content_digest: str  # sha256 hex of the signed bytes
    key_id: str
    signed_at: datetime


class DocumentSigner(Protocol):
    """Anything that can sign document bytes for upload."""

    key_id: str

    def sign(self, content: bytes, signed_at: datetime) -> DocumentSignature:
        ...

    def verify(self, content: bytes, signature: DocumentSignature) -> bool:
        ...


def _hmac(secret: str, content: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), content, hashlib.sha256).digest()


class HmacDocumentSigner:
    """
    HMAC-SHA256 signer keyed by a shared secret.

    expires_at models the validity window of the underlying credential;
    signing after it raises CredentialError.
    """

    def __init__(
        self,
        secret: str,
        key_id: str = "default",
        expires_at: Optional[datetime] = None,
    ) -> None:
        if not secret:
            raise CredentialError("Signing secret is not configured")
        self._secret = secret
        self.key_id = key_id
        self.expires_at = expires_at

    def sign(self, content: bytes, signed_at: datetime) -> DocumentSignature:
        if self.expires_at is not None and signed_at >= self.expires_at:
            raise CredentialError(
                f"Signing credential {self.key_id} expired", expired_at=self.expires_at
            )
        signature = DocumentSignature(
            algorithm=ALGORITHM_HMAC_SHA256,
            value=base64.b64encode(_hmac(self._secret, content)).decode("ascii"),
            content_digest=hashlib.sha256(content).hexdigest(),
            key_id=self.key_id,
            signed_at=signed_at,
        )
        logger.debug("Signed %d bytes with key %s", len(content), self.key_id)
        return signature

    def verify(self, content: bytes, signature: DocumentSignature) -> bool:
        if signature.algorithm != ALGORITHM_HMAC_SHA256:
            return False
        try:
            actual = base64.b64decode(signature.value, validate=True)
        except (binascii.Error, ValueError):
            return False
        return hmac.compare_digest(_hmac(self._secret, content), actual)


def check_signature(
    signer: DocumentSigner, content: bytes, digest: str, signature: DocumentSignature
) -> None:
    """Raise SignatureError unless the signature covers exactly these bytes."""
    if signature.content_digest != digest:
        raise SignatureError(
            "Signature was made over a different document "
            f"({signature.content_digest[:12]} != {digest[:12]})"
        )
    if not signer.verify(content, signature):
        raise SignatureError(f"Signature by key {signature.key_id} does not verify")


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def sign_webhook_payload(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of a webhook body, as sent in the signature header."""
    return base64.b64encode(_hmac(secret, body)).decode("ascii")


def verify_webhook_payload(secret: str, body: bytes, signature: Optional[str]) -> None:
    """Raise WebhookVerificationError unless the signature matches the body."""
    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured")
    if not signature:
        raise WebhookVerificationError("Webhook signature header missing")
    try:
        actual = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        raise WebhookVerificationError("Webhook signature is not valid base64")
    if not hmac.compare_digest(_hmac(secret, body), actual):
        raise WebhookVerificationError("Webhook signature does not match payload")
