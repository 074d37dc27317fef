"""
Submission workflow towards the tax authority.

Handles:
- The submission state machine (one transition function, append-only history)
- Upload with a fixed backoff schedule and a retry cap
- Status polling with a maximum duration, relaxed when webhooks are on
- Signed webhook notifications
- Idempotent proof-of-receipt retrieval

The orchestrator is synchronous. Every wait goes through the injected
sleep and every timestamp through the injected clock, so a test can
drive a full workflow without real time passing.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from vat_engine.config import DEFAULT_RETRY_SCHEDULE, EngineConfig
from vat_engine.declaration import DeclarationDocument
from vat_engine.exceptions import (
    AuthorityRejection,
    CredentialError,
    DuplicateSubmission,
    InvalidTransition,
    ProofRetrievalError,
    RetryLimitExceeded,
    SignatureError,
    StorageIntegrityError,
    TransientError,
    VatEngineError,
    WebhookVerificationError,
)
from vat_engine.gateway import (
    AuthorityGateway,
    AuthorityState,
    AuthorityStatus,
    ProofOfReceipt,
    UploadMetadata,
    WebhookEventType,
    map_status_code,
    parse_proof,
    parse_webhook,
)
from vat_engine.repositories import DocumentStore, SubmissionRepository, TenantContext
from vat_engine.signature import DocumentSignature, DocumentSigner, check_signature

logger = logging.getLogger(__name__)


class SubmissionStatus(Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    SubmissionStatus.ACCEPTED,
    SubmissionStatus.REJECTED,
    SubmissionStatus.CANCELLED,
})

_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.UPLOADING, SubmissionStatus.CANCELLED}),
    SubmissionStatus.UPLOADING: frozenset({SubmissionStatus.SUBMITTED, SubmissionStatus.FAILED}),
    SubmissionStatus.SUBMITTED: frozenset({SubmissionStatus.PROCESSING, SubmissionStatus.FAILED}),
    SubmissionStatus.PROCESSING: frozenset({
        SubmissionStatus.PROCESSING,
        SubmissionStatus.ACCEPTED,
        SubmissionStatus.REJECTED,
        SubmissionStatus.FAILED,
    }),
    # Retry re-uploads when nothing reached the authority, else resumes checking.
    SubmissionStatus.FAILED: frozenset({
        SubmissionStatus.UPLOADING,
        SubmissionStatus.PROCESSING,
        SubmissionStatus.CANCELLED,
    }),
    SubmissionStatus.ACCEPTED: frozenset(),
    SubmissionStatus.REJECTED: frozenset(),
    SubmissionStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class StatusChange:
    from_status: Optional[SubmissionStatus]
    to_status: SubmissionStatus
    at: datetime
    reason: str = ""
    authority_code: Optional[int] = None


@dataclass(frozen=True)
class AttemptRecord:
    """One call to the authority, successful or not."""

    number: int
    operation: str  # upload, status, proof
    started_at: datetime
    duration: float
    success: bool
    request: dict = field(default_factory=dict)
    response: dict = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None


@dataclass
class Submission:
    """Mutable submission record; status and retry bookkeeping change in place."""

    submission_id: str
    client_id: str
    period_label: str
    schema_version: str
    purpose_code: str
    document_digest: str
    document_locator: str
    settlement_version: int
    created_at: datetime
    signature: Optional[DocumentSignature] = None
    status: SubmissionStatus = SubmissionStatus.PENDING
    reference_number: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    last_error: Optional[dict] = None
    authority_code: Optional[int] = None
    rejection_code: Optional[str] = None
    rejection_message: Optional[str] = None
    polling_started_at: Optional[datetime] = None
    acceptance_reported: bool = False
    proof: Optional[ProofOfReceipt] = None
    proof_locator: Optional[str] = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    status_history: list[StatusChange] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def upload_attempts(self) -> int:
        return sum(1 for a in self.attempts if a.operation == "upload")

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "client_id": self.client_id,
            "period": self.period_label,
            "schema_version": self.schema_version,
            "purpose": self.purpose_code,
            "document_digest": self.document_digest,
            "status": self.status.value,
            "reference_number": self.reference_number,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "rejection_code": self.rejection_code,
            "rejection_message": self.rejection_message,
            "proof_locator": self.proof_locator,
            "last_error": self.last_error,
            "attempts": len(self.attempts),
        }


def can_transition(current: SubmissionStatus, target: SubmissionStatus) -> bool:
    return target in _TRANSITIONS[current]


def transition(
    submission: Submission,
    target: SubmissionStatus,
    at: datetime,
    reason: str = "",
    authority_code: Optional[int] = None,
) -> None:
    """Apply one state change and record it in the status history."""
    current = submission.status
    allowed = can_transition(current, target)
    if allowed and current == SubmissionStatus.FAILED:
        resumed = submission.reference_number is not None
        allowed = target == SubmissionStatus.CANCELLED or (
            resumed == (target == SubmissionStatus.PROCESSING)
        )
    if not allowed:
        raise InvalidTransition(current.value, target.value)
    submission.status = target
    submission.status_history.append(
        StatusChange(current, target, at, reason, authority_code)
    )
    if current != target:
        logger.info(
            "Submission %s: %s -> %s %s",
            submission.submission_id, current.value, target.value, reason,
        )


class RetryPolicy:
    """Fixed backoff schedule indexed by retry number, capped."""

    def __init__(
        self, schedule: tuple[int, ...] = DEFAULT_RETRY_SCHEDULE, max_retries: int = 5
    ) -> None:
        if not schedule:
            raise ValueError("Retry schedule must not be empty")
        self.schedule = tuple(schedule)
        self.max_retries = max_retries

    @classmethod
    def from_config(cls, config: EngineConfig) -> "RetryPolicy":
        return cls(config.retry_schedule, config.max_retries)

    def delay_for(self, retry_number: int) -> int:
        index = min(max(retry_number, 1), len(self.schedule)) - 1
        return self.schedule[index]

    def allows(self, retry_count: int) -> bool:
        return retry_count < self.max_retries

    def next_retry_at(self, retry_count: int, failed_at: datetime) -> Optional[datetime]:
        if not self.allows(retry_count):
            return None
        return failed_at + timedelta(seconds=self.delay_for(retry_count + 1))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionOrchestrator:
    """Drives submissions through the authority workflow."""

    def __init__(
        self,
        gateway: AuthorityGateway,
        signer: DocumentSigner,
        store: DocumentStore,
        config: Optional[EngineConfig] = None,
        repository: Optional[SubmissionRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.gateway = gateway
        self.signer = signer
        self.store = store
        self.config = config or EngineConfig()
        self.repository = repository
        self.policy = RetryPolicy.from_config(self.config)
        self.clock = clock or _utcnow
        self.sleep = sleep or time.sleep

    # -- bookkeeping --------------------------------------------------------

    def _save(self, ctx: TenantContext, submission: Submission) -> None:
        if self.repository is not None:
            self.repository.save(ctx, submission)

    def _record(
        self,
        submission: Submission,
        operation: str,
        started_at: datetime,
        request: dict,
        response: Optional[dict] = None,
        error: Optional[VatEngineError] = None,
    ) -> AttemptRecord:
        duration = (self.clock() - started_at).total_seconds()
        attempt = AttemptRecord(
            number=len(submission.attempts) + 1,
            operation=operation,
            started_at=started_at,
            duration=duration,
            success=error is None,
            request=request,
            response=response or {},
            error_code=error.code if error else None,
            error_message=error.message if error else None,
            next_retry_at=submission.next_retry_at if error else None,
        )
        submission.attempts.append(attempt)
        return attempt

    def _fail(
        self,
        submission: Submission,
        error: VatEngineError,
        reason: str,
        retryable: bool,
    ) -> None:
        now = self.clock()
        submission.last_error = error.to_dict()
        submission.next_retry_at = (
            self.policy.next_retry_at(submission.retry_count, now) if retryable else None
        )
        transition(submission, SubmissionStatus.FAILED, now, reason)
        if submission.next_retry_at is not None:
            logger.warning(
                "Submission %s failed (%s); next retry at %s",
                submission.submission_id, error, submission.next_retry_at.isoformat(),
            )
        else:
            logger.warning("Submission %s failed (%s); no automatic retry",
                           submission.submission_id, error)

    def _load_document(self, ctx: TenantContext, submission: Submission) -> bytes:
        content = self.store.get(ctx, submission.document_locator)
        actual = hashlib.sha256(content).hexdigest()
        if actual != submission.document_digest:
            raise StorageIntegrityError(submission.document_digest, actual)
        return content

    # -- creation -----------------------------------------------------------

    def _existing(
        self, ctx: TenantContext, submission_id: str, document: DeclarationDocument
    ) -> Optional[Submission]:
        if self.repository is None:
            return None
        existing = self.repository.get(ctx, submission_id)
        if existing is not None:
            if existing.is_terminal or existing.document_digest != document.digest:
                raise DuplicateSubmission(submission_id, existing.status.value)
            return existing
        for open_submission in self.repository.list_open(ctx):
            if (
                open_submission.client_id == document.client_id
                and open_submission.document_digest == document.digest
            ):
                return open_submission
        return None

    def create_submission(
        self,
        ctx: TenantContext,
        document: DeclarationDocument,
        signature: Optional[DocumentSignature] = None,
        submission_id: Optional[str] = None,
    ) -> Submission:
        """
        Store the document, check its signature and open a PENDING record.

        A document has at most one open submission: when one exists it is
        returned unchanged, with its history and attempts. An id that
        already belongs to a settled submission raises DuplicateSubmission.
        """
        now = self.clock()
        if not document.verify():
            raise StorageIntegrityError(document.digest, "content changed after generation")
        submission_id = submission_id or (
            f"SUB-{document.client_id}-{document.period_label}-{document.digest[:12]}"
        )
        existing = self._existing(ctx, submission_id, document)
        if existing is not None:
            logger.info(
                "Submission %s already open for document %s",
                existing.submission_id, document.digest[:12],
            )
            return existing

        if signature is None:
            signature = self.signer.sign(document.content, now)
        check_signature(self.signer, document.content, document.digest, signature)

        name = (
            f"{document.client_id}/{document.period_label}/"
            f"{document.schema_version}-{document.digest[:12]}.xml"
        )
        stored = self.store.put(ctx, name, document.content)
        if stored.sha256 != document.digest:
            raise StorageIntegrityError(document.digest, stored.sha256)

        submission = Submission(
            submission_id=submission_id,
            client_id=document.client_id,
            period_label=document.period_label,
            schema_version=document.schema_version,
            purpose_code=document.purpose.value,
            document_digest=document.digest,
            document_locator=stored.locator,
            settlement_version=document.settlement_version,
            created_at=now,
            signature=signature,
        )
        submission.status_history.append(
            StatusChange(None, SubmissionStatus.PENDING, now, "created")
        )
        self._save(ctx, submission)
        logger.info("Submission %s created for %s", submission.submission_id, stored.locator)
        return submission

    # -- upload -------------------------------------------------------------

    def _upload_once(self, ctx: TenantContext, submission: Submission) -> Submission:
        transition(submission, SubmissionStatus.UPLOADING, self.clock())
        try:
            content = self._load_document(ctx, submission)
            if submission.signature is None:
                raise SignatureError(f"Submission {submission.submission_id} is not signed")
            check_signature(
                self.signer, content, submission.document_digest, submission.signature
            )
        except VatEngineError as exc:
            self._fail(submission, exc, "document check failed", retryable=False)
            self._save(ctx, submission)
            raise

        metadata = UploadMetadata(
            submission_id=submission.submission_id,
            client_id=submission.client_id,
            period_label=submission.period_label,
            schema_version=submission.schema_version,
            purpose_code=submission.purpose_code,
            document_digest=submission.document_digest,
            signature=submission.signature,
        )
        request = {"size": len(content), "digest": submission.document_digest}
        started = self.clock()
        try:
            reference = self.gateway.upload(content, metadata)
        except TransientError as exc:
            self._fail(submission, exc, "upload failed", retryable=True)
            self._record(submission, "upload", started, request, error=exc)
            self._save(ctx, submission)
            return submission
        except AuthorityRejection as exc:
            submission.rejection_code = exc.authority_code
            submission.rejection_message = exc.authority_message
            self._fail(submission, exc, "rejected at upload", retryable=False)
            self._record(submission, "upload", started, request, error=exc)
            self._save(ctx, submission)
            raise
        except CredentialError as exc:
            self._fail(submission, exc, "credentials rejected", retryable=False)
            self._record(submission, "upload", started, request, error=exc)
            self._save(ctx, submission)
            raise
        except VatEngineError as exc:
            self._fail(submission, exc, "upload error", retryable=False)
            self._record(submission, "upload", started, request, error=exc)
            self._save(ctx, submission)
            raise

        now = self.clock()
        submission.reference_number = reference
        submission.next_retry_at = None
        submission.last_error = None
        submission.polling_started_at = now
        self._record(submission, "upload", started, request, {"referenceNumber": reference})
        transition(submission, SubmissionStatus.SUBMITTED, now, f"reference {reference}")
        self._save(ctx, submission)
        return submission

    def submit(self, ctx: TenantContext, submission: Submission) -> Submission:
        """First upload attempt of a PENDING submission."""
        if submission.status != SubmissionStatus.PENDING:
            raise InvalidTransition(submission.status.value, SubmissionStatus.UPLOADING.value)
        return self._upload_once(ctx, submission)

    def submit_with_retries(self, ctx: TenantContext, submission: Submission) -> Submission:
        """
        Upload, retrying transient failures on the backoff schedule.

        Stops at SUBMITTED, at a non-retryable failure, or when the retry
        cap is reached (the submission is then left FAILED).
        """
        if submission.status == SubmissionStatus.PENDING:
            self.submit(ctx, submission)
        while (
            submission.status == SubmissionStatus.FAILED
            and submission.reference_number is None
            and submission.next_retry_at is not None
            and self.policy.allows(submission.retry_count)
        ):
            self.retry(ctx, submission)
        return submission

    # -- status -------------------------------------------------------------

    def _apply_status(
        self, ctx: TenantContext, submission: Submission, status: AuthorityStatus, source: str
    ) -> Submission:
        now = self.clock()
        state = status.state
        if submission.status == SubmissionStatus.SUBMITTED or (
            submission.status == SubmissionStatus.PROCESSING
            and status.code != submission.authority_code
            and state == AuthorityState.IN_PROGRESS
        ):
            transition(
                submission, SubmissionStatus.PROCESSING, now,
                f"{source}: {status.description}".strip(), status.code,
            )
        submission.authority_code = status.code

        if state == AuthorityState.REJECTED:
            submission.rejection_code = str(status.code)
            submission.rejection_message = status.details or status.description
            transition(
                submission, SubmissionStatus.REJECTED, now,
                f"{source}: {submission.rejection_message}", status.code,
            )
            logger.warning(
                "Submission %s rejected by authority: [%s] %s",
                submission.submission_id, submission.rejection_code,
                submission.rejection_message,
            )
            self._save(ctx, submission)
            return submission

        if state == AuthorityState.ACCEPTED:
            submission.acceptance_reported = True
            self._save(ctx, submission)
            return self.retrieve_proof(ctx, submission)

        self._save(ctx, submission)
        return submission

    def _polling_expired(self, submission: Submission, now: datetime) -> bool:
        if submission.polling_started_at is None:
            return False
        elapsed = (now - submission.polling_started_at).total_seconds()
        return elapsed > self.config.max_polling_duration

    def poll(self, ctx: TenantContext, submission: Submission) -> Submission:
        """One status check for a SUBMITTED or PROCESSING submission."""
        if submission.status not in (SubmissionStatus.SUBMITTED, SubmissionStatus.PROCESSING):
            raise InvalidTransition(submission.status.value, SubmissionStatus.PROCESSING.value)
        if submission.acceptance_reported:
            return self.retrieve_proof(ctx, submission)

        now = self.clock()
        if self._polling_expired(submission, now):
            error = TransientError(
                f"No final status after {self.config.max_polling_duration}s of polling",
                code="POLLING_TIMEOUT",
            )
            self._fail(submission, error, "polling timed out", retryable=True)
            self._save(ctx, submission)
            return submission

        request = {"referenceNumber": submission.reference_number}
        started = self.clock()
        try:
            status = self.gateway.check_status(submission.reference_number)
            map_status_code(status.code)  # unknown codes are protocol errors
        except TransientError as exc:
            self._fail(submission, exc, "status check failed", retryable=True)
            self._record(submission, "status", started, request, error=exc)
            self._save(ctx, submission)
            return submission
        except VatEngineError as exc:
            self._fail(submission, exc, "status check error", retryable=False)
            self._record(submission, "status", started, request, error=exc)
            self._save(ctx, submission)
            raise

        self._record(
            submission, "status", started, request,
            {"code": status.code, "description": status.description},
        )
        return self._apply_status(ctx, submission, status, "status check")

    def await_outcome(self, ctx: TenantContext, submission: Submission) -> Submission:
        """
        Poll until a final status, a failure, or the polling window closes.

        Once the authority reports acceptance, a proof fetch that fails on a
        transient gateway error is retried on the poll interval until the
        polling window closes. The reported acceptance is kept meanwhile.
        """
        interval = self.config.effective_poll_interval
        while submission.status in (SubmissionStatus.SUBMITTED, SubmissionStatus.PROCESSING):
            try:
                self.poll(ctx, submission)
            except ProofRetrievalError as exc:
                if not exc.retryable or self._polling_expired(submission, self.clock()):
                    raise
                logger.info(
                    "Proof for %s not available yet (%s); retrying in %ss",
                    submission.submission_id, exc.message, interval,
                )
            if submission.status in (SubmissionStatus.SUBMITTED, SubmissionStatus.PROCESSING):
                self.sleep(interval)
        return submission

    def run(self, ctx: TenantContext, submission: Submission) -> Submission:
        """Upload and follow a submission until it settles or needs a human."""
        while not submission.is_terminal:
            if submission.status == SubmissionStatus.PENDING:
                self.submit(ctx, submission)
            elif submission.status == SubmissionStatus.FAILED:
                if submission.next_retry_at is None or not self.policy.allows(
                    submission.retry_count
                ):
                    break
                self.retry(ctx, submission)
            else:
                self.await_outcome(ctx, submission)
        return submission

    # -- webhooks -----------------------------------------------------------

    def handle_webhook(
        self,
        ctx: TenantContext,
        submission: Submission,
        body: bytes,
        signature: Optional[str],
    ) -> Submission:
        """Apply a verified notification. Polling keeps running regardless."""
        event = parse_webhook(body, signature, self.config.webhook_secret)
        if event.reference_number != submission.reference_number:
            raise WebhookVerificationError(
                f"Webhook for {event.reference_number} does not match "
                f"submission {submission.submission_id}"
            )
        if submission.is_terminal:
            logger.debug(
                "Ignoring %s webhook for %s submission %s",
                event.event.value, submission.status.value, submission.submission_id,
            )
            return submission
        if submission.status == SubmissionStatus.FAILED:
            transition(submission, SubmissionStatus.PROCESSING, self.clock(), "webhook")
            submission.polling_started_at = self.clock()

        if event.event == WebhookEventType.PROOF_READY:
            if submission.status == SubmissionStatus.SUBMITTED:
                transition(submission, SubmissionStatus.PROCESSING, self.clock(), "webhook")
            submission.acceptance_reported = True
            self._save(ctx, submission)
            return self.retrieve_proof(ctx, submission)
        if event.event == WebhookEventType.REJECTED:
            status = AuthorityStatus(
                code=event.code if event.code is not None else 400,
                description="rejected",
                details=event.message,
            )
        else:
            if event.code is None:
                raise WebhookVerificationError("status_changed webhook without a code")
            status = AuthorityStatus(code=event.code, description=event.message)
        return self._apply_status(ctx, submission, status, "webhook")

    # -- proof --------------------------------------------------------------

    def retrieve_proof(self, ctx: TenantContext, submission: Submission) -> Submission:
        """
        Fetch, parse and store the UPO, then mark the submission ACCEPTED.

        Safe to call from polling and webhooks alike: once a proof is
        stored, further calls return the submission unchanged.
        """
        if submission.proof is not None:
            return submission
        if submission.status != SubmissionStatus.PROCESSING or not submission.acceptance_reported:
            raise InvalidTransition(submission.status.value, SubmissionStatus.ACCEPTED.value)

        reference = submission.reference_number
        request = {"referenceNumber": reference}
        started = self.clock()
        try:
            content = self.gateway.retrieve_proof(reference)
            proof = parse_proof(content, reference)
            if proof.document_digest and proof.document_digest.lower() != submission.document_digest:
                raise ProofRetrievalError(
                    "Proof of receipt digest does not match the submitted document", reference
                )
        except CredentialError as exc:
            submission.last_error = exc.to_dict()
            self._record(submission, "proof", started, request, error=exc)
            self._save(ctx, submission)
            raise
        except VatEngineError as exc:
            error = exc if isinstance(exc, ProofRetrievalError) else ProofRetrievalError(
                f"Proof retrieval failed: {exc.message}",
                reference,
                retryable=isinstance(exc, TransientError),
            )
            submission.last_error = error.to_dict()
            self._record(submission, "proof", started, request, error=error)
            self._save(ctx, submission)
            logger.warning("Proof retrieval for %s failed: %s", submission.submission_id, error)
            if error is exc:
                raise
            raise error from exc

        stored = self.store.put(
            ctx, f"{submission.client_id}/{submission.period_label}/UPO-{reference}.xml", content
        )
        proof_digest = hashlib.sha256(content).hexdigest()
        if stored.sha256 != proof_digest:
            raise StorageIntegrityError(proof_digest, stored.sha256)

        submission.proof = proof
        submission.proof_locator = stored.locator
        submission.last_error = None
        self._record(
            submission, "proof", started, request,
            {"upoNumber": proof.upo_number, "size": len(content)},
        )
        transition(
            submission, SubmissionStatus.ACCEPTED, self.clock(),
            f"proof {proof.upo_number or reference}", submission.authority_code,
        )
        self._save(ctx, submission)
        return submission

    # -- retry / cancel -----------------------------------------------------

    def retry(self, ctx: TenantContext, submission: Submission, force: bool = False) -> Submission:
        """
        Retry a FAILED submission on the same record.

        Waits until next_retry_at unless forced. Past the retry cap only a
        forced retry proceeds.
        """
        if submission.status != SubmissionStatus.FAILED:
            raise InvalidTransition(submission.status.value, "retry")
        if not force and not self.policy.allows(submission.retry_count):
            raise RetryLimitExceeded(submission.retry_count, self.policy.max_retries)
        if not force and submission.next_retry_at is not None:
            wait = (submission.next_retry_at - self.clock()).total_seconds()
            if wait > 0:
                self.sleep(wait)

        submission.retry_count += 1
        logger.info(
            "Retry %d of submission %s%s",
            submission.retry_count, submission.submission_id, " (forced)" if force else "",
        )
        if submission.reference_number is None:
            return self._upload_once(ctx, submission)

        now = self.clock()
        transition(submission, SubmissionStatus.PROCESSING, now, "retry")
        submission.polling_started_at = now
        submission.next_retry_at = None
        return self.poll(ctx, submission)

    def cancel(self, ctx: TenantContext, submission: Submission, reason: str = "") -> Submission:
        """Only PENDING or FAILED submissions can be cancelled."""
        transition(submission, SubmissionStatus.CANCELLED, self.clock(), reason or "cancelled")
        submission.next_retry_at = None
        self._save(ctx, submission)
        return submission
