"""
Persistence and document storage boundaries.

The engine never owns storage. Every call carries an explicit
TenantContext; there is no ambient tenant state. The in-memory
implementations back tests, the CLI and the batch runner.
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

from vat_engine.calculator import Transaction, TransactionStatus
from vat_engine.exceptions import ValidationError
from vat_engine.periods import PeriodKey
from vat_engine.settlement import PeriodSettlement

if TYPE_CHECKING:
    from vat_engine.submission import Submission


@dataclass(frozen=True)
class TenantContext:
    organization_id: str
    user_id: Optional[str] = None


@dataclass(frozen=True)
class StoredObject:
    """Opaque locator plus the content hash computed by the store."""

    locator: str
    sha256: str
    size: int


class TransactionRepository(Protocol):
    def add(self, ctx: TenantContext, transaction: Transaction) -> None:
        ...

    def get(self, ctx: TenantContext, transaction_id: str) -> Optional[Transaction]:
        ...

    def corrections_of(self, ctx: TenantContext, transaction_id: str) -> list[Transaction]:
        ...

    def list_for_period(
        self, ctx: TenantContext, client_id: str, period: PeriodKey
    ) -> list[Transaction]:
        ...

    def update_status(
        self, ctx: TenantContext, transaction_id: str, status: TransactionStatus
    ) -> Transaction:
        ...


class SettlementRepository(Protocol):
    def save(self, ctx: TenantContext, settlement: PeriodSettlement) -> None:
        ...

    def get(
        self,
        ctx: TenantContext,
        client_id: str,
        period: PeriodKey,
        version: Optional[int] = None,
    ) -> Optional[PeriodSettlement]:
        ...

    def versions(
        self, ctx: TenantContext, client_id: str, period: PeriodKey
    ) -> list[PeriodSettlement]:
        ...


class SubmissionRepository(Protocol):
    def save(self, ctx: TenantContext, submission: "Submission") -> None:
        ...

    def get(self, ctx: TenantContext, submission_id: str) -> Optional["Submission"]:
        ...

    def list_open(self, ctx: TenantContext) -> list["Submission"]:
        ...


class DocumentStore(Protocol):
    def put(self, ctx: TenantContext, name: str, content: bytes) -> StoredObject:
        ...

    def get(self, ctx: TenantContext, locator: str) -> bytes:
        ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryTransactionRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, Transaction]] = {}

    def add(self, ctx: TenantContext, transaction: Transaction) -> None:
        with self._lock:
            bucket = self._data.setdefault(ctx.organization_id, {})
            if transaction.transaction_id in bucket:
                raise ValidationError(
                    f"Transaction {transaction.transaction_id} already exists",
                    field="transaction_id",
                )
            bucket[transaction.transaction_id] = transaction

    def get(self, ctx: TenantContext, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._data.get(ctx.organization_id, {}).get(transaction_id)

    def corrections_of(self, ctx: TenantContext, transaction_id: str) -> list[Transaction]:
        with self._lock:
            found = [
                t for t in self._data.get(ctx.organization_id, {}).values()
                if t.corrects_transaction_id == transaction_id
            ]
        return sorted(found, key=lambda t: t.correction_sequence)

    def list_for_period(
        self, ctx: TenantContext, client_id: str, period: PeriodKey
    ) -> list[Transaction]:
        with self._lock:
            found = [
                t for t in self._data.get(ctx.organization_id, {}).values()
                if t.client_id == client_id and period.contains(t.tax_year, t.tax_month)
            ]
        return sorted(found, key=lambda t: t.sequence_number)

    def update_status(
        self, ctx: TenantContext, transaction_id: str, status: TransactionStatus
    ) -> Transaction:
        with self._lock:
            bucket = self._data.get(ctx.organization_id, {})
            if transaction_id not in bucket:
                raise ValidationError(
                    f"Unknown transaction {transaction_id}", field="transaction_id"
                )
            updated = bucket[transaction_id].with_status(status)
            bucket[transaction_id] = updated
            return updated


class InMemorySettlementRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[tuple[str, str, str], dict[int, PeriodSettlement]] = {}

    def save(self, ctx: TenantContext, settlement: PeriodSettlement) -> None:
        key = (ctx.organization_id, settlement.client_id, settlement.period.label)
        with self._lock:
            self._data.setdefault(key, {})[settlement.version] = settlement

    def get(
        self,
        ctx: TenantContext,
        client_id: str,
        period: PeriodKey,
        version: Optional[int] = None,
    ) -> Optional[PeriodSettlement]:
        versions = self.versions(ctx, client_id, period)
        if not versions:
            return None
        if version is None:
            return versions[-1]
        return next((s for s in versions if s.version == version), None)

    def versions(
        self, ctx: TenantContext, client_id: str, period: PeriodKey
    ) -> list[PeriodSettlement]:
        with self._lock:
            stored = self._data.get((ctx.organization_id, client_id, period.label), {})
            return [stored[v] for v in sorted(stored)]


class InMemorySubmissionRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, "Submission"]] = {}

    def save(self, ctx: TenantContext, submission: "Submission") -> None:
        with self._lock:
            self._data.setdefault(ctx.organization_id, {})[submission.submission_id] = submission

    def get(self, ctx: TenantContext, submission_id: str) -> Optional["Submission"]:
        with self._lock:
            return self._data.get(ctx.organization_id, {}).get(submission_id)

    def list_open(self, ctx: TenantContext) -> list["Submission"]:
        with self._lock:
            return [
                s for s in self._data.get(ctx.organization_id, {}).values()
                if not s.is_terminal
            ]


class InMemoryDocumentStore:
    """Content-addressed byte store; locators embed the content hash."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, bytes] = {}

    def put(self, ctx: TenantContext, name: str, content: bytes) -> StoredObject:
        digest = hashlib.sha256(content).hexdigest()
        locator = f"mem://{ctx.organization_id}/{name}#{digest[:16]}"
        with self._lock:
            self._objects[locator] = bytes(content)
        return StoredObject(locator=locator, sha256=digest, size=len(content))

    def get(self, ctx: TenantContext, locator: str) -> bytes:
        if not locator.startswith(f"mem://{ctx.organization_id}/"):
            raise ValidationError(f"Locator {locator} belongs to another tenant", field="locator")
        with self._lock:
            try:
                return self._objects[locator]
            except KeyError:
                raise ValidationError(f"Unknown document {locator}", field="locator")
