"""Tests for the in-memory repositories and document store."""

import hashlib
from datetime import date
from decimal import Decimal

import pytest

from vat_engine.calculator import TransactionInput, TransactionStatus, TransactionType, VatCalculator
from vat_engine.exceptions import ValidationError
from vat_engine.periods import PeriodKey
from vat_engine.repositories import (
    InMemoryDocumentStore,
    InMemorySettlementRepository,
    InMemoryTransactionRepository,
    TenantContext,
)
from vat_engine.settlement import SettlementAggregator

ORG_A = TenantContext("org-a")
ORG_B = TenantContext("org-b")
MARCH = PeriodKey.of_month(2024, 3)


def _txn(txn_id: str, seq: int, txn_date: date = date(2024, 3, 5)):
    doc = TransactionInput(
        transaction_id=txn_id,
        client_id="ACME",
        document_number=f"FV/{txn_id}",
        transaction_type=TransactionType.DOMESTIC_SALE,
        transaction_date=txn_date,
        amount=Decimal("100.00"),
        rate_code="23",
    )
    return VatCalculator().post(doc, sequence_number=seq)


# ── Transactions ─────────────────────────────────────────────────────


def test_transactions_listed_in_ingestion_order():
    repo = InMemoryTransactionRepository()
    repo.add(ORG_A, _txn("B", 2))
    repo.add(ORG_A, _txn("A", 1))
    repo.add(ORG_A, _txn("C", 3, date(2024, 4, 2)))
    assert [t.transaction_id for t in repo.list_for_period(ORG_A, "ACME", MARCH)] == ["A", "B"]


def test_duplicate_transaction_rejected():
    repo = InMemoryTransactionRepository()
    repo.add(ORG_A, _txn("A", 1))
    with pytest.raises(ValidationError):
        repo.add(ORG_A, _txn("A", 2))


def test_transactions_isolated_by_tenant():
    repo = InMemoryTransactionRepository()
    repo.add(ORG_A, _txn("A", 1))
    assert repo.get(ORG_B, "A") is None
    assert repo.list_for_period(ORG_B, "ACME", MARCH) == []
    repo.add(ORG_B, _txn("A", 1))


def test_update_status():
    repo = InMemoryTransactionRepository()
    repo.add(ORG_A, _txn("A", 1))
    updated = repo.update_status(ORG_A, "A", TransactionStatus.CORRECTED)
    assert updated.status == TransactionStatus.CORRECTED
    assert repo.get(ORG_A, "A").status == TransactionStatus.CORRECTED
    with pytest.raises(ValidationError):
        repo.update_status(ORG_A, "missing", TransactionStatus.CORRECTED)


# ── Settlements ──────────────────────────────────────────────────────


def test_settlement_versions():
    repo = InMemorySettlementRepository()
    aggregator = SettlementAggregator()
    v1 = aggregator.aggregate(MARCH, [_txn("A", 1)], client_id="ACME")
    v2 = aggregator.aggregate(MARCH, [_txn("A", 1), _txn("B", 2)], client_id="ACME", version=2)
    repo.save(ORG_A, v2)
    repo.save(ORG_A, v1)

    assert [s.version for s in repo.versions(ORG_A, "ACME", MARCH)] == [1, 2]
    assert repo.get(ORG_A, "ACME", MARCH) is v2
    assert repo.get(ORG_A, "ACME", MARCH, version=1) is v1
    assert repo.get(ORG_A, "ACME", MARCH, version=3) is None
    assert repo.get(ORG_B, "ACME", MARCH) is None


# ── Documents ────────────────────────────────────────────────────────


def test_store_reports_content_hash():
    store = InMemoryDocumentStore()
    content = b"<JPK/>"
    stored = store.put(ORG_A, "ACME/2024-03/doc.xml", content)
    assert stored.sha256 == hashlib.sha256(content).hexdigest()
    assert stored.size == len(content)
    assert stored.locator.startswith("mem://org-a/ACME/2024-03/doc.xml#")
    assert store.get(ORG_A, stored.locator) == content


def test_store_refuses_other_tenant():
    store = InMemoryDocumentStore()
    stored = store.put(ORG_A, "doc.xml", b"<JPK/>")
    with pytest.raises(ValidationError):
        store.get(ORG_B, stored.locator)


def test_store_unknown_locator():
    with pytest.raises(ValidationError):
        InMemoryDocumentStore().get(ORG_A, "mem://org-a/nothing#0")
