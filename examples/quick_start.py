#!/usr/bin/env python3
"""
Quick Start Example
===================

Demonstrates basic usage of the VatCalculator and SettlementAggregator:
posts a sale and a purchase for March 2024, settles the month with a
carry-forward from February and prints the JPK_V7M document.

Usage:
    python examples/quick_start.py
"""

from datetime import date, datetime, timezone
from decimal import Decimal

from vat_engine.calculator import Counterparty, TransactionInput, TransactionType, VatCalculator
from vat_engine.compliance import ClientProfile, TaxpayerKind
from vat_engine.declaration import DeclarationSerializer, SubmissionPurpose
from vat_engine.periods import PeriodKey
from vat_engine.settlement import SettlementAggregator


def main() -> None:
    calculator = VatCalculator()

    # Net 1000.00 at the standard rate
    sale = TransactionInput(
        transaction_id="S-001",
        client_id="ACME",
        document_number="FV/03/001",
        transaction_type=TransactionType.DOMESTIC_SALE,
        transaction_date=date(2024, 3, 4),
        amount=Decimal("1000.00"),
        rate_code="23",
        counterparty=Counterparty(name="Kowalski Sp. z o.o.", tax_id="1234563218"),
    )
    purchase = TransactionInput(
        transaction_id="P-001",
        client_id="ACME",
        document_number="FZ/03/101",
        transaction_type=TransactionType.DOMESTIC_PURCHASE,
        transaction_date=date(2024, 3, 5),
        amount=Decimal("400.00"),
        rate_code="23",
        counterparty=Counterparty(name="Office Supplies", tax_id="5260250274"),
    )
    posting = calculator.post_batch([sale, purchase])

    for txn in posting.transactions:
        print(f"{txn.document_number:<12} {txn.direction.value:<7} "
              f"net {txn.net_amount:>9} vat {txn.vat_amount:>8} gross {txn.gross_amount:>9}")

    # Settle March with 50.00 carried over from February
    settlement = SettlementAggregator().aggregate(
        PeriodKey.of_month(2024, 3),
        posting.transactions,
        carry_forward_in=Decimal("50.00"),
        client_id="ACME",
    )
    print(f"\nOutput VAT:       {settlement.output_total}")
    print(f"Input VAT:        {settlement.input_total}")
    print(f"Carry-forward in: {settlement.carry_forward_in}")
    print(f"Due:              {settlement.final_due}")
    print(f"Refund:           {settlement.final_refund}")

    profile = ClientProfile(
        client_id="ACME",
        nip="5260250274",
        kind=TaxpayerKind.LEGAL_ENTITY,
        full_name="ACME Handel Sp. z o.o.",
        tax_office_code="1471",
        email="ksiegowosc@acme.example.pl",
    )
    document = DeclarationSerializer().build_document(
        profile,
        settlement,
        posting.transactions,
        SubmissionPurpose.ORIGINAL,
        schema_version="JPK_V7M(2)",
        generated_at=datetime(2024, 4, 10, 9, 0, tzinfo=timezone.utc),
    )
    print(f"\n--- {document.schema_version} ({document.digest[:16]}...) ---")
    print(document.content.decode("utf-8"))


if __name__ == "__main__":
    main()
