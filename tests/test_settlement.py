"""Tests for period settlement and the carry-forward ledger."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from vat_engine.calculator import (
    Counterparty,
    Transaction,
    TransactionInput,
    TransactionStatus,
    TransactionType,
    VatCalculator,
)
from vat_engine.compliance import TaxpayerStanding
from vat_engine.corrections import CorrectionEngine
from vat_engine.exceptions import (
    AcceleratedRefundIneligible,
    BusinessRuleError,
    CarryForwardError,
    PeriodNotReady,
    ValidationError,
)
from vat_engine.periods import PeriodKey
from vat_engine.rates import RateCode
from vat_engine.settlement import (
    CarryForward,
    CarryForwardLedger,
    CarryForwardStatus,
    InputCategory,
    OutputCategory,
    RefundOption,
    SettlementAggregator,
    SettlementStatus,
)

MARCH = PeriodKey.of_month(2024, 3)


@pytest.fixture
def aggregator() -> SettlementAggregator:
    return SettlementAggregator()


def _txn(
    txn_id: str,
    net: str,
    txn_type: TransactionType = TransactionType.DOMESTIC_SALE,
    rate: str = "23",
    txn_date: date = date(2024, 3, 10),
    client_id: str = "ACME",
    seq: int = 1,
    **kwargs,
) -> Transaction:
    foreign = txn_type in (TransactionType.WNT, TransactionType.WDT)
    counterparty = Counterparty(
        name="Partner",
        tax_id="DE123456789" if foreign else "1234563218",
        country_code="DE" if foreign else "PL",
        foreign_id_verified=foreign,
    )
    doc = TransactionInput(
        transaction_id=txn_id,
        client_id=client_id,
        document_number=txn_id,
        transaction_type=txn_type,
        transaction_date=txn_date,
        amount=Decimal(net),
        rate_code=rate,
        counterparty=counterparty,
        **kwargs,
    )
    return VatCalculator().post(doc, sequence_number=seq)


def _sale(txn_id: str, net: str, **kwargs) -> Transaction:
    return _txn(txn_id, net, TransactionType.DOMESTIC_SALE, **kwargs)


def _purchase(txn_id: str, net: str, **kwargs) -> Transaction:
    return _txn(txn_id, net, TransactionType.DOMESTIC_PURCHASE, **kwargs)


def _check_invariant(settlement) -> None:
    assert settlement.final_due - settlement.final_refund == (
        settlement.output_total - settlement.input_total - settlement.carry_forward_in
    )
    assert settlement.carry_forward_out <= settlement.carry_forward_in


# ── Scenarios ────────────────────────────────────────────────────────


def test_due_period(aggregator: SettlementAggregator):
    # output VAT 2300.00, input VAT 690.00
    s = aggregator.aggregate(MARCH, [_sale("S1", "10000.00"), _purchase("P1", "3000.00", seq=2)])
    assert s.output_total == Decimal("2300.00")
    assert s.input_total == Decimal("690.00")
    assert s.final_due == Decimal("1610.00")
    assert s.final_refund == Decimal("0.00")
    _check_invariant(s)


def test_refund_period(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [_sale("S1", "1000.00"), _purchase("P1", "5000.00", seq=2)])
    assert s.final_refund == Decimal("920.00")
    assert s.final_due == Decimal("0.00")
    assert s.is_refund
    _check_invariant(s)


def test_carry_forward_reduces_due(aggregator: SettlementAggregator):
    s = aggregator.aggregate(
        MARCH,
        [_sale("S1", "10000.00"), _purchase("P1", "3000.00", seq=2)],
        carry_forward_in=Decimal("500.00"),
    )
    assert s.final_due == Decimal("1110.00")
    assert s.carry_forward_consumed == Decimal("500.00")
    assert s.carry_forward_out == Decimal("0.00")
    _check_invariant(s)


def test_carry_forward_larger_than_due(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [_sale("S1", "1000.00")], carry_forward_in=Decimal("500.00"))
    assert s.final_due == Decimal("0.00")
    assert s.carry_forward_consumed == Decimal("230.00")
    assert s.carry_forward_out == Decimal("270.00")
    assert s.final_refund == Decimal("270.00")
    _check_invariant(s)


def test_carry_forward_added_to_refund(aggregator: SettlementAggregator):
    s = aggregator.aggregate(
        MARCH,
        [_sale("S1", "1000.00"), _purchase("P1", "5000.00", seq=2)],
        carry_forward_in=Decimal("80.00"),
    )
    assert s.final_refund == Decimal("1000.00")
    _check_invariant(s)


@pytest.mark.parametrize("cf_in", ["0.00", "0.01", "100.00", "1610.00", "5000.00"])
def test_settlement_invariant(aggregator: SettlementAggregator, cf_in: str):
    s = aggregator.aggregate(
        MARCH,
        [_sale("S1", "10000.00"), _purchase("P1", "3000.00", seq=2)],
        carry_forward_in=Decimal(cf_in),
    )
    _check_invariant(s)


def test_empty_period(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [], client_id="ACME")
    assert s.output_total == Decimal("0.00")
    assert s.final_due == Decimal("0.00")
    assert s.final_refund == Decimal("0.00")
    assert s.transaction_count == 0


# ── Buckets ──────────────────────────────────────────────────────────


def test_rate_buckets(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [
        _sale("S1", "1000.00"),
        _sale("S2", "500.00", rate="8", seq=2),
        _sale("S3", "200.00", seq=3),
    ])
    assert s.output_buckets[RateCode.STANDARD].net == Decimal("1200.00")
    assert s.output_buckets[RateCode.STANDARD].vat == Decimal("276.00")
    assert s.output_buckets[RateCode.REDUCED_8].vat == Decimal("40.00")
    assert list(s.output_buckets) == [RateCode.STANDARD, RateCode.REDUCED_8]


def test_wnt_counts_on_both_sides(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [_txn("W1", "2000.00", TransactionType.WNT)])
    assert s.output_total == Decimal("460.00")
    assert s.input_total == Decimal("460.00")
    assert s.final_due == Decimal("0.00")
    assert s.output_subtotals[OutputCategory.REVERSE_CHARGE].vat == Decimal("460.00")
    assert s.input_subtotals[InputCategory.ACQUISITION].vat == Decimal("460.00")


def test_non_deductible_input_excluded(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [_purchase("P1", "1000.00", deductible=False)])
    assert s.input_total == Decimal("0.00")


def test_fixed_asset_category(aggregator: SettlementAggregator):
    s = aggregator.aggregate(
        MARCH, [_txn("F1", "8000.00", TransactionType.FIXED_ASSET_PURCHASE)]
    )
    assert s.input_subtotals[InputCategory.FIXED_ASSET].vat == Decimal("1840.00")


def test_superseded_excluded(aggregator: SettlementAggregator):
    superseded = _sale("S1", "1000.00").with_status(TransactionStatus.SUPERSEDED)
    s = aggregator.aggregate(MARCH, [superseded, _sale("S2", "100.00", seq=2)])
    assert s.output_total == Decimal("23.00")
    assert s.transaction_ids == ("S2",)


def test_quarter_settlement(aggregator: SettlementAggregator):
    quarter = PeriodKey.of_quarter(2024, 1)
    s = aggregator.aggregate(quarter, [
        _sale("S1", "1000.00", txn_date=date(2024, 1, 5)),
        _sale("S2", "1000.00", txn_date=date(2024, 3, 5), seq=2),
    ])
    assert s.output_total == Decimal("460.00")


# ── Readiness ────────────────────────────────────────────────────────


def test_unclassified_transaction_blocks(aggregator: SettlementAggregator):
    unclassified = replace(_sale("S1", "1000.00"), classification=None)
    with pytest.raises(PeriodNotReady) as exc_info:
        aggregator.aggregate(MARCH, [unclassified])
    assert "S1: classification unresolved" in exc_info.value.reasons


def test_transaction_outside_period_blocks(aggregator: SettlementAggregator):
    with pytest.raises(PeriodNotReady):
        aggregator.aggregate(MARCH, [_sale("S1", "1000.00", txn_date=date(2024, 4, 1))])


def test_foreign_client_blocks(aggregator: SettlementAggregator):
    with pytest.raises(PeriodNotReady):
        aggregator.aggregate(MARCH, [_sale("S1", "1000.00", client_id="OTHER")], client_id="ACME")


def test_negative_carry_forward_rejected(aggregator: SettlementAggregator):
    with pytest.raises(ValidationError):
        aggregator.aggregate(MARCH, [], carry_forward_in=Decimal("-1.00"))


def test_aggregation_is_pure(aggregator: SettlementAggregator):
    txns = [_sale("S1", "1000.00"), _purchase("P1", "300.00", seq=2)]
    assert aggregator.aggregate(MARCH, txns) == aggregator.aggregate(MARCH, txns)


# ── Corrections flowing into settlement ──────────────────────────────


def test_correction_and_negation_restore_totals(aggregator: SettlementAggregator):
    original = _sale("S1", "1000.00", txn_date=date(2024, 2, 10))
    sale = _sale("S2", "500.00")
    before = aggregator.aggregate(MARCH, [sale])

    engine = CorrectionEngine()
    down = engine.correct(original, Decimal("-200.00"), "discount", date(2024, 3, 5))
    up = engine.correct(original, Decimal("200.00"), "discount withdrawn", date(2024, 3, 6),
                        prior_corrections=[down])
    after = aggregator.aggregate(MARCH, [sale, down, up])

    assert after.output_total == before.output_total
    assert after.final_due == before.final_due


# ── Versions and finalization ────────────────────────────────────────


def test_recalculate_marks_filed_version_corrected(aggregator: SettlementAggregator):
    v1 = aggregator.aggregate(MARCH, [_sale("S1", "1000.00")])
    v1 = v1.with_status(SettlementStatus.SUBMITTED)
    old, v2 = aggregator.recalculate(v1, [_sale("S1", "1000.00"), _sale("S2", "100.00", seq=2)])
    assert old.status == SettlementStatus.CORRECTED
    assert v2.version == 2
    assert v2.output_total == Decimal("253.00")


def test_recalculate_leaves_unfiled_version(aggregator: SettlementAggregator):
    v1 = aggregator.aggregate(MARCH, [_sale("S1", "1000.00")])
    old, v2 = aggregator.recalculate(v1, [_sale("S1", "1000.00")])
    assert old.status == SettlementStatus.CALCULATED
    assert v2.version == 2


def test_invalid_status_transition(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [])
    with pytest.raises(BusinessRuleError):
        s.with_status(SettlementStatus.ACCEPTED)


def test_finalize_carry_forward_creates_entry(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [_sale("S1", "1000.00"), _purchase("P1", "5000.00", seq=2)],
                             client_id="ACME")
    updated, cf = aggregator.finalize(s, RefundOption.CARRY_FORWARD)
    assert cf is not None
    assert cf.original_amount == Decimal("920.00")
    assert cf.source_period == MARCH
    assert updated.refund_requested == Decimal("0.00")
    assert updated.carried_to_next_period == Decimal("920.00")


def test_finalize_refund_request(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [_sale("S1", "1000.00"), _purchase("P1", "5000.00", seq=2)])
    updated, cf = aggregator.finalize(s, RefundOption.STANDARD_60D)
    assert cf is None
    assert updated.refund_option == RefundOption.STANDARD_60D
    assert updated.refund_requested == Decimal("920.00")


def test_finalize_due_period_unchanged(aggregator: SettlementAggregator):
    s = aggregator.aggregate(MARCH, [_sale("S1", "1000.00")])
    updated, cf = aggregator.finalize(s, RefundOption.CARRY_FORWARD)
    assert updated is s
    assert cf is None


def _excess_settlement(aggregator: SettlementAggregator):
    return aggregator.aggregate(
        MARCH, [_sale("S1", "1000.00"), _purchase("P1", "5000.00", seq=2)], client_id="ACME"
    )


def test_finalize_accelerated_refund(aggregator: SettlementAggregator):
    standing = TaxpayerStanding(white_list_active=True, white_list_verified_on=date(2024, 1, 15))
    updated, cf = aggregator.finalize(
        _excess_settlement(aggregator), RefundOption.ACCELERATED_25D, standing,
        as_of=date(2024, 4, 10),
    )
    assert cf is None
    assert updated.refund_option == RefundOption.ACCELERATED_25D
    assert updated.refund_requested == Decimal("920.00")


def test_finalize_accelerated_refund_needs_standing(aggregator: SettlementAggregator):
    with pytest.raises(AcceleratedRefundIneligible):
        aggregator.finalize(_excess_settlement(aggregator), RefundOption.ACCELERATED_25D)


def test_finalize_accelerated_refund_refused(aggregator: SettlementAggregator):
    standing = TaxpayerStanding(
        late_filings=(date(2023, 11, 27),),
        arrears=Decimal("15.00"),
        white_list_active=True,
        white_list_verified_on=date(2024, 1, 15),
    )
    s = _excess_settlement(aggregator)
    with pytest.raises(AcceleratedRefundIneligible) as exc_info:
        aggregator.finalize(s, RefundOption.ACCELERATED_25D, standing, as_of=date(2024, 4, 10))
    assert exc_info.value.code == "BUSINESS_RULE"
    assert exc_info.value.details["rule"] == "accelerated_refund"
    assert len(exc_info.value.reasons) == 2
    assert s.refund_option is None


# ── Carry-forward ledger ─────────────────────────────────────────────


def _cf(cf_id: str, period: PeriodKey, amount: str) -> CarryForward:
    return CarryForward(
        carry_forward_id=cf_id,
        client_id="ACME",
        source_period=period,
        original_amount=Decimal(amount),
        remaining_amount=Decimal(amount),
    )


def test_ledger_consumes_oldest_first():
    jan = _cf("CF-1", PeriodKey.of_month(2024, 1), "100.00")
    feb = _cf("CF-2", PeriodKey.of_month(2024, 2), "300.00")
    ledger = CarryForwardLedger([feb, jan])
    assert ledger.available(MARCH) == Decimal("400.00")

    applications = ledger.consume(Decimal("150.00"), MARCH, date(2024, 4, 20))
    assert [a.amount for a in applications] == [Decimal("100.00"), Decimal("50.00")]
    assert jan.status == CarryForwardStatus.FULLY_APPLIED
    assert feb.status == CarryForwardStatus.PARTIALLY_APPLIED
    assert ledger.available(MARCH) == Decimal("250.00")


def test_ledger_ignores_same_or_later_periods():
    ledger = CarryForwardLedger([_cf("CF-3", MARCH, "100.00")])
    assert ledger.available(MARCH) == Decimal("0.00")


def test_ledger_overdraw_rejected():
    ledger = CarryForwardLedger([_cf("CF-1", PeriodKey.of_month(2024, 1), "100.00")])
    with pytest.raises(CarryForwardError):
        ledger.consume(Decimal("100.01"), MARCH, date(2024, 4, 20))


def test_refunded_entry_cannot_be_applied():
    entry = _cf("CF-1", PeriodKey.of_month(2024, 1), "100.00")
    entry.refund()
    with pytest.raises(CarryForwardError):
        entry.apply(Decimal("10.00"), MARCH, date(2024, 4, 20))


def test_record_settlement_books_consumption(aggregator: SettlementAggregator):
    ledger = CarryForwardLedger([_cf("CF-1", PeriodKey.of_month(2024, 2), "500.00")])
    s = aggregator.aggregate(
        MARCH, [_sale("S1", "1000.00")], carry_forward_in=ledger.available(MARCH)
    )
    ledger.record_settlement(s, date(2024, 4, 20))
    assert ledger.available(MARCH.next()) == s.carry_forward_out == Decimal("270.00")
