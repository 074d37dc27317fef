"""
Period settlement aggregation and carry-forward ledger.

Handles:
- Rate-bucketed output VAT and category sub-totals for one month or quarter
- Deductible input VAT by rate and by purchase category
- Net position, carry-forward consumption, final due / refund
- Refund elections that roll an excess forward into later periods
- Explicit settlement versions when corrections arrive after calculation
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from vat_engine.calculator import Transaction, TransactionStatus, TransactionType
from vat_engine.compliance import TaxpayerStanding, check_accelerated_refund
from vat_engine.exceptions import (
    AcceleratedRefundIneligible,
    BusinessRuleError,
    CarryForwardError,
    PeriodNotReady,
    ValidationError,
)
from vat_engine.periods import PeriodKey
from vat_engine.rates import RateCode

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class SettlementStatus(Enum):
    DRAFT = "draft"
    CALCULATED = "calculated"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    CORRECTED = "corrected"


class OutputCategory(Enum):
    ORDINARY = "ordinary"
    INTRA_EU_SUPPLY = "intra_eu_supply"
    EXPORT = "export"
    REVERSE_CHARGE = "reverse_charge"


class InputCategory(Enum):
    ACQUISITION = "acquisition"  # WNT
    ORDINARY = "ordinary"
    FIXED_ASSET = "fixed_asset"
    IMPORT = "import"


class RefundOption(Enum):
    CARRY_FORWARD = "carry_forward"
    ACCELERATED_25D = "accelerated_25d"
    STANDARD_60D = "standard_60d"
    EXTENDED_180D = "extended_180d"


_OUTPUT_CATEGORIES: dict[TransactionType, OutputCategory] = {
    TransactionType.DOMESTIC_SALE: OutputCategory.ORDINARY,
    TransactionType.WDT: OutputCategory.INTRA_EU_SUPPLY,
    TransactionType.EXPORT: OutputCategory.EXPORT,
    TransactionType.WNT: OutputCategory.REVERSE_CHARGE,
    TransactionType.IMPORT_SERVICES: OutputCategory.REVERSE_CHARGE,
    TransactionType.REVERSE_CHARGE: OutputCategory.REVERSE_CHARGE,
}

_INPUT_CATEGORIES: dict[TransactionType, InputCategory] = {
    TransactionType.WNT: InputCategory.ACQUISITION,
    TransactionType.DOMESTIC_PURCHASE: InputCategory.ORDINARY,
    TransactionType.REVERSE_CHARGE: InputCategory.ORDINARY,
    TransactionType.FIXED_ASSET_PURCHASE: InputCategory.FIXED_ASSET,
    TransactionType.IMPORT_GOODS: InputCategory.IMPORT,
    TransactionType.IMPORT_SERVICES: InputCategory.IMPORT,
}

_SETTLEMENT_TRANSITIONS: dict[SettlementStatus, frozenset[SettlementStatus]] = {
    SettlementStatus.DRAFT: frozenset({SettlementStatus.CALCULATED}),
    SettlementStatus.CALCULATED: frozenset({SettlementStatus.SUBMITTED}),
    SettlementStatus.SUBMITTED: frozenset({
        SettlementStatus.ACCEPTED, SettlementStatus.CORRECTED,
    }),
    SettlementStatus.ACCEPTED: frozenset({SettlementStatus.CORRECTED}),
    SettlementStatus.CORRECTED: frozenset(),
}


@dataclass(frozen=True)
class Bucket:
    """Net and VAT accumulated for one key."""

    net: Decimal = ZERO
    vat: Decimal = ZERO

    def add(self, net: Decimal, vat: Decimal) -> "Bucket":
        return Bucket(net=self.net + net, vat=self.vat + vat)


@dataclass(frozen=True)
class PeriodSettlement:
    """
    Result of aggregating one client's period.

    final_refund is the excess of input VAT, carry-forward included, over
    output VAT. carry_forward_out is the part of carry_forward_in left
    unconsumed by a due period, still rolling forward.
    """

    client_id: str
    period: PeriodKey
    output_buckets: dict[RateCode, Bucket]
    input_buckets: dict[RateCode, Bucket]
    output_subtotals: dict[OutputCategory, Bucket]
    input_subtotals: dict[InputCategory, Bucket]
    output_total: Decimal
    input_total: Decimal
    net_position: Decimal
    carry_forward_in: Decimal
    carry_forward_consumed: Decimal
    carry_forward_out: Decimal
    final_due: Decimal
    final_refund: Decimal
    transaction_ids: tuple[str, ...]
    version: int = 1
    status: SettlementStatus = SettlementStatus.CALCULATED
    refund_option: Optional[RefundOption] = None

    @property
    def is_refund(self) -> bool:
        return self.net_position <= 0

    @property
    def transaction_count(self) -> int:
        return len(self.transaction_ids)

    @property
    def refund_requested(self) -> Decimal:
        """Part of the excess the client asked to have paid out."""
        if self.refund_option in (None, RefundOption.CARRY_FORWARD):
            return ZERO
        return self.final_refund - self.carry_forward_out

    @property
    def carried_to_next_period(self) -> Decimal:
        return self.final_refund - self.refund_requested

    def with_status(self, status: SettlementStatus) -> "PeriodSettlement":
        allowed = _SETTLEMENT_TRANSITIONS[self.status]
        if status not in allowed:
            raise BusinessRuleError(
                f"Settlement {self.period.label} v{self.version} cannot move "
                f"from {self.status.value} to {status.value}",
                rule="settlement_status",
            )
        return replace(self, status=status)


# ---------------------------------------------------------------------------
# Carry-forward ledger
# ---------------------------------------------------------------------------


class CarryForwardStatus(Enum):
    ACTIVE = "active"
    PARTIALLY_APPLIED = "partially_applied"
    FULLY_APPLIED = "fully_applied"
    REFUNDED = "refunded"
    EXPIRED = "expired"


_OPEN_CARRY_FORWARD = (CarryForwardStatus.ACTIVE, CarryForwardStatus.PARTIALLY_APPLIED)


@dataclass(frozen=True)
class CarryForwardApplication:
    target_period: PeriodKey
    amount: Decimal
    applied_on: date


@dataclass
class CarryForward:
    """Excess input VAT rolled from its source period into later ones."""

    carry_forward_id: str
    client_id: str
    source_period: PeriodKey
    original_amount: Decimal
    remaining_amount: Decimal
    status: CarryForwardStatus = CarryForwardStatus.ACTIVE
    applications: list[CarryForwardApplication] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in _OPEN_CARRY_FORWARD

    def apply(
        self, amount: Decimal, target_period: PeriodKey, applied_on: date
    ) -> CarryForwardApplication:
        """Use part of the balance in a later period."""
        if not self.is_open:
            raise CarryForwardError(
                f"Carry-forward {self.carry_forward_id} is {self.status.value}"
            )
        if amount <= 0:
            raise CarryForwardError("Applied amount must be positive")
        if amount > self.remaining_amount:
            raise CarryForwardError(
                f"Cannot apply {amount} from {self.carry_forward_id}; "
                f"only {self.remaining_amount} remains"
            )
        if not self.source_period.is_before(target_period):
            raise CarryForwardError(
                f"Carry-forward from {self.source_period.label} cannot be "
                f"applied to {target_period.label}"
            )
        application = CarryForwardApplication(target_period, amount, applied_on)
        self.applications.append(application)
        self.remaining_amount -= amount
        self.status = (
            CarryForwardStatus.FULLY_APPLIED
            if self.remaining_amount == 0
            else CarryForwardStatus.PARTIALLY_APPLIED
        )
        return application

    def refund(self) -> None:
        """Pay out the remaining balance instead of rolling it further."""
        if not self.is_open:
            raise CarryForwardError(
                f"Carry-forward {self.carry_forward_id} is {self.status.value}"
            )
        self.status = CarryForwardStatus.REFUNDED

    def expire(self) -> None:
        if self.is_open:
            self.status = CarryForwardStatus.EXPIRED


class CarryForwardLedger:
    """One client's carry-forward balances, consumed oldest first."""

    def __init__(self, entries: Optional[Iterable[CarryForward]] = None) -> None:
        self._entries: list[CarryForward] = sorted(
            entries or [], key=lambda e: (e.source_period.start, e.carry_forward_id)
        )

    @property
    def entries(self) -> list[CarryForward]:
        return list(self._entries)

    def add(self, entry: CarryForward) -> None:
        self._entries.append(entry)
        self._entries.sort(key=lambda e: (e.source_period.start, e.carry_forward_id))

    def available(self, target_period: PeriodKey) -> Decimal:
        """Balance usable in target_period (sources strictly before it)."""
        return sum(
            (e.remaining_amount for e in self._usable(target_period)), ZERO
        )

    def _usable(self, target_period: PeriodKey) -> list[CarryForward]:
        return [
            e for e in self._entries
            if e.is_open and e.source_period.is_before(target_period)
        ]

    def consume(
        self, amount: Decimal, target_period: PeriodKey, applied_on: date
    ) -> list[CarryForwardApplication]:
        if amount > self.available(target_period):
            raise CarryForwardError(
                f"Requested {amount} exceeds available carry-forward "
                f"{self.available(target_period)} for {target_period.label}"
            )
        applications: list[CarryForwardApplication] = []
        outstanding = amount
        for entry in self._usable(target_period):
            if outstanding <= 0:
                break
            portion = min(entry.remaining_amount, outstanding)
            applications.append(entry.apply(portion, target_period, applied_on))
            outstanding -= portion
        return applications

    def record_settlement(
        self, settlement: PeriodSettlement, applied_on: date
    ) -> list[CarryForwardApplication]:
        """Book what a calculated settlement consumed."""
        if settlement.carry_forward_consumed <= 0:
            return []
        return self.consume(
            settlement.carry_forward_consumed, settlement.period, applied_on
        )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _readiness_issues(
    period: PeriodKey, client_id: Optional[str], transactions: list[Transaction]
) -> list[str]:
    issues: list[str] = []
    for txn in transactions:
        if txn.classification is None:
            issues.append(f"{txn.transaction_id}: classification unresolved")
        if txn.rate_code is None or txn.rate_value is None:
            issues.append(f"{txn.transaction_id}: rate missing")
        if not period.contains(txn.tax_year, txn.tax_month):
            issues.append(
                f"{txn.transaction_id}: tax period {txn.tax_year}-{txn.tax_month:02d} "
                f"outside {period.label}"
            )
        if client_id is not None and txn.client_id != client_id:
            issues.append(f"{txn.transaction_id}: belongs to client {txn.client_id}")
    return issues


class SettlementAggregator:
    """
    Aggregates a consistent snapshot of a period's transactions.

    Pure and side-effect free: the same transactions and carry-forward
    always yield an equal PeriodSettlement. All sums are sums of amounts
    already rounded at posting time.
    """

    def aggregate(
        self,
        period: PeriodKey,
        transactions: Iterable[Transaction],
        carry_forward_in: Decimal = ZERO,
        client_id: Optional[str] = None,
        version: int = 1,
    ) -> PeriodSettlement:
        if carry_forward_in < 0:
            raise ValidationError(
                "Carry-forward cannot be negative", field="carry_forward_in"
            )
        snapshot = [
            t for t in transactions if t.status != TransactionStatus.SUPERSEDED
        ]
        owner = client_id if client_id is not None else (
            snapshot[0].client_id if snapshot else ""
        )
        issues = _readiness_issues(period, owner, snapshot)
        if issues:
            raise PeriodNotReady(period.label, issues)

        output_acc: dict[RateCode, Bucket] = {}
        input_acc: dict[RateCode, Bucket] = {}
        output_sub: dict[OutputCategory, Bucket] = {}
        input_sub: dict[InputCategory, Bucket] = {}

        for txn in snapshot:
            if txn.has_output:
                output_acc[txn.rate_code] = output_acc.get(txn.rate_code, Bucket()).add(
                    txn.net_amount, txn.vat_amount
                )
                category = _OUTPUT_CATEGORIES.get(txn.transaction_type, OutputCategory.ORDINARY)
                output_sub[category] = output_sub.get(category, Bucket()).add(
                    txn.net_amount, txn.vat_amount
                )
            if txn.has_input:
                input_acc[txn.rate_code] = input_acc.get(txn.rate_code, Bucket()).add(
                    txn.net_amount, txn.deductible_vat
                )
                category = _INPUT_CATEGORIES.get(txn.transaction_type, InputCategory.ORDINARY)
                input_sub[category] = input_sub.get(category, Bucket()).add(
                    txn.net_amount, txn.deductible_vat
                )

        output_total = sum((b.vat for b in output_acc.values()), ZERO)
        input_total = sum((b.vat for b in input_acc.values()), ZERO)
        net_position = output_total - input_total

        if net_position > 0:
            consumed = min(carry_forward_in, net_position)
            final_due = net_position - consumed
            carry_forward_out = carry_forward_in - consumed
            final_refund = carry_forward_out
        else:
            consumed = carry_forward_in
            final_due = ZERO
            carry_forward_out = ZERO
            final_refund = -net_position + carry_forward_in

        settlement = PeriodSettlement(
            client_id=owner,
            period=period,
            output_buckets={c: output_acc[c] for c in RateCode if c in output_acc},
            input_buckets={c: input_acc[c] for c in RateCode if c in input_acc},
            output_subtotals={c: output_sub[c] for c in OutputCategory if c in output_sub},
            input_subtotals={c: input_sub[c] for c in InputCategory if c in input_sub},
            output_total=output_total,
            input_total=input_total,
            net_position=net_position,
            carry_forward_in=carry_forward_in,
            carry_forward_consumed=consumed,
            carry_forward_out=carry_forward_out,
            final_due=final_due,
            final_refund=final_refund,
            transaction_ids=tuple(t.transaction_id for t in snapshot),
            version=version,
        )
        logger.info(
            "Settled %s %s v%d: output=%s input=%s due=%s refund=%s",
            owner, period.label, version, output_total, input_total,
            final_due, final_refund,
        )
        return settlement

    def recalculate(
        self,
        previous: PeriodSettlement,
        transactions: Iterable[Transaction],
        carry_forward_in: Optional[Decimal] = None,
    ) -> tuple[PeriodSettlement, PeriodSettlement]:
        """
        Compute the next settlement version for the same period.

        Returns (previous, new). A previous version that was already
        filed is marked CORRECTED; an unfiled one is returned unchanged.
        """
        cf_in = previous.carry_forward_in if carry_forward_in is None else carry_forward_in
        new = self.aggregate(
            previous.period,
            transactions,
            cf_in,
            client_id=previous.client_id,
            version=previous.version + 1,
        )
        if previous.status in (SettlementStatus.SUBMITTED, SettlementStatus.ACCEPTED):
            previous = previous.with_status(SettlementStatus.CORRECTED)
        return previous, new

    def finalize(
        self,
        settlement: PeriodSettlement,
        refund_option: RefundOption,
        standing: Optional[TaxpayerStanding] = None,
        as_of: Optional[date] = None,
    ) -> tuple[PeriodSettlement, Optional[CarryForward]]:
        """
        Record how an excess is handled.

        CARRY_FORWARD rolls the new excess into a CarryForward entry;
        the other options request a payout. ACCELERATED_25D needs the
        client's standing, checked as of the given date (today by default).
        Due periods are returned as-is.
        """
        new_excess = settlement.final_refund - settlement.carry_forward_out
        if new_excess <= 0:
            return settlement, None
        if refund_option == RefundOption.ACCELERATED_25D:
            if standing is None:
                raise AcceleratedRefundIneligible(
                    f"Accelerated refund for {settlement.client_id} "
                    f"{settlement.period.label} needs the client's filing standing"
                )
            checks = check_accelerated_refund(standing, as_of or date.today())
            if not checks.ok:
                reasons = [issue.message for issue in checks.errors]
                raise AcceleratedRefundIneligible(
                    f"{settlement.client_id} does not qualify for an accelerated refund: "
                    + "; ".join(reasons),
                    reasons,
                )
        updated = replace(settlement, refund_option=refund_option)
        if refund_option != RefundOption.CARRY_FORWARD:
            return updated, None
        carry_forward = CarryForward(
            carry_forward_id=(
                f"CF-{settlement.client_id}-{settlement.period.label}-v{settlement.version}"
            ),
            client_id=settlement.client_id,
            source_period=settlement.period,
            original_amount=new_excess,
            remaining_amount=new_excess,
        )
        logger.info(
            "Carry-forward %s created for %s", carry_forward.carry_forward_id, new_excess
        )
        return updated, carry_forward
