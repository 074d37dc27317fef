"""
Correction (delta) transactions against posted originals.

A correction never touches the original record. It is a new Transaction
carrying only the change, computed at the original's frozen rate and
posted into the tax period of the correction date.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from vat_engine.calculator import (
    MINOR_UNIT,
    Transaction,
    TransactionStatus,
    calculate_from_net,
)
from vat_engine.exceptions import CorrectionError
from vat_engine.repositories import TenantContext, TransactionRepository

logger = logging.getLogger(__name__)


class CorrectionEngine:
    """
    Computes delta transactions linked to their original.

    correct() and cancel() are pure: the correction sequence comes from the
    prior_corrections passed in, so callers must pass every earlier
    correction of the original or the new id repeats. With a repository,
    record() loads those corrections itself and stores the result.
    """

    def __init__(self, repository: Optional[TransactionRepository] = None) -> None:
        self.repository = repository

    def correct(
        self,
        original: Transaction,
        net_delta: Decimal,
        reason: str,
        correction_date: date,
        prior_corrections: Iterable[Transaction] = (),
        sequence_number: int = 0,
    ) -> Transaction:
        """
        Build the delta transaction for one correction.

        prior_corrections are earlier corrections of the same original;
        they only determine the correction sequence and the remaining net
        that may still be reversed. Each delta is computed against the
        original's rate, never against a previous correction.
        """
        if original.is_correction:
            raise CorrectionError(
                f"{original.transaction_id} is itself a correction; "
                f"correct the original {original.corrects_transaction_id}",
                field="original",
            )
        if original.status == TransactionStatus.SUPERSEDED:
            raise CorrectionError(
                f"{original.transaction_id} is superseded", field="original"
            )
        if original.rate_value is None or original.rate_code is None:
            raise CorrectionError(
                f"{original.transaction_id} has no frozen rate", field="rate_code"
            )
        if net_delta == 0:
            raise CorrectionError("Correction delta must not be zero", field="net_delta")
        if net_delta != net_delta.quantize(MINOR_UNIT):
            raise CorrectionError(
                f"Correction delta {net_delta} has more than two decimal places",
                field="net_delta",
            )
        if not reason or not reason.strip():
            raise CorrectionError("Correction reason is required", field="reason")
        if correction_date < original.transaction_date:
            raise CorrectionError(
                "Correction date precedes the original transaction",
                field="correction_date",
            )

        earlier = [
            c for c in prior_corrections
            if c.corrects_transaction_id == original.transaction_id
        ]
        corrected_net = original.net_amount + sum(
            (c.net_amount for c in earlier), Decimal("0")
        ) + net_delta
        if original.net_amount >= 0 > corrected_net or original.net_amount < 0 < corrected_net:
            raise CorrectionError(
                f"Correction would reverse more than the original net "
                f"{original.net_amount} of {original.transaction_id}",
                field="net_delta",
            )

        sequence = len(earlier) + 1
        amounts = calculate_from_net(net_delta, original.rate_value)
        correction = replace(
            original,
            transaction_id=f"{original.transaction_id}-K{sequence}",
            sequence_number=sequence_number or original.sequence_number,
            document_number=f"{original.document_number}/K{sequence}",
            transaction_date=correction_date,
            tax_year=correction_date.year,
            tax_month=correction_date.month,
            net_amount=amounts.net,
            vat_amount=amounts.vat,
            gross_amount=amounts.gross,
            status=TransactionStatus.ACTIVE,
            corrects_transaction_id=original.transaction_id,
            correction_reason=reason.strip(),
            correction_sequence=sequence,
            sale_date=None,
            ksef_number=None,
        )
        logger.info(
            "Correction %s of %s: net %s vat %s (%s)",
            correction.transaction_id, original.transaction_id,
            amounts.net, amounts.vat, correction.correction_reason,
        )
        return correction

    def cancel(
        self,
        original: Transaction,
        reason: str,
        correction_date: date,
        prior_corrections: Iterable[Transaction] = (),
        sequence_number: int = 0,
    ) -> Transaction:
        """Full cancellation: net delta is minus the net still standing."""
        earlier = [
            c for c in prior_corrections
            if c.corrects_transaction_id == original.transaction_id
        ]
        standing = original.net_amount + sum((c.net_amount for c in earlier), Decimal("0"))
        return self.correct(
            original,
            -standing,
            reason,
            correction_date,
            prior_corrections=earlier,
            sequence_number=sequence_number,
        )

    @staticmethod
    def mark_corrected(original: Transaction) -> Transaction:
        """The original's new status record; its amounts stay untouched."""
        return original.with_status(TransactionStatus.CORRECTED)

    def record(
        self,
        ctx: TenantContext,
        transaction_id: str,
        net_delta: Optional[Decimal],
        reason: str,
        correction_date: date,
        sequence_number: int = 0,
    ) -> Transaction:
        """
        Correct a stored transaction and store the delta.

        A net_delta of None cancels whatever net is still standing. The
        original is marked CORRECTED.
        """
        if self.repository is None:
            raise CorrectionError("No transaction repository configured")
        original = self.repository.get(ctx, transaction_id)
        if original is None:
            raise CorrectionError(f"Unknown transaction {transaction_id}", field="original")
        prior = self.repository.corrections_of(ctx, transaction_id)
        if net_delta is None:
            correction = self.cancel(
                original, reason, correction_date,
                prior_corrections=prior, sequence_number=sequence_number,
            )
        else:
            correction = self.correct(
                original, net_delta, reason, correction_date,
                prior_corrections=prior, sequence_number=sequence_number,
            )
        self.repository.add(ctx, correction)
        if original.status != TransactionStatus.CORRECTED:
            self.repository.update_status(ctx, transaction_id, TransactionStatus.CORRECTED)
        return correction
