"""
Batch declaration generation for many clients.

Each job settles one client's period and serializes its JPK document on
a fixed-size thread pool. A failing client is recorded and the others
carry on, unless stop_on_first_error is set; either way a summary with
one outcome per job, in submission order, is returned.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

import pandas as pd

from vat_engine.calculator import Transaction
from vat_engine.compliance import ClientProfile
from vat_engine.declaration import (
    DeclarationDocument,
    DeclarationSerializer,
    SubmissionPurpose,
)
from vat_engine.exceptions import VatEngineError
from vat_engine.periods import PeriodKey
from vat_engine.settlement import PeriodSettlement, SettlementAggregator

logger = logging.getLogger(__name__)


class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DeclarationJob:
    profile: ClientProfile
    period: PeriodKey
    transactions: list[Transaction]
    schema_version: str
    generated_at: datetime
    carry_forward_in: Decimal = Decimal("0.00")
    purpose: SubmissionPurpose = SubmissionPurpose.ORIGINAL
    include_declaration: bool = True
    month: Optional[int] = None


@dataclass
class BatchOutcome:
    index: int
    client_id: str
    period_label: str
    status: OutcomeStatus
    settlement: Optional[PeriodSettlement] = None
    document: Optional[DeclarationDocument] = None
    error: Optional[dict] = None
    duration: float = 0.0

    @property
    def digest(self) -> Optional[str]:
        return self.document.digest if self.document else None


@dataclass
class BatchSummary:
    outcomes: list[BatchOutcome] = field(default_factory=list)
    stopped_early: bool = False

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(OutcomeStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def all_succeeded(self) -> bool:
        return self.succeeded == len(self.outcomes)

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "client_id": o.client_id,
                "period": o.period_label,
                "status": o.status.value,
                "digest": o.digest,
                "final_due": o.settlement.final_due if o.settlement else None,
                "final_refund": o.settlement.final_refund if o.settlement else None,
                "error_code": (o.error or {}).get("code"),
                "error_message": (o.error or {}).get("message"),
                "duration_s": round(o.duration, 3),
            }
            for o in self.outcomes
        ]
        return pd.DataFrame(
            rows,
            columns=[
                "client_id", "period", "status", "digest", "final_due",
                "final_refund", "error_code", "error_message", "duration_s",
            ],
        )


class BatchDeclarationRunner:
    """Settles and serializes many clients with bounded concurrency."""

    def __init__(
        self,
        serializer: Optional[DeclarationSerializer] = None,
        aggregator: Optional[SettlementAggregator] = None,
        max_workers: int = 5,
        stop_on_first_error: bool = False,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.serializer = serializer or DeclarationSerializer()
        self.aggregator = aggregator or SettlementAggregator()
        self.max_workers = max_workers
        self.stop_on_first_error = stop_on_first_error

    def _process(self, index: int, job: DeclarationJob, stop: threading.Event) -> BatchOutcome:
        outcome = BatchOutcome(
            index=index,
            client_id=job.profile.client_id,
            period_label=job.period.label,
            status=OutcomeStatus.SKIPPED,
        )
        if stop.is_set():
            return outcome

        start = time.monotonic()
        try:
            settlement = self.aggregator.aggregate(
                job.period,
                job.transactions,
                job.carry_forward_in,
                client_id=job.profile.client_id,
            )
            outcome.settlement = settlement
            outcome.document = self.serializer.build_document(
                job.profile,
                settlement,
                job.transactions,
                job.purpose,
                schema_version=job.schema_version,
                generated_at=job.generated_at,
                include_declaration=job.include_declaration,
                month=job.month,
            )
            outcome.status = OutcomeStatus.SUCCEEDED
        except VatEngineError as exc:
            outcome.status = OutcomeStatus.FAILED
            outcome.error = exc.to_dict()
            logger.warning("Declaration for %s %s failed: %s",
                           job.profile.client_id, job.period.label, exc)
        finally:
            outcome.duration = time.monotonic() - start
        return outcome

    def run(self, jobs: Iterable[DeclarationJob]) -> BatchSummary:
        job_list = list(jobs)
        stop = threading.Event()
        outcomes: dict[int, BatchOutcome] = {}
        logger.info("Batch of %d declarations on %d workers", len(job_list), self.max_workers)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_index = {
                executor.submit(self._process, i, job, stop): i
                for i, job in enumerate(job_list)
            }
            for future in as_completed(future_to_index):
                index = future_to_index[future]
                if future.cancelled():
                    continue
                try:
                    outcome = future.result()
                except Exception as exc:
                    logger.exception("Unexpected error in batch job %d", index)
                    job = job_list[index]
                    outcome = BatchOutcome(
                        index=index,
                        client_id=job.profile.client_id,
                        period_label=job.period.label,
                        status=OutcomeStatus.FAILED,
                        error={"error": type(exc).__name__, "message": str(exc), "code": None},
                    )
                outcomes[index] = outcome
                if outcome.status == OutcomeStatus.FAILED and self.stop_on_first_error:
                    stop.set()
                    for pending in future_to_index:
                        pending.cancel()

        summary = BatchSummary(stopped_early=stop.is_set())
        for i, job in enumerate(job_list):
            summary.outcomes.append(outcomes.get(i) or BatchOutcome(
                index=i,
                client_id=job.profile.client_id,
                period_label=job.period.label,
                status=OutcomeStatus.SKIPPED,
            ))
        logger.info(
            "Batch complete: %d succeeded, %d failed, %d skipped",
            summary.succeeded, summary.failed, summary.skipped,
        )
        return summary
