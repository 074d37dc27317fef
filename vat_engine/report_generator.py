"""
VAT report generator.

Produces:
- Period settlement summaries with rate and category breakdowns
- Filing deadline status reports
- Batch declaration run summaries
- Submission audit trails (status history and attempt log)
- Transaction register DataFrames
- CSV and JSON export
"""

from __future__ import annotations

import csv
import io
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

import pandas as pd

from vat_engine.batch import BatchSummary
from vat_engine.calculator import Transaction
from vat_engine.compliance import FilingDeadline
from vat_engine.settlement import PeriodSettlement
from vat_engine.submission import Submission

REGISTER_COLUMNS = [
    "sequence_number",
    "transaction_id",
    "document_number",
    "transaction_type",
    "direction",
    "transaction_date",
    "period",
    "rate_code",
    "rate",
    "net_amount",
    "vat_amount",
    "gross_amount",
    "markers",
    "corrects",
    "status",
]


class _DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, date and Enum objects."""

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, (date, datetime)):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def _plain(obj: Any) -> Any:
    """Recursively convert values to CSV/JSON friendly primitives."""
    if isinstance(obj, dict):
        return {k: _plain(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_plain(i) for i in obj]
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj


class ReportGenerator:
    """
    Generates VAT reports with export capabilities.

    All reports can be returned as structured dicts, rendered to
    console-friendly text, or exported to CSV/JSON files.
    """

    def __init__(self, output_dir: Optional[str] = None) -> None:
        self.output_dir = Path(output_dir) if output_dir else Path("reports")
        self.output_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Settlement summary
    # ------------------------------------------------------------------

    def settlement_report(self, settlement: PeriodSettlement) -> dict[str, Any]:
        """Summary of one settlement version, with per-rate and per-category rows."""
        rate_rows: list[dict[str, Any]] = []
        for side, buckets in (
            ("output", settlement.output_buckets),
            ("input", settlement.input_buckets),
        ):
            for code, bucket in buckets.items():
                rate_rows.append({
                    "side": side,
                    "rate_code": code.value,
                    "net": bucket.net,
                    "vat": bucket.vat,
                })
        category_rows = [
            {"side": "output", "category": c.value, "net": b.net, "vat": b.vat}
            for c, b in settlement.output_subtotals.items()
        ] + [
            {"side": "input", "category": c.value, "net": b.net, "vat": b.vat}
            for c, b in settlement.input_subtotals.items()
        ]

        return {
            "report_type": "vat_settlement",
            "period": settlement.period.label,
            "client_id": settlement.client_id,
            "generated_date": date.today().isoformat(),
            "version": settlement.version,
            "status": settlement.status.value,
            "summary": {
                "transaction_count": settlement.transaction_count,
                "output_total": settlement.output_total,
                "input_total": settlement.input_total,
                "net_position": settlement.net_position,
                "carry_forward_in": settlement.carry_forward_in,
                "carry_forward_consumed": settlement.carry_forward_consumed,
                "carry_forward_out": settlement.carry_forward_out,
                "final_due": settlement.final_due,
                "final_refund": settlement.final_refund,
                "refund_requested": settlement.refund_requested,
            },
            "refund_option": (
                settlement.refund_option.value if settlement.refund_option else None
            ),
            "rate_breakdown": rate_rows,
            "category_breakdown": category_rows,
        }

    # ------------------------------------------------------------------
    # Filing status
    # ------------------------------------------------------------------

    def filing_status_report(self, deadlines: list[FilingDeadline]) -> dict[str, Any]:
        """Generate a filing deadline status report."""
        overdue = [d for d in deadlines if d.is_overdue]
        upcoming = [
            d for d in deadlines
            if not d.is_overdue and d.status != "filed" and 0 <= d.days_until_due <= 30
        ]
        filed = [d for d in deadlines if d.status == "filed"]

        def _deadline_dict(d: FilingDeadline) -> dict[str, Any]:
            return {
                "period": d.period.label,
                "due_date": d.due_date.isoformat(),
                "frequency": d.frequency.value,
                "declaration": d.includes_declaration,
                "status": d.status,
                "days_until_due": d.days_until_due,
            }

        return {
            "report_type": "filing_status",
            "generated_date": date.today().isoformat(),
            "summary": {
                "total_filings": len(deadlines),
                "overdue": len(overdue),
                "upcoming_30_days": len(upcoming),
                "filed": len(filed),
            },
            "overdue_filings": [_deadline_dict(d) for d in overdue],
            "upcoming_filings": [_deadline_dict(d) for d in upcoming],
        }

    # ------------------------------------------------------------------
    # Batch runs
    # ------------------------------------------------------------------

    def batch_report(self, summary: BatchSummary) -> dict[str, Any]:
        return {
            "report_type": "batch_declarations",
            "generated_date": date.today().isoformat(),
            "summary": {
                "jobs": len(summary.outcomes),
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "stopped_early": summary.stopped_early,
            },
            "outcomes": [
                {
                    "client_id": o.client_id,
                    "period": o.period_label,
                    "status": o.status.value,
                    "digest": o.digest or "",
                    "error": (o.error or {}).get("message", ""),
                }
                for o in summary.outcomes
            ],
        }

    # ------------------------------------------------------------------
    # Submission audit trail
    # ------------------------------------------------------------------

    def submission_audit_report(self, submission: Submission) -> dict[str, Any]:
        """Status history and attempt log of one submission, oldest first."""
        return {
            "report_type": "submission_audit",
            "period": submission.period_label,
            "generated_date": date.today().isoformat(),
            "summary": {
                "submission_id": submission.submission_id,
                "status": submission.status.value,
                "reference_number": submission.reference_number or "",
                "retry_count": submission.retry_count,
                "attempts": len(submission.attempts),
                "rejection": (
                    f"[{submission.rejection_code}] {submission.rejection_message}"
                    if submission.rejection_code else ""
                ),
            },
            "status_history": [
                {
                    "at": change.at,
                    "from": change.from_status.value if change.from_status else "",
                    "to": change.to_status.value,
                    "reason": change.reason,
                    "authority_code": change.authority_code,
                }
                for change in submission.status_history
            ],
            "attempts": [
                {
                    "number": a.number,
                    "operation": a.operation,
                    "started_at": a.started_at,
                    "duration_s": a.duration,
                    "success": a.success,
                    "error_code": a.error_code or "",
                    "error_message": a.error_message or "",
                    "next_retry_at": a.next_retry_at,
                }
                for a in submission.attempts
            ],
        }

    # ------------------------------------------------------------------
    # Transaction register
    # ------------------------------------------------------------------

    @staticmethod
    def records_frame(transactions: Iterable[Transaction]) -> pd.DataFrame:
        """Transaction register in ingestion order."""
        rows = [
            {
                "sequence_number": t.sequence_number,
                "transaction_id": t.transaction_id,
                "document_number": t.document_number,
                "transaction_type": t.transaction_type.value,
                "direction": t.direction.value,
                "transaction_date": t.transaction_date.isoformat(),
                "period": t.tax_period.label,
                "rate_code": t.rate_code.value if t.rate_code else None,
                "rate": t.rate_value,
                "net_amount": t.net_amount,
                "vat_amount": t.vat_amount,
                "gross_amount": t.gross_amount,
                "markers": " ".join(t.classification.markers) if t.classification else "",
                "corrects": t.corrects_transaction_id or "",
                "status": t.status.value,
            }
            for t in sorted(transactions, key=lambda t: t.sequence_number)
        ]
        return pd.DataFrame(rows, columns=REGISTER_COLUMNS)

    def export_records(
        self,
        transactions: Iterable[Transaction],
        filename: str = "vat_register.csv",
    ) -> str:
        """Export the transaction register to CSV. Returns the CSV string."""
        csv_str = self.records_frame(transactions).to_csv(index=False)
        path = self.output_dir / filename
        path.write_text(csv_str, encoding="utf-8")
        return csv_str

    # ------------------------------------------------------------------
    # Export methods
    # ------------------------------------------------------------------

    def to_json(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
    ) -> str:
        """Export a report to JSON. Returns the JSON string."""
        json_str = json.dumps(_plain(report), indent=2, cls=_DecimalEncoder)

        if filename:
            path = self.output_dir / filename
            path.write_text(json_str, encoding="utf-8")

        return json_str

    def to_csv(
        self,
        report: dict[str, Any],
        filename: Optional[str] = None,
        section: str = "rate_breakdown",
    ) -> str:
        """
        Export a report section to CSV. Returns the CSV string.

        The section parameter specifies which list/dict in the report
        to export as rows.
        """
        data = _plain(report.get(section, []))
        if not data:
            return ""

        output = io.StringIO()

        if isinstance(data, list) and isinstance(data[0], dict):
            writer = csv.DictWriter(output, fieldnames=list(data[0].keys()))
            writer.writeheader()
            for row in data:
                writer.writerow(row)
        elif isinstance(data, dict):
            writer = csv.writer(output)
            writer.writerow(["key", "value"])
            for k, v in data.items():
                writer.writerow([k, v])

        csv_str = output.getvalue()

        if filename:
            path = self.output_dir / filename
            path.write_text(csv_str, encoding="utf-8")

        return csv_str

    # ------------------------------------------------------------------
    # Console-formatted text output
    # ------------------------------------------------------------------

    def format_text(self, report: dict[str, Any]) -> str:
        """Format a report as human-readable text for console output."""
        lines: list[str] = []
        report_type = report.get("report_type", "report").replace("_", " ").title()
        lines.append(f"{'=' * 60}")
        lines.append(f"  {report_type}")
        lines.append(f"  Generated: {report.get('generated_date', '')}")
        if report.get("period"):
            lines.append(f"  Period: {report['period']}")
        lines.append(f"{'=' * 60}")
        lines.append("")

        summary = report.get("summary", {})
        if summary:
            lines.append("SUMMARY")
            lines.append("-" * 40)
            for key, value in summary.items():
                label = key.replace("_", " ").title()
                if isinstance(value, Decimal):
                    lines.append(f"  {label}: {value:,.2f} PLN")
                else:
                    lines.append(f"  {label}: {value}")
            lines.append("")

        rates = report.get("rate_breakdown", [])
        if rates:
            lines.append("RATE BREAKDOWN")
            lines.append("-" * 40)
            for row in rates:
                lines.append(
                    f"  {row['side']:<6} {row['rate_code']:<15} "
                    f"{row['net']:>14,.2f} net | {row['vat']:>12,.2f} VAT"
                )
            lines.append("")

        overdue = report.get("overdue_filings", [])
        if overdue:
            lines.append("OVERDUE FILINGS")
            lines.append("-" * 40)
            for o in overdue:
                lines.append(f"  {o['period']} | Due: {o['due_date']}")
            lines.append("")

        history = report.get("status_history", [])
        if history:
            lines.append("STATUS HISTORY")
            lines.append("-" * 40)
            for h in history:
                at = h["at"].isoformat() if isinstance(h["at"], datetime) else h["at"]
                lines.append(f"  {at}  {h['from'] or '-'} -> {h['to']}  {h['reason']}")
            lines.append("")

        failed = [o for o in report.get("outcomes", []) if o.get("status") == "failed"]
        if failed:
            lines.append("FAILED CLIENTS")
            lines.append("-" * 40)
            for o in failed:
                lines.append(f"  * {o['client_id']} {o['period']}: {o['error']}")
            lines.append("")

        return "\n".join(lines)
