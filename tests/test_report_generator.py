"""Tests for report generation and export."""

import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from vat_engine.batch import BatchOutcome, BatchSummary, OutcomeStatus
from vat_engine.calculator import TransactionInput, TransactionType, VatCalculator
from vat_engine.compliance import ClientProfile, TaxpayerKind, get_filing_deadlines
from vat_engine.periods import PeriodKey
from vat_engine.report_generator import REGISTER_COLUMNS, ReportGenerator
from vat_engine.settlement import SettlementAggregator
from vat_engine.submission import Submission, SubmissionStatus, transition

MARCH = PeriodKey.of_month(2024, 3)
AT = datetime(2024, 4, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def generator(tmp_path) -> ReportGenerator:
    return ReportGenerator(output_dir=str(tmp_path))


def _records():
    calc = VatCalculator()
    docs = [
        ("S2", TransactionType.DOMESTIC_SALE, "500.00", "8", 2),
        ("S1", TransactionType.DOMESTIC_SALE, "1000.00", "23", 1),
        ("P1", TransactionType.DOMESTIC_PURCHASE, "400.00", "23", 3),
    ]
    return [
        calc.post(
            TransactionInput(
                transaction_id=txn_id,
                client_id="ACME",
                document_number=f"FV/{txn_id}",
                transaction_type=txn_type,
                transaction_date=date(2024, 3, 10),
                amount=Decimal(net),
                rate_code=rate,
            ),
            sequence_number=seq,
        )
        for txn_id, txn_type, net, rate, seq in docs
    ]


@pytest.fixture
def settlement():
    return SettlementAggregator().aggregate(MARCH, _records(), client_id="ACME")


# ── Settlement report ────────────────────────────────────────────────


def test_settlement_report(generator: ReportGenerator, settlement):
    report = generator.settlement_report(settlement)
    assert report["period"] == "2024-03"
    assert report["summary"]["output_total"] == Decimal("270.00")
    assert report["summary"]["input_total"] == Decimal("92.00")
    assert report["summary"]["final_due"] == Decimal("178.00")
    sides = [(r["side"], r["rate_code"]) for r in report["rate_breakdown"]]
    assert sides == [
        ("output", "standard"),
        ("output", "reduced_8"),
        ("input", "standard"),
    ]


def test_json_export(generator: ReportGenerator, settlement, tmp_path):
    report = generator.settlement_report(settlement)
    text = generator.to_json(report, "march.json")
    data = json.loads((tmp_path / "march.json").read_text(encoding="utf-8"))
    assert data == json.loads(text)
    assert data["summary"]["final_due"] == "178.00"


def test_csv_export(generator: ReportGenerator, settlement, tmp_path):
    report = generator.settlement_report(settlement)
    text = generator.to_csv(report, "rates.csv")
    lines = text.strip().splitlines()
    assert lines[0] == "side,rate_code,net,vat"
    assert len(lines) == 4
    assert (tmp_path / "rates.csv").exists()

    summary_csv = generator.to_csv(report, section="summary")
    assert "final_due,178.00" in summary_csv


def test_csv_export_of_missing_section(generator: ReportGenerator, settlement):
    assert generator.to_csv(generator.settlement_report(settlement), section="nothing") == ""


def test_text_format(generator: ReportGenerator, settlement):
    text = generator.format_text(generator.settlement_report(settlement))
    assert "Vat Settlement" in text
    assert "Final Due: 178.00 PLN" in text
    assert "RATE BREAKDOWN" in text


# ── Registers ────────────────────────────────────────────────────────


def test_records_frame_in_ingestion_order(generator: ReportGenerator):
    frame = generator.records_frame(_records())
    assert list(frame.columns) == REGISTER_COLUMNS
    assert list(frame["transaction_id"]) == ["S1", "S2", "P1"]
    assert list(frame["direction"]) == ["output", "output", "input"]


def test_export_records(generator: ReportGenerator, tmp_path):
    text = generator.export_records(_records(), "register.csv")
    assert (tmp_path / "register.csv").read_text(encoding="utf-8") == text
    assert text.splitlines()[0].startswith("sequence_number,transaction_id")


# ── Filing status ────────────────────────────────────────────────────


def test_filing_status_report(generator: ReportGenerator):
    profile = ClientProfile(
        client_id="ACME", nip="5260250274", kind=TaxpayerKind.LEGAL_ENTITY,
        full_name="ACME", tax_office_code="1471", email="ksiegowosc@acme.example.pl",
    )
    deadlines = get_filing_deadlines(profile, 2024, filed={"2024-01"}, as_of=date(2024, 3, 26))
    report = generator.filing_status_report(deadlines)
    assert report["summary"] == {
        "total_filings": 12,
        "overdue": 1,
        "upcoming_30_days": 1,
        "filed": 1,
    }
    assert report["overdue_filings"][0]["period"] == "2024-02"
    assert "OVERDUE FILINGS" in generator.format_text(report)


# ── Batch and audit ──────────────────────────────────────────────────


def test_batch_report(generator: ReportGenerator):
    summary = BatchSummary(outcomes=[
        BatchOutcome(0, "ALFA", "2024-03", OutcomeStatus.SUCCEEDED),
        BatchOutcome(1, "BETA", "2024-03", OutcomeStatus.FAILED,
                     error={"code": "BUSINESS_RULE", "message": "frequency mismatch"}),
    ])
    report = generator.batch_report(summary)
    assert report["summary"]["succeeded"] == 1
    assert report["summary"]["failed"] == 1
    assert "BETA 2024-03: frequency mismatch" in generator.format_text(report)


def test_submission_audit_report(generator: ReportGenerator):
    submission = Submission(
        submission_id="SUB-1", client_id="ACME", period_label="2024-03",
        schema_version="JPK_V7M(2)", purpose_code="1", document_digest="a" * 64,
        document_locator="mem://org/x", settlement_version=1, created_at=AT,
    )
    transition(submission, SubmissionStatus.UPLOADING, AT, "upload")
    transition(submission, SubmissionStatus.SUBMITTED, AT, "reference REF-1")
    report = generator.submission_audit_report(submission)
    assert [h["to"] for h in report["status_history"]] == ["uploading", "submitted"]
    assert report["summary"]["status"] == "submitted"
    text = generator.format_text(report)
    assert "pending -> uploading" in text
    data = json.loads(generator.to_json(report))
    assert data["status_history"][0]["at"] == AT.isoformat()
