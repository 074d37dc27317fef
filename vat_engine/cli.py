"""
Command-line interface for the VAT settlement engine.

Provides subcommands for VAT calculation, rate lookup, classification,
period settlement, JPK declaration generation, filing deadlines and
configuration checks.
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import sys
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from vat_engine.calculator import PricingModel, TransactionInput, VatCalculator
from vat_engine.classifier import (
    LineItem,
    ServiceType,
    TransactionClassifier,
    TransactionMetadata,
)
from vat_engine.compliance import (
    ClientProfile,
    get_filing_deadlines,
    validate_document_totals,
)
from vat_engine.config import EngineConfig, validate_config
from vat_engine.declaration import DeclarationSerializer, SubmissionPurpose
from vat_engine.exceptions import VatEngineError
from vat_engine.periods import PeriodKey
from vat_engine.rates import RateResolver
from vat_engine.report_generator import ReportGenerator
from vat_engine.settlement import SettlementAggregator

console = Console()
logger = logging.getLogger("vat_engine")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load_transactions_csv(path: str) -> list[TransactionInput]:
    """
    Load raw documents from a CSV file.

    Expected columns: transaction_id, client_id, document_number,
                      transaction_type, transaction_date, net_amount or
                      gross_amount, rate_code, cn_codes, pkwiu_codes,
                      counterparty_name, counterparty_tax_id,
                      counterparty_country
    """
    docs: list[TransactionInput] = []
    csv_path = Path(path)
    if not csv_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        sys.exit(1)

    with open(csv_path, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        for i, row in enumerate(reader):
            try:
                docs.append(TransactionInput.from_dict(row))
            except (KeyError, ValueError, VatEngineError) as e:
                console.print(f"[yellow]Skipping row {i + 1}: {e}[/yellow]")
    return docs


def _load_profile(path: str) -> ClientProfile:
    profile_path = Path(path)
    if not profile_path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        sys.exit(1)
    return ClientProfile.from_dict(json.loads(profile_path.read_text(encoding="utf-8")))


def _decimal(value: str, name: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        console.print(f"[red]{name} must be a decimal amount, got {value!r}[/red]")
        sys.exit(1)


def _report_posting_errors(errors: list[dict]) -> None:
    for err in errors:
        details = "; ".join(err.get("details", {}).get("errors", []))
        console.print(
            f"[yellow]Rejected {err['transaction_id']}: {err['message']}"
            f"{' (' + details + ')' if details else ''}[/yellow]"
        )


# -----------------------------------------------------------------------
# Subcommand: calculate
# -----------------------------------------------------------------------


def cmd_calculate(args: argparse.Namespace) -> None:
    """VAT for one amount, from the net or the gross side."""
    if bool(args.net) == bool(args.gross):
        console.print("[red]Provide exactly one of --net or --gross[/red]")
        sys.exit(1)
    as_of = date.fromisoformat(args.date) if args.date else date.today()
    calc = VatCalculator()
    model = PricingModel.GROSS if args.gross else PricingModel.NET
    amount = _decimal(args.gross or args.net, "amount")
    amounts = calc.amounts(amount, args.rate, as_of, model)
    resolved = calc.resolver.resolve(args.rate, as_of)

    console.print(
        Panel(
            f"[bold]Rate:[/bold] {resolved.label} ({resolved.code.name}, {resolved.rule_set})\n"
            f"[bold]Net:[/bold] {amounts.net:,.2f} PLN\n"
            f"[bold]VAT:[/bold] {amounts.vat:,.2f} PLN\n"
            f"[bold]Gross:[/bold] {amounts.gross:,.2f} PLN",
            title=f"VAT Calculation ({as_of.isoformat()})",
            border_style="blue",
        )
    )


# -----------------------------------------------------------------------
# Subcommand: rates
# -----------------------------------------------------------------------


def cmd_rates(args: argparse.Namespace) -> None:
    """Display the rate table in force on a date, or a code's history."""
    resolver = RateResolver()

    if args.code:
        table = Table(title=f"Rate history: {args.code}", box=box.SIMPLE)
        table.add_column("From")
        table.add_column("To")
        table.add_column("Rate", justify="right")
        table.add_column("Rule set")
        for period in resolver.history(args.code):
            table.add_row(
                period.valid_from.isoformat(),
                period.valid_to.isoformat() if period.valid_to else "-",
                period.label,
                period.rule_set,
            )
        console.print(table)
        return

    as_of = date.fromisoformat(args.date) if args.date else date.today()
    table = Table(title=f"VAT rates on {as_of.isoformat()}", box=box.ROUNDED)
    table.add_column("Code", style="bold")
    table.add_column("Label")
    table.add_column("Rate", justify="right")
    table.add_column("Rule set")
    for resolved in resolver.rates_on(as_of):
        table.add_row(
            resolved.code.name, resolved.label, f"{resolved.percent}%", resolved.rule_set
        )
    console.print(table)


# -----------------------------------------------------------------------
# Subcommand: classify
# -----------------------------------------------------------------------


def cmd_classify(args: argparse.Namespace) -> None:
    """Show GTU, procedure and split-payment flags for a set of codes."""
    items = [LineItem(cn_code=c) for c in args.cn or []] + [
        LineItem(pkwiu_code=c) for c in args.pkwiu or []
    ]
    metadata = TransactionMetadata(
        gross_total=_decimal(args.gross, "gross") if args.gross else Decimal("0.00"),
        service_type=ServiceType(args.service_type),
        related_party=args.related_party,
        mail_order=args.mail_order,
        triangular_trade=args.triangular,
    )
    result = TransactionClassifier().classify(items, metadata)
    console.print(
        Panel(
            f"[bold]GTU:[/bold] {', '.join(sorted(result.gtu_codes)) or 'none'}\n"
            f"[bold]Procedures:[/bold] "
            f"{', '.join(sorted(p.value for p in result.procedure_codes)) or 'none'}\n"
            f"[bold]Mandatory split payment:[/bold] {'Yes' if result.split_payment else 'No'}\n"
            f"[bold]Record markers:[/bold] {' '.join(result.markers) or '-'}",
            title="Classification",
            border_style="cyan",
        )
    )


# -----------------------------------------------------------------------
# Subcommand: settle
# -----------------------------------------------------------------------


def cmd_settle(args: argparse.Namespace) -> None:
    """Post a CSV of documents and settle one period."""
    period = PeriodKey.parse(args.period)
    posting = VatCalculator().post_batch(_load_transactions_csv(args.file))
    _report_posting_errors(posting.errors)

    transactions = [
        t for t in posting.transactions if period.contains(t.tax_year, t.tax_month)
    ]
    settlement = SettlementAggregator().aggregate(
        period,
        transactions,
        _decimal(args.carry_forward, "carry-forward"),
        client_id=args.client,
    )

    rg = ReportGenerator(args.output_dir or "reports")
    report = rg.settlement_report(settlement)

    table = Table(title=f"Settlement {period.label}", box=box.ROUNDED, show_lines=True)
    table.add_column("Side")
    table.add_column("Rate")
    table.add_column("Net", justify="right")
    table.add_column("VAT", justify="right", style="bold")
    for row in report["rate_breakdown"]:
        table.add_row(row["side"], row["rate_code"], f"{row['net']:,.2f}", f"{row['vat']:,.2f}")
    console.print(table)

    colour = "red" if settlement.final_due > 0 else "green"
    console.print(
        Panel(
            f"[bold]Output VAT:[/bold] {settlement.output_total:,.2f}\n"
            f"[bold]Input VAT:[/bold] {settlement.input_total:,.2f}\n"
            f"[bold]Carry-forward in:[/bold] {settlement.carry_forward_in:,.2f}\n"
            f"[bold]Carry-forward out:[/bold] {settlement.carry_forward_out:,.2f}\n"
            f"[bold]Due:[/bold] {settlement.final_due:,.2f}\n"
            f"[bold]Refund / excess:[/bold] {settlement.final_refund:,.2f}",
            title=f"{settlement.client_id or 'Client'} {period.label}",
            border_style=colour,
        )
    )

    if args.export_json:
        rg.to_json(report, args.export_json)
        console.print(f"[green]JSON exported to {args.export_json}[/green]")
    if args.export_csv:
        rg.export_records(transactions, args.export_csv)
        console.print(f"[green]Register exported to {args.export_csv}[/green]")


# -----------------------------------------------------------------------
# Subcommand: declare
# -----------------------------------------------------------------------


def cmd_declare(args: argparse.Namespace) -> None:
    """Generate a JPK_V7 document for one client and period."""
    profile = _load_profile(args.profile)
    period = PeriodKey.parse(args.period)
    posting = VatCalculator().post_batch(_load_transactions_csv(args.file))
    _report_posting_errors(posting.errors)

    transactions = [
        t for t in posting.transactions
        if t.client_id in ("", profile.client_id) and period.contains(t.tax_year, t.tax_month)
    ]
    settlement = SettlementAggregator().aggregate(
        period,
        transactions,
        _decimal(args.carry_forward, "carry-forward"),
        client_id=profile.client_id,
    )
    serializer = DeclarationSerializer(system_name=EngineConfig.from_env().system_name)
    document = serializer.build_document(
        profile,
        settlement,
        transactions,
        SubmissionPurpose.CORRECTION if args.correction else SubmissionPurpose.ORIGINAL,
        schema_version=args.schema,
        generated_at=datetime.now(timezone.utc),
        include_declaration=not args.partial,
        month=args.month,
    )

    checks = validate_document_totals(document.content)
    for issue in checks.issues:
        console.print(f"[red]{issue.field}: {issue.message}[/red]")

    Path(args.out).write_bytes(document.content)
    console.print(
        Panel(
            f"[bold]Schema:[/bold] {document.schema_version}\n"
            f"[bold]Period:[/bold] {document.period_label} (month {document.reporting_month})\n"
            f"[bold]Purpose:[/bold] {document.purpose.name.lower()}\n"
            f"[bold]Records:[/bold] {settlement.transaction_count}\n"
            f"[bold]SHA-256:[/bold] {document.digest}\n"
            f"[bold]Written to:[/bold] {args.out}",
            title="JPK document",
            border_style="green" if checks.ok else "red",
        )
    )
    if not checks.ok:
        sys.exit(1)


# -----------------------------------------------------------------------
# Subcommand: deadlines
# -----------------------------------------------------------------------


def cmd_deadlines(args: argparse.Namespace) -> None:
    """List JPK filing deadlines for a client and year."""
    profile = _load_profile(args.profile)
    filed = set(args.filed.split(",")) if args.filed else set()
    deadlines = get_filing_deadlines(profile, args.year, filed=filed)

    table = Table(title=f"Filing calendar {args.year}", box=box.ROUNDED)
    table.add_column("Period")
    table.add_column("Due")
    table.add_column("Declaration", justify="center")
    table.add_column("Status")
    styles = {"filed": "green", "overdue": "bold red", "pending": ""}
    for d in deadlines:
        table.add_row(
            d.period.label,
            d.due_date.isoformat(),
            "Y" if d.includes_declaration else "",
            f"[{styles[d.status]}]{d.status}[/{styles[d.status]}]" if styles[d.status] else d.status,
        )
    console.print(table)


# -----------------------------------------------------------------------
# Subcommand: validate-config
# -----------------------------------------------------------------------


def cmd_validate_config(args: argparse.Namespace) -> None:
    """Check engine configuration from a JSON file or the environment."""
    if args.file:
        config = EngineConfig.from_dict(json.loads(Path(args.file).read_text(encoding="utf-8")))
    else:
        config = EngineConfig.from_env()
    result = validate_config(config)

    table = Table(title="Configuration", box=box.SIMPLE)
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)

    colours = {"error": "red", "warning": "yellow", "info": "dim"}
    for issue in result.issues:
        colour = colours.get(issue.severity, "white")
        console.print(f"[{colour}][{issue.severity.upper()}] {issue.field}: {issue.message}[/{colour}]")
    if result.is_valid:
        console.print("[green]Configuration is valid.[/green]")
    else:
        sys.exit(1)


# -----------------------------------------------------------------------
# Argument parser
# -----------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vat-engine",
        description="VAT Settlement Engine - Polish VAT calculation, period settlement and JPK_V7 declarations",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # calculate
    calc_p = subparsers.add_parser("calculate", help="Calculate VAT for an amount")
    calc_p.add_argument("--net", help="Net amount")
    calc_p.add_argument("--gross", help="Gross amount")
    calc_p.add_argument("--rate", default="STANDARD", help="Rate code or label (23, 8, 5, 0, zw, np)")
    calc_p.add_argument("--date", help="Transaction date (YYYY-MM-DD)")
    calc_p.set_defaults(func=cmd_calculate)

    # rates
    rates_p = subparsers.add_parser("rates", help="View the VAT rate table")
    rates_p.add_argument("--date", help="Effective date (YYYY-MM-DD)")
    rates_p.add_argument("--code", help="Show the validity history of one code")
    rates_p.set_defaults(func=cmd_rates)

    # classify
    cls_p = subparsers.add_parser("classify", help="Derive GTU and procedure markers")
    cls_p.add_argument("--cn", nargs="*", help="CN codes of the line items")
    cls_p.add_argument("--pkwiu", nargs="*", help="PKWiU codes of the line items")
    cls_p.add_argument("--gross", help="Document gross total")
    cls_p.add_argument(
        "--service-type",
        default=ServiceType.GOODS.value,
        choices=[s.value for s in ServiceType],
    )
    cls_p.add_argument("--related-party", action="store_true")
    cls_p.add_argument("--mail-order", action="store_true")
    cls_p.add_argument("--triangular", action="store_true")
    cls_p.set_defaults(func=cmd_classify)

    # settle
    settle_p = subparsers.add_parser("settle", help="Settle a period from a CSV of documents")
    settle_p.add_argument("--file", "-f", required=True, help="CSV file with documents")
    settle_p.add_argument("--period", "-p", required=True, help="2024-03 or 2024-Q1")
    settle_p.add_argument("--client", help="Client identifier")
    settle_p.add_argument("--carry-forward", default="0.00", help="Carry-forward from earlier periods")
    settle_p.add_argument("--export-json", help="Export settlement report to JSON")
    settle_p.add_argument("--export-csv", help="Export transaction register to CSV")
    settle_p.add_argument("--output-dir", help="Output directory for exports")
    settle_p.set_defaults(func=cmd_settle)

    # declare
    decl_p = subparsers.add_parser("declare", help="Generate a JPK_V7 document")
    decl_p.add_argument("--file", "-f", required=True, help="CSV file with documents")
    decl_p.add_argument("--profile", required=True, help="Client profile JSON")
    decl_p.add_argument("--period", "-p", required=True, help="2024-03 or 2024-Q1")
    decl_p.add_argument("--schema", required=True, help='Schema version, e.g. "JPK_V7M(2)"')
    decl_p.add_argument("--month", type=int, help="Reporting month within a quarter")
    decl_p.add_argument("--carry-forward", default="0.00", help="Carry-forward from earlier periods")
    decl_p.add_argument("--correction", action="store_true", help="Corrective submission")
    decl_p.add_argument("--partial", action="store_true", help="Records only, no declaration")
    decl_p.add_argument("--out", "-o", required=True, help="Output XML path")
    decl_p.set_defaults(func=cmd_declare)

    # deadlines
    dl_p = subparsers.add_parser("deadlines", help="Show the JPK filing calendar")
    dl_p.add_argument("--profile", required=True, help="Client profile JSON")
    dl_p.add_argument("--year", type=int, default=date.today().year)
    dl_p.add_argument("--filed", help="Comma-separated period labels already filed")
    dl_p.set_defaults(func=cmd_deadlines)

    # validate-config
    cfg_p = subparsers.add_parser("validate-config", help="Check engine configuration")
    cfg_p.add_argument("--file", "-f", help="JSON config file (default: environment)")
    cfg_p.set_defaults(func=cmd_validate_config)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    try:
        args.func(args)
    except VatEngineError as exc:
        logger.debug("Command failed", exc_info=True)
        console.print(f"[red]{exc}[/red]")
        for detail in exc.details.get("errors", []) if isinstance(exc.details, dict) else []:
            console.print(f"[red]  - {detail}[/red]")
        sys.exit(2)
