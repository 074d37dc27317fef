"""
Polish VAT filing compliance checks.

Monitors:
- Client profile completeness (legal entity vs natural person)
- NIP checksums and EU VAT identifier formats
- Monthly vs quarterly filing configuration
- JPK filing deadlines (25th of the month after the period)
- Accelerated (25-day) refund eligibility
- Control totals, record NIPs and declaration arithmetic of generated documents

Checks are plain functions returning a ValidationResult; callers decide
whether to raise via ValidationResult.raise_for_errors().
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from vat_engine.calculator import is_valid_eu_vat_id
from vat_engine.exceptions import (
    FilingFrequencyMismatch,
    InvalidPeriodError,
    ValidationError,
)
from vat_engine.periods import PeriodKey, PeriodKind


class FilingFrequency(Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class TaxpayerKind(Enum):
    LEGAL_ENTITY = "legal_entity"
    NATURAL_PERSON = "natural_person"


FILING_DUE_DAY = 25

_NIP_WEIGHTS = (6, 5, 7, 2, 3, 4, 5, 6, 7)
_TAX_OFFICE_CODE = re.compile(r"^\d{4}$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# JPK record fields carrying VAT, shared with the serializer.
OUTPUT_VAT_FIELDS: tuple[str, ...] = (
    "K_16", "K_18", "K_20", "K_24", "K_26", "K_28", "K_30", "K_32", "K_33", "K_34",
)
OUTPUT_VAT_DEDUCTIONS: tuple[str, ...] = ("K_35", "K_36", "K_360")
INPUT_VAT_FIELDS: tuple[str, ...] = ("K_41", "K_43", "K_44", "K_45", "K_46", "K_47")


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: str = "error"  # error, warning


@dataclass
class ValidationResult:
    """Structured ok / error-list outcome of a check."""

    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    def add(self, field_name: str, message: str, severity: str = "error") -> None:
        self.issues.append(ValidationIssue(field_name, message, severity))

    def extend(self, other: "ValidationResult") -> None:
        self.issues.extend(other.issues)

    def raise_for_errors(self, message: str = "Validation failed") -> None:
        errors = self.errors
        if errors:
            raise ValidationError(
                message,
                field=errors[0].field,
                errors=[f"{i.field}: {i.message}" for i in errors],
            )


@dataclass(frozen=True)
class ClientProfile:
    """Taxpayer data that appears in the JPK party and header blocks."""

    client_id: str
    nip: str
    kind: TaxpayerKind
    tax_office_code: str
    email: str
    filing_frequency: FilingFrequency = FilingFrequency.MONTHLY
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    birth_date: Optional[date] = None
    phone: Optional[str] = None
    small_taxpayer: bool = False

    @property
    def normalized_nip(self) -> str:
        return re.sub(r"[\s-]", "", self.nip)

    @property
    def display_name(self) -> str:
        if self.kind == TaxpayerKind.NATURAL_PERSON:
            return f"{self.first_name or ''} {self.last_name or ''}".strip()
        return self.full_name or ""

    @classmethod
    def from_dict(cls, data: dict) -> "ClientProfile":
        birth = data.get("birth_date")
        return cls(
            client_id=str(data.get("client_id", "")),
            nip=str(data.get("nip", "")),
            kind=TaxpayerKind(data.get("kind", TaxpayerKind.LEGAL_ENTITY.value)),
            tax_office_code=str(data.get("tax_office_code", "")),
            email=str(data.get("email", "")),
            filing_frequency=FilingFrequency(
                data.get("filing_frequency", FilingFrequency.MONTHLY.value)
            ),
            full_name=data.get("full_name"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            birth_date=date.fromisoformat(birth) if isinstance(birth, str) else birth,
            phone=data.get("phone"),
            small_taxpayer=bool(data.get("small_taxpayer", False)),
        )


@dataclass
class FilingDeadline:
    """A JPK filing deadline for one period."""

    period: PeriodKey
    due_date: date
    frequency: FilingFrequency
    includes_declaration: bool
    is_overdue: bool = False
    days_until_due: int = 0
    status: str = "pending"  # pending, filed, overdue


@dataclass(frozen=True)
class TaxpayerStanding:
    """
    Filing record behind the accelerated refund check.

    late_filings holds the filing dates of declarations submitted after
    their due date. arrears is VAT still unpaid for earlier periods.
    """

    late_filings: tuple[date, ...] = ()
    arrears: Decimal = Decimal("0")
    white_list_active: bool = False
    white_list_verified_on: Optional[date] = None


# ---------------------------------------------------------------------------
# Identifier checks
# ---------------------------------------------------------------------------


def is_valid_nip(nip: str) -> bool:
    """Ten digits, weighted checksum mod 11 equal to the last digit."""
    digits = re.sub(r"[\s-]", "", nip or "")
    if not re.fullmatch(r"\d{10}", digits):
        return False
    checksum = sum(int(d) * w for d, w in zip(digits, _NIP_WEIGHTS)) % 11
    return checksum != 10 and checksum == int(digits[9])


def validate_nip(nip: str, field_name: str = "nip") -> ValidationResult:
    result = ValidationResult()
    if not is_valid_nip(nip):
        result.add(field_name, f"Invalid NIP: {nip!r}")
    return result


def validate_eu_vat_id(vat_id: str, field_name: str = "vat_id") -> ValidationResult:
    result = ValidationResult()
    if not is_valid_eu_vat_id(vat_id):
        result.add(field_name, f"Invalid EU VAT identifier: {vat_id!r}")
    return result


def validate_period_label(label: str) -> ValidationResult:
    result = ValidationResult()
    try:
        PeriodKey.parse(label)
    except InvalidPeriodError as exc:
        result.add("period", exc.message)
    return result


# ---------------------------------------------------------------------------
# Profile and filing configuration
# ---------------------------------------------------------------------------


def validate_client_profile(profile: ClientProfile) -> ValidationResult:
    result = validate_nip(profile.nip)
    if not _TAX_OFFICE_CODE.match(profile.tax_office_code or ""):
        result.add("tax_office_code", "Tax office code must be four digits")
    if not _EMAIL.match(profile.email or ""):
        result.add("email", f"Invalid e-mail address: {profile.email!r}")

    if profile.kind == TaxpayerKind.NATURAL_PERSON:
        if not profile.first_name:
            result.add("first_name", "First name is required for a natural person")
        if not profile.last_name:
            result.add("last_name", "Last name is required for a natural person")
        if profile.birth_date is None:
            result.add("birth_date", "Birth date is required for a natural person")
    elif not profile.full_name:
        result.add("full_name", "Full name is required for a legal entity")

    if profile.filing_frequency == FilingFrequency.QUARTERLY and not profile.small_taxpayer:
        result.add(
            "filing_frequency",
            "Quarterly filing is only available to small taxpayers",
        )
    return result


def check_filing_frequency(
    profile: ClientProfile, frequency: FilingFrequency
) -> None:
    """Raise when a declaration frequency does not match the client setup."""
    if profile.filing_frequency != frequency:
        raise FilingFrequencyMismatch(
            f"Client {profile.client_id} files {profile.filing_frequency.value}; "
            f"a {frequency.value} declaration was requested"
        )


def check_settlement_period(profile: ClientProfile, period: PeriodKey) -> None:
    expected = (
        PeriodKind.QUARTER
        if profile.filing_frequency == FilingFrequency.QUARTERLY
        else PeriodKind.MONTH
    )
    if period.kind != expected:
        raise FilingFrequencyMismatch(
            f"Client {profile.client_id} settles per {expected.value}; "
            f"got period {period.label}"
        )


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------


def filing_due_date(period: PeriodKey) -> date:
    """The 25th of the month following the period end."""
    end = period.end
    if end.month == 12:
        return date(end.year + 1, 1, FILING_DUE_DAY)
    return date(end.year, end.month + 1, FILING_DUE_DAY)


def get_filing_deadlines(
    profile: ClientProfile,
    year: int,
    filed: Optional[set[str]] = None,
    as_of: Optional[date] = None,
) -> list[FilingDeadline]:
    """
    Monthly JPK deadlines for a year.

    Records are filed monthly under both frequencies; quarterly clients
    attach the declaration only to the last month of each quarter.
    """
    ref_date = as_of or date.today()
    filed_labels = filed or set()
    deadlines: list[FilingDeadline] = []
    for month in range(1, 13):
        period = PeriodKey.of_month(year, month)
        due = filing_due_date(period)
        is_filed = period.label in filed_labels
        is_overdue = due < ref_date and not is_filed
        deadlines.append(
            FilingDeadline(
                period=period,
                due_date=due,
                frequency=profile.filing_frequency,
                includes_declaration=(
                    profile.filing_frequency == FilingFrequency.MONTHLY
                    or month % 3 == 0
                ),
                is_overdue=is_overdue,
                days_until_due=(due - ref_date).days,
                status="filed" if is_filed else ("overdue" if is_overdue else "pending"),
            )
        )
    return deadlines


# ---------------------------------------------------------------------------
# Refund eligibility
# ---------------------------------------------------------------------------


def _year_before(day: date) -> date:
    if day.month == 2 and day.day == 29:
        return date(day.year - 1, 2, 28)
    return day.replace(year=day.year - 1)


def check_accelerated_refund(standing: TaxpayerStanding, as_of: date) -> ValidationResult:
    """
    Check the conditions for a 25-day refund.

    Requires no late filings in the last twelve months, no arrears, and
    an active white-list status verified within the last twelve months.
    """
    result = ValidationResult()
    since = _year_before(as_of)
    late = sorted(d for d in standing.late_filings if since <= d <= as_of)
    if late:
        result.add(
            "late_filings",
            f"{len(late)} late filing(s) since {since.isoformat()}, "
            f"last on {late[-1].isoformat()}",
        )
    if standing.arrears > 0:
        result.add("arrears", f"Unpaid VAT arrears of {standing.arrears:.2f} PLN")
    if not standing.white_list_active:
        result.add("white_list", "Client is not an active VAT payer on the white list")
    elif (
        standing.white_list_verified_on is None
        or standing.white_list_verified_on < since
    ):
        result.add("white_list", f"White-list status not verified since {since.isoformat()}")
    return result


# ---------------------------------------------------------------------------
# Generated document checks
# ---------------------------------------------------------------------------


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].split(":")[-1]


def _amount(element: Optional[ET.Element]) -> Decimal:
    if element is None or element.text is None:
        return Decimal("0")
    try:
        return Decimal(element.text)
    except InvalidOperation:
        return Decimal("0")


def _children(parent: ET.Element, name: str) -> list[ET.Element]:
    return [c for c in parent if _local(c.tag) == name]


def _child(parent: ET.Element, name: str) -> Optional[ET.Element]:
    found = _children(parent, name)
    return found[0] if found else None


def _check_party_nips(
    result: ValidationResult, rows: list[ET.Element], number_field: str, nip_field: str
) -> None:
    """Domestic counterparties on record lines must carry a valid NIP."""
    for row in rows:
        if _child(row, "KodKrajuNadaniaTIN") is not None:
            continue
        nip = _child(row, nip_field)
        value = (nip.text or "").strip() if nip is not None else ""
        if not value or value == "BRAK":
            continue
        if not is_valid_nip(value):
            lp = _child(row, number_field)
            line = lp.text if lp is not None else "?"
            result.add(nip_field, f"Invalid NIP {value!r} in record {line}")


def validate_document_totals(content: bytes) -> ValidationResult:
    """
    Cross-check JPK control entries against the record lines.
    Domestic buyer and supplier NIPs on each record line are checksummed.

    Also checks declaration arithmetic when a declaration is present:
    P_51 = max(P_38 - P_48, 0), P_53 = max(P_48 - P_38, 0) and
    P_62 = P_53 - P_54.
    """
    result = ValidationResult()
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        result.add("document", f"Document is not well-formed XML: {exc}")
        return result

    register = _child(root, "Ewidencja")
    if register is None:
        result.add("Ewidencja", "Records block missing")
        return result

    sales = _children(register, "SprzedazWiersz")
    sales_ctrl = _child(register, "SprzedazCtrl")
    output_vat = sum(
        (
            _amount(_child(row, name)) * (-1 if name in OUTPUT_VAT_DEDUCTIONS else 1)
            for row in sales
            for name in OUTPUT_VAT_FIELDS + OUTPUT_VAT_DEDUCTIONS
        ),
        Decimal("0"),
    )
    if sales_ctrl is None:
        result.add("SprzedazCtrl", "Sales control entry missing")
    else:
        count = _child(sales_ctrl, "LiczbaWierszySprzedazy")
        if count is None or count.text != str(len(sales)):
            result.add("LiczbaWierszySprzedazy", f"Expected {len(sales)} sales rows")
        if _amount(_child(sales_ctrl, "PodatekNalezny")) != output_vat:
            result.add("PodatekNalezny", f"Expected output VAT {output_vat:.2f}")

    _check_party_nips(result, sales, "LpSprzedazy", "NrKontrahenta")

    purchases = _children(register, "ZakupWiersz")
    _check_party_nips(result, purchases, "LpZakupu", "NrDostawcy")
    purchase_ctrl = _child(register, "ZakupCtrl")
    input_vat = sum(
        (_amount(_child(row, name)) for row in purchases for name in INPUT_VAT_FIELDS),
        Decimal("0"),
    )
    if purchase_ctrl is None:
        result.add("ZakupCtrl", "Purchase control entry missing")
    else:
        count = _child(purchase_ctrl, "LiczbaWierszyZakupow")
        if count is None or count.text != str(len(purchases)):
            result.add("LiczbaWierszyZakupow", f"Expected {len(purchases)} purchase rows")
        if _amount(_child(purchase_ctrl, "PodatekNaliczony")) != input_vat:
            result.add("PodatekNaliczony", f"Expected input VAT {input_vat:.2f}")

    declaration = _child(root, "Deklaracja")
    if declaration is not None:
        positions = _child(declaration, "PozycjeSzczegolowe")
        if positions is None:
            result.add("PozycjeSzczegolowe", "Declaration positions missing")
            return result

        def p(name: str) -> Decimal:
            return _amount(_child(positions, name))

        balance = p("P_38") - p("P_48")
        if p("P_51") != max(balance, Decimal("0")):
            result.add("P_51", "Tax due does not match P_38 - P_48")
        if p("P_53") != max(-balance, Decimal("0")):
            result.add("P_53", "Excess does not match P_48 - P_38")
        if p("P_62") != p("P_53") - p("P_54"):
            result.add("P_62", "Carry-forward does not match P_53 - P_54")
    return result
