"""
JPK_V7M / JPK_V7K declaration serializer.

Builds the structured document (header, party, optional declaration,
records with control totals) for a named schema version. Layout details
that changed between schema versions live in SchemaLayout entries, so a
document generated under an older version can always be rebuilt
byte-for-byte.
"""

from __future__ import annotations

import hashlib
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Optional

from vat_engine.calculator import Transaction, TransactionType
from vat_engine.compliance import (
    INPUT_VAT_FIELDS,
    OUTPUT_VAT_DEDUCTIONS,
    OUTPUT_VAT_FIELDS,
    ClientProfile,
    FilingFrequency,
    TaxpayerKind,
    check_filing_frequency,
    check_settlement_period,
    validate_client_profile,
)
from vat_engine.exceptions import BusinessRuleError, ValidationError
from vat_engine.rates import RateCode
from vat_engine.settlement import PeriodSettlement, RefundOption

logger = logging.getLogger(__name__)


class SubmissionPurpose(Enum):
    ORIGINAL = "1"
    CORRECTION = "2"


@dataclass(frozen=True)
class SchemaLayout:
    """Published field layout of one JPK_V7 schema version."""

    version: str
    frequency: FilingFrequency
    namespace: str
    etd_namespace: str
    system_code: str
    form_variant: str
    declaration_form: str
    declaration_system_code: str
    declaration_variant: str
    sale_markers: tuple[str, ...]
    marker_aliases: dict[str, str] = field(default_factory=dict)
    ksef_fields: bool = False
    schema_variant: str = "1-0E"


_MARKERS_V1 = tuple(f"GTU_{n:02d}" for n in range(1, 14)) + (
    "SW", "EE", "TP", "TT_WNT", "TT_D", "MR_T", "MR_UZ",
    "I_42", "I_63", "B_SPV", "B_SPV_DOSTAWA", "B_MPV_PROWIZJA", "MPP",
)
_MARKERS_V2 = tuple(f"GTU_{n:02d}" for n in range(1, 14)) + (
    "WSTO_EE", "IED", "TP", "TT_WNT", "TT_D", "MR_T", "MR_UZ",
    "I_42", "I_63", "B_SPV", "B_SPV_DOSTAWA", "B_MPV_PROWIZJA", "MPP",
)
# Distance sales and e-services markers were merged in the 2022 layout.
_ALIASES_V2 = {"SW": "WSTO_EE", "EE": "WSTO_EE"}

_ETD_2020 = "http://crd.gov.pl/xml/schematy/dziedzinowe/mf/2020/03/11/eD/DefinicjeTypy/"
_ETD_2021 = "http://crd.gov.pl/xml/schematy/dziedzinowe/mf/2021/06/08/eD/DefinicjeTypy/"
_ETD_2022 = "http://crd.gov.pl/xml/schematy/dziedzinowe/mf/2022/09/13/eD/DefinicjeTypy/"

SCHEMA_LAYOUTS: dict[str, SchemaLayout] = {
    layout.version: layout
    for layout in (
        SchemaLayout(
            version="JPK_V7M(1)",
            frequency=FilingFrequency.MONTHLY,
            namespace="http://crd.gov.pl/wzor/2020/05/08/9393/",
            etd_namespace=_ETD_2020,
            system_code="JPK_V7M (1)",
            form_variant="1",
            declaration_form="VAT-7",
            declaration_system_code="VAT-7 (21)",
            declaration_variant="21",
            sale_markers=_MARKERS_V1,
        ),
        SchemaLayout(
            version="JPK_V7K(1)",
            frequency=FilingFrequency.QUARTERLY,
            namespace="http://crd.gov.pl/wzor/2020/05/08/9394/",
            etd_namespace=_ETD_2020,
            system_code="JPK_V7K (1)",
            form_variant="1",
            declaration_form="VAT-7K",
            declaration_system_code="VAT-7K (15)",
            declaration_variant="15",
            sale_markers=_MARKERS_V1,
        ),
        SchemaLayout(
            version="JPK_V7M(2)",
            frequency=FilingFrequency.MONTHLY,
            namespace="http://crd.gov.pl/wzor/2021/12/27/11148/",
            etd_namespace=_ETD_2021,
            system_code="JPK_V7M (2)",
            form_variant="2",
            declaration_form="VAT-7",
            declaration_system_code="VAT-7 (22)",
            declaration_variant="22",
            sale_markers=_MARKERS_V2,
            marker_aliases=_ALIASES_V2,
        ),
        SchemaLayout(
            version="JPK_V7K(2)",
            frequency=FilingFrequency.QUARTERLY,
            namespace="http://crd.gov.pl/wzor/2021/12/27/11149/",
            etd_namespace=_ETD_2021,
            system_code="JPK_V7K (2)",
            form_variant="2",
            declaration_form="VAT-7K",
            declaration_system_code="VAT-7K (16)",
            declaration_variant="16",
            sale_markers=_MARKERS_V2,
            marker_aliases=_ALIASES_V2,
        ),
        SchemaLayout(
            version="JPK_V7M(3)",
            frequency=FilingFrequency.MONTHLY,
            namespace="http://crd.gov.pl/wzor/2025/12/19/14090/",
            etd_namespace=_ETD_2022,
            system_code="JPK_V7M (3)",
            form_variant="3",
            declaration_form="VAT-7",
            declaration_system_code="VAT-7 (23)",
            declaration_variant="23",
            sale_markers=_MARKERS_V2,
            marker_aliases=_ALIASES_V2,
            ksef_fields=True,
        ),
        SchemaLayout(
            version="JPK_V7K(3)",
            frequency=FilingFrequency.QUARTERLY,
            namespace="http://crd.gov.pl/wzor/2025/12/19/14089/",
            etd_namespace=_ETD_2022,
            system_code="JPK_V7K (3)",
            form_variant="3",
            declaration_form="VAT-7K",
            declaration_system_code="VAT-7K (17)",
            declaration_variant="17",
            sale_markers=_MARKERS_V2,
            marker_aliases=_ALIASES_V2,
            ksef_fields=True,
        ),
    )
}


def get_layout(version: str) -> SchemaLayout:
    """Look up a schema version by name; there is no implicit "latest"."""
    layout = SCHEMA_LAYOUTS.get(version.replace(" ", ""))
    if layout is None:
        raise ValidationError(
            f"Unknown schema version {version!r}",
            field="schema_version",
            errors=[f"known versions: {', '.join(SCHEMA_LAYOUTS)}"],
        )
    return layout


# ---------------------------------------------------------------------------
# Record field mapping
# ---------------------------------------------------------------------------

# (transaction type, rate code) -> (net field, VAT field or None)
_SALE_FIELDS: dict[tuple[TransactionType, RateCode], tuple[str, Optional[str]]] = {
    (TransactionType.DOMESTIC_SALE, RateCode.EXEMPT): ("K_10", None),
    (TransactionType.DOMESTIC_SALE, RateCode.REVERSE_CHARGE): ("K_11", None),
    (TransactionType.DOMESTIC_SALE, RateCode.ZERO): ("K_13", None),
    (TransactionType.DOMESTIC_SALE, RateCode.REDUCED_5): ("K_15", "K_16"),
    (TransactionType.DOMESTIC_SALE, RateCode.REDUCED_8): ("K_17", "K_18"),
    (TransactionType.DOMESTIC_SALE, RateCode.STANDARD): ("K_19", "K_20"),
}
_SALE_FIELDS_BY_TYPE: dict[TransactionType, tuple[str, Optional[str]]] = {
    TransactionType.WDT: ("K_21", None),
    TransactionType.EXPORT: ("K_22", None),
    TransactionType.WNT: ("K_23", "K_24"),
    TransactionType.IMPORT_SERVICES: ("K_29", "K_30"),
    TransactionType.REVERSE_CHARGE: ("K_31", "K_32"),
}
_SALE_FIELD_ORDER: tuple[str, ...] = tuple(f"K_{n}" for n in range(10, 37)) + ("K_360",)
_PURCHASE_FIELD_ORDER: tuple[str, ...] = tuple(f"K_{n}" for n in range(40, 48))

# Declaration positions mirroring record fields one to one.
_NET_POSITIONS = ("P_10", "P_11", "P_13", "P_15", "P_17", "P_19", "P_21",
                  "P_22", "P_23", "P_25", "P_27", "P_29", "P_31")
_OUTPUT_VAT_POSITIONS = tuple(f"P_{f[2:]}" for f in OUTPUT_VAT_FIELDS)
_OUTPUT_DEDUCTION_POSITIONS = tuple(f"P_{f[2:]}" for f in OUTPUT_VAT_DEDUCTIONS)
_REFUND_TERM_POSITIONS: dict[RefundOption, str] = {
    RefundOption.ACCELERATED_25D: "P_56",
    RefundOption.STANDARD_60D: "P_57",
    RefundOption.EXTENDED_180D: "P_58",
}


def sale_fields(txn: Transaction) -> list[tuple[str, Decimal]]:
    """Record fields and amounts for the sales side of a transaction."""
    if not txn.has_output:
        return []
    mapping = _SALE_FIELDS_BY_TYPE.get(txn.transaction_type) or _SALE_FIELDS.get(
        (txn.transaction_type, txn.rate_code)
    )
    if mapping is None:
        raise ValidationError(
            f"{txn.transaction_id}: no sales field for "
            f"{txn.transaction_type.name}/{txn.rate_code.name if txn.rate_code else None}",
            field="rate_code",
        )
    net_field, vat_field = mapping
    fields = [(net_field, txn.net_amount)]
    if vat_field:
        fields.append((vat_field, txn.vat_amount))
    return fields


def purchase_fields(txn: Transaction) -> list[tuple[str, Decimal]]:
    """Record fields for the purchase side; non-deductible input is not recorded."""
    if not txn.has_input or not txn.deductible:
        return []
    if txn.transaction_type == TransactionType.FIXED_ASSET_PURCHASE:
        return [("K_40", txn.net_amount), ("K_41", txn.vat_amount)]
    return [("K_42", txn.net_amount), ("K_43", txn.vat_amount)]


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def _whole(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def _timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def _sub(parent: ET.Element, tag: str, text: Optional[str] = None, **attrs: str) -> ET.Element:
    element = ET.SubElement(parent, tag, attrs)
    if text is not None:
        element.text = text
    return element


@dataclass(frozen=True)
class DeclarationDocument:
    """Immutable generated JPK document, addressed by its SHA-256 digest."""

    client_id: str
    period_label: str
    reporting_month: int
    schema_version: str
    purpose: SubmissionPurpose
    settlement_version: int
    generated_at: datetime
    content: bytes
    digest: str

    @property
    def size(self) -> int:
        return len(self.content)

    def verify(self) -> bool:
        return hashlib.sha256(self.content).hexdigest() == self.digest


class DeclarationSerializer:
    """
    Serializes a settlement and its transactions into JPK_V7 XML.

    Pure: no clock reads, no I/O. Identical inputs give identical bytes.
    """

    def __init__(self, system_name: Optional[str] = None) -> None:
        self.system_name = system_name

    # -- public API ---------------------------------------------------------

    def serialize(
        self,
        profile: ClientProfile,
        settlement: PeriodSettlement,
        records: Iterable[Transaction],
        purpose: SubmissionPurpose,
        *,
        schema_version: str,
        generated_at: datetime,
        include_declaration: bool = True,
        month: Optional[int] = None,
    ) -> bytes:
        layout = get_layout(schema_version)
        validate_client_profile(profile).raise_for_errors(
            f"Client profile {profile.client_id} is incomplete"
        )
        check_filing_frequency(profile, layout.frequency)
        check_settlement_period(profile, settlement.period)
        reporting_month = self._reporting_month(settlement, month, include_declaration)

        ordered = self._snapshot(settlement, records)

        root = ET.Element(
            "JPK", {"xmlns": layout.namespace, "xmlns:etd": layout.etd_namespace}
        )
        self._header(root, layout, profile, settlement, purpose, generated_at, reporting_month)
        self._party(root, profile)
        if include_declaration:
            self._declaration(root, layout, settlement, ordered)
        monthly = [t for t in ordered if t.tax_month == reporting_month]
        self._register(root, layout, monthly)

        ET.indent(root, space="  ")
        content = ET.tostring(root, encoding="UTF-8", xml_declaration=True)
        logger.info(
            "Serialized %s for %s %s (%d records, %d bytes)",
            layout.version, profile.client_id, settlement.period.label,
            len(monthly), len(content),
        )
        return content

    def build_document(
        self,
        profile: ClientProfile,
        settlement: PeriodSettlement,
        records: Iterable[Transaction],
        purpose: SubmissionPurpose,
        *,
        schema_version: str,
        generated_at: datetime,
        include_declaration: bool = True,
        month: Optional[int] = None,
    ) -> DeclarationDocument:
        """serialize() wrapped into a content-addressed DeclarationDocument."""
        record_list = list(records)
        reporting_month = self._reporting_month(settlement, month, include_declaration)
        content = self.serialize(
            profile,
            settlement,
            record_list,
            purpose,
            schema_version=schema_version,
            generated_at=generated_at,
            include_declaration=include_declaration,
            month=reporting_month,
        )
        return DeclarationDocument(
            client_id=profile.client_id,
            period_label=settlement.period.label,
            reporting_month=reporting_month,
            schema_version=get_layout(schema_version).version,
            purpose=purpose,
            settlement_version=settlement.version,
            generated_at=generated_at,
            content=content,
            digest=hashlib.sha256(content).hexdigest(),
        )

    # -- checks -------------------------------------------------------------

    @staticmethod
    def _reporting_month(
        settlement: PeriodSettlement, month: Optional[int], include_declaration: bool
    ) -> int:
        months = settlement.period.months
        reporting = months[-1] if month is None else month
        if reporting not in months:
            raise ValidationError(
                f"Month {reporting} is outside {settlement.period.label}", field="month"
            )
        if include_declaration and reporting != months[-1]:
            raise BusinessRuleError(
                f"Quarterly declaration for {settlement.period.label} can only be "
                f"attached to month {months[-1]}",
                rule="quarterly_declaration",
            )
        return reporting

    @staticmethod
    def _snapshot(
        settlement: PeriodSettlement, records: Iterable[Transaction]
    ) -> list[Transaction]:
        """The settlement's own transactions, in ingestion order."""
        expected = set(settlement.transaction_ids)
        selected = [t for t in records if t.transaction_id in expected]
        missing = sorted(expected - {t.transaction_id for t in selected})
        if missing:
            raise ValidationError(
                f"Records missing for settlement {settlement.period.label} "
                f"v{settlement.version}",
                field="records",
                errors=missing,
            )
        return sorted(selected, key=lambda t: t.sequence_number)

    # -- blocks -------------------------------------------------------------

    def _header(
        self,
        root: ET.Element,
        layout: SchemaLayout,
        profile: ClientProfile,
        settlement: PeriodSettlement,
        purpose: SubmissionPurpose,
        generated_at: datetime,
        reporting_month: int,
    ) -> None:
        header = _sub(root, "Naglowek")
        _sub(
            header, "KodFormularza", "JPK_VAT",
            kodSystemowy=layout.system_code, wersjaSchemy=layout.schema_variant,
        )
        _sub(header, "WariantFormularza", layout.form_variant)
        _sub(header, "DataWytworzeniaJPK", _timestamp(generated_at))
        if self.system_name:
            _sub(header, "NazwaSystemu", self.system_name)
        _sub(header, "CelZlozenia", purpose.value, poz="P_7")
        _sub(header, "KodUrzedu", profile.tax_office_code)
        _sub(header, "Rok", str(settlement.period.year))
        _sub(header, "Miesiac", str(reporting_month))

    @staticmethod
    def _party(root: ET.Element, profile: ClientProfile) -> None:
        party = _sub(root, "Podmiot1", rola="Podatnik")
        if profile.kind == TaxpayerKind.NATURAL_PERSON:
            person = _sub(party, "OsobaFizyczna")
            _sub(person, "etd:NIP", profile.normalized_nip)
            _sub(person, "etd:ImiePierwsze", profile.first_name)
            _sub(person, "etd:Nazwisko", profile.last_name)
            _sub(person, "etd:DataUrodzenia", profile.birth_date.isoformat())
        else:
            person = _sub(party, "OsobaNiefizyczna")
            _sub(person, "NIP", profile.normalized_nip)
            _sub(person, "PelnaNazwa", profile.full_name)
        _sub(person, "Email", profile.email)
        if profile.phone:
            _sub(person, "Telefon", profile.phone)

    @staticmethod
    def declaration_positions(
        settlement: PeriodSettlement, records: Iterable[Transaction]
    ) -> dict[str, Decimal]:
        """
        Whole-zloty declaration positions, in schema order.

        Derived totals follow the form arithmetic over the rounded
        positions, so the declaration is internally consistent.
        """
        field_sums: dict[str, Decimal] = {}
        for txn in records:
            for name, amount in sale_fields(txn) + purchase_fields(txn):
                field_sums[name] = field_sums.get(name, Decimal("0")) + amount

        positions: dict[str, Decimal] = {}
        for name in _SALE_FIELD_ORDER:
            if name in field_sums:
                positions[f"P_{name[2:]}"] = _whole(field_sums[name])
        net_total = sum((positions.get(p, Decimal("0")) for p in _NET_POSITIONS), Decimal("0"))
        output_vat = sum(
            (positions.get(p, Decimal("0")) for p in _OUTPUT_VAT_POSITIONS), Decimal("0")
        ) - sum(
            (positions.get(p, Decimal("0")) for p in _OUTPUT_DEDUCTION_POSITIONS), Decimal("0")
        )
        positions["P_37"] = net_total
        positions["P_38"] = output_vat

        carry_in = _whole(settlement.carry_forward_in)
        if carry_in:
            positions["P_39"] = carry_in
        input_vat = carry_in
        for name in _PURCHASE_FIELD_ORDER:
            if name in field_sums:
                positions[f"P_{name[2:]}"] = _whole(field_sums[name])
                if name in INPUT_VAT_FIELDS:
                    input_vat += positions[f"P_{name[2:]}"]
        positions["P_48"] = input_vat

        balance = output_vat - input_vat
        positions["P_51"] = max(balance, Decimal("0"))
        excess = max(-balance, Decimal("0"))
        if excess:
            positions["P_53"] = excess
            refund = Decimal("0")
            if settlement.refund_option not in (None, RefundOption.CARRY_FORWARD):
                refund = max(excess - _whole(settlement.carry_forward_out), Decimal("0"))
            if refund:
                positions["P_54"] = refund
                positions[_REFUND_TERM_POSITIONS[settlement.refund_option]] = Decimal("1")
            positions["P_62"] = excess - refund
        return positions

    def _declaration(
        self,
        root: ET.Element,
        layout: SchemaLayout,
        settlement: PeriodSettlement,
        records: list[Transaction],
    ) -> None:
        declaration = _sub(root, "Deklaracja")
        header = _sub(declaration, "Naglowek")
        _sub(
            header, "KodFormularzaDekl", layout.declaration_form,
            kodSystemowy=layout.declaration_system_code, kodPodatku="VAT",
            rodzajZobowiazania="Z", wersjaSchemy=layout.schema_variant,
        )
        _sub(header, "WariantFormularzaDekl", layout.declaration_variant)
        positions = _sub(declaration, "PozycjeSzczegolowe")
        for name, value in self.declaration_positions(settlement, records).items():
            _sub(positions, name, str(int(value)))
        _sub(declaration, "Pouczenia", "1")

    def _markers(self, layout: SchemaLayout, txn: Transaction) -> list[str]:
        if txn.classification is None:
            return []
        present = {
            layout.marker_aliases.get(marker, marker)
            for marker in txn.classification.markers
        }
        return [m for m in layout.sale_markers if m in present]

    @staticmethod
    def _ksef(row: ET.Element, layout: SchemaLayout, txn: Transaction) -> None:
        if not layout.ksef_fields:
            return
        if txn.ksef_number:
            _sub(row, "NrKSeF", txn.ksef_number)
        else:
            _sub(row, "OFF", "1")

    def _register(
        self, root: ET.Element, layout: SchemaLayout, records: list[Transaction]
    ) -> None:
        register = _sub(root, "Ewidencja")

        sales = [(t, sale_fields(t)) for t in records if t.has_output]
        output_vat = Decimal("0")
        for lp, (txn, fields) in enumerate(sales, start=1):
            row = _sub(register, "SprzedazWiersz")
            _sub(row, "LpSprzedazy", str(lp))
            party = txn.counterparty
            if not party.is_domestic:
                _sub(row, "KodKrajuNadaniaTIN", party.country_code)
            _sub(row, "NrKontrahenta", party.tax_id or "BRAK")
            _sub(row, "NazwaKontrahenta", party.name or "BRAK")
            _sub(row, "DowodSprzedazy", txn.document_number)
            _sub(row, "DataWystawienia", txn.transaction_date.isoformat())
            if txn.sale_date and txn.sale_date != txn.transaction_date:
                _sub(row, "DataSprzedazy", txn.sale_date.isoformat())
            self._ksef(row, layout, txn)
            for marker in self._markers(layout, txn):
                _sub(row, marker, "1")
            amounts = dict(fields)
            for name in _SALE_FIELD_ORDER:
                if name in amounts:
                    _sub(row, name, _money(amounts[name]))
                    if name in OUTPUT_VAT_FIELDS:
                        output_vat += amounts[name]
                    elif name in OUTPUT_VAT_DEDUCTIONS:
                        output_vat -= amounts[name]
        sales_ctrl = _sub(register, "SprzedazCtrl")
        _sub(sales_ctrl, "LiczbaWierszySprzedazy", str(len(sales)))
        _sub(sales_ctrl, "PodatekNalezny", _money(output_vat))

        purchases = [(t, purchase_fields(t)) for t in records]
        purchases = [(t, f) for t, f in purchases if f]
        input_vat = Decimal("0")
        for lp, (txn, fields) in enumerate(purchases, start=1):
            row = _sub(register, "ZakupWiersz")
            _sub(row, "LpZakupu", str(lp))
            party = txn.counterparty
            if not party.is_domestic:
                _sub(row, "KodKrajuNadaniaTIN", party.country_code)
            _sub(row, "NrDostawcy", party.tax_id or "BRAK")
            _sub(row, "NazwaDostawcy", party.name or "BRAK")
            _sub(row, "DowodZakupu", txn.document_number)
            _sub(row, "DataZakupu", txn.transaction_date.isoformat())
            if txn.sale_date and txn.sale_date != txn.transaction_date:
                _sub(row, "DataWplywu", txn.sale_date.isoformat())
            self._ksef(row, layout, txn)
            if txn.transaction_type == TransactionType.IMPORT_GOODS:
                _sub(row, "IMP", "1")
            amounts = dict(fields)
            for name in _PURCHASE_FIELD_ORDER:
                if name in amounts:
                    _sub(row, name, _money(amounts[name]))
                    if name in INPUT_VAT_FIELDS:
                        input_vat += amounts[name]
        purchase_ctrl = _sub(register, "ZakupCtrl")
        _sub(purchase_ctrl, "LiczbaWierszyZakupow", str(len(purchases)))
        _sub(purchase_ctrl, "PodatekNaliczony", _money(input_vat))
