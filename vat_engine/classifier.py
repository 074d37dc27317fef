"""
Transaction classification for JPK sales records.

Derives:
- GTU_01..GTU_13 commodity group codes from CN / PKWiU codes on line items
- Procedure markers (TP, SW, EE, TT_WNT, TT_D, MR_T, MR_UZ, ...) from metadata
- The mandatory split payment (MPP) flag from gross total and goods list
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional


class CodeScheme(Enum):
    CN = "cn"  # Combined Nomenclature (goods)
    PKWIU = "pkwiu"  # Polish classification of goods and services


class ServiceType(Enum):
    GOODS = "goods"
    GENERAL_SERVICES = "general_services"
    ELECTRONIC_SERVICES = "electronic_services"
    REAL_ESTATE = "real_estate"
    EMISSION_ALLOWANCES = "emission_allowances"
    MARGIN_TRAVEL = "margin_travel"
    MARGIN_USED_GOODS = "margin_used_goods"
    TAX_WAREHOUSE = "tax_warehouse"


class ProcedureCode(Enum):
    SW = "SW"  # distance selling (mail order) from Poland
    EE = "EE"  # telecom/broadcast/electronic services to consumers
    WSTO_EE = "WSTO_EE"  # intra-EU distance sales and e-services
    TP = "TP"  # related parties
    TT_WNT = "TT_WNT"  # triangular trade, acquisition by middle party
    TT_D = "TT_D"  # triangular trade, supply by middle party
    MR_T = "MR_T"  # margin scheme, tourism
    MR_UZ = "MR_UZ"  # margin scheme, used goods
    I_63 = "I_63"  # tax warehouse
    MPP = "MPP"  # mandatory split payment


MANDATORY_SPLIT_PAYMENT_THRESHOLD = Decimal("15000.00")


@dataclass(frozen=True)
class LineItem:
    """One invoice line. Codes may be written with dots or spaces."""

    description: str = ""
    net_amount: Decimal = Decimal("0")
    cn_code: Optional[str] = None
    pkwiu_code: Optional[str] = None


@dataclass(frozen=True)
class TransactionMetadata:
    """Transaction-level facts that drive procedure markers."""

    gross_total: Decimal = Decimal("0")
    service_type: ServiceType = ServiceType.GOODS
    related_party: bool = False
    mail_order: bool = False
    triangular_trade: bool = False
    intra_eu_acquisition: bool = False


@dataclass(frozen=True)
class Classification:
    """Flags attached to a transaction."""

    gtu_codes: frozenset[str] = field(default_factory=frozenset)
    procedure_codes: frozenset[ProcedureCode] = field(default_factory=frozenset)
    split_payment: bool = False

    @property
    def markers(self) -> tuple[str, ...]:
        """All marker names, sorted, MPP included when set."""
        names = set(self.gtu_codes) | {p.value for p in self.procedure_codes}
        if self.split_payment:
            names.add(ProcedureCode.MPP.value)
        return tuple(sorted(names))

    def merge(self, other: "Classification") -> "Classification":
        return Classification(
            gtu_codes=self.gtu_codes | other.gtu_codes,
            procedure_codes=self.procedure_codes | other.procedure_codes,
            split_payment=self.split_payment or other.split_payment,
        )

    @classmethod
    def from_markers(cls, markers: Iterable[str]) -> "Classification":
        gtu: set[str] = set()
        procedures: set[ProcedureCode] = set()
        split_payment = False
        for raw in markers:
            name = raw.strip().upper()
            if not name:
                continue
            if name.startswith("GTU_"):
                gtu.add(name)
            elif name == ProcedureCode.MPP.value:
                split_payment = True
            else:
                procedures.add(ProcedureCode(name))
        return cls(frozenset(gtu), frozenset(procedures), split_payment)


# ---------------------------------------------------------------------------
# Static prefix tables
# ---------------------------------------------------------------------------

# (scheme, code prefix, GTU flag). Prefixes are normalised: no dots or spaces.
_GTU_PREFIXES: list[tuple[CodeScheme, str, str]] = [
    # GTU_01 alcoholic beverages
    (CodeScheme.CN, "2203", "GTU_01"),
    (CodeScheme.CN, "2204", "GTU_01"),
    (CodeScheme.CN, "2205", "GTU_01"),
    (CodeScheme.CN, "2206", "GTU_01"),
    (CodeScheme.CN, "2208", "GTU_01"),
    # GTU_02 motor fuels
    (CodeScheme.CN, "2207", "GTU_02"),
    (CodeScheme.CN, "271012", "GTU_02"),
    (CodeScheme.CN, "271019", "GTU_02"),
    (CodeScheme.CN, "2711", "GTU_02"),
    (CodeScheme.CN, "3826", "GTU_02"),
    # GTU_03 heating oil and lubricants
    (CodeScheme.CN, "27101943", "GTU_03"),
    (CodeScheme.CN, "27101946", "GTU_03"),
    (CodeScheme.CN, "3403", "GTU_03"),
    (CodeScheme.CN, "3811", "GTU_03"),
    # GTU_04 tobacco, e-liquids
    (CodeScheme.CN, "2402", "GTU_04"),
    (CodeScheme.CN, "2403", "GTU_04"),
    (CodeScheme.CN, "2404", "GTU_04"),
    # GTU_05 waste and scrap
    (CodeScheme.CN, "3915", "GTU_05"),
    (CodeScheme.CN, "4707", "GTU_05"),
    (CodeScheme.CN, "7204", "GTU_05"),
    (CodeScheme.CN, "7404", "GTU_05"),
    (CodeScheme.CN, "7503", "GTU_05"),
    (CodeScheme.CN, "7602", "GTU_05"),
    (CodeScheme.CN, "7802", "GTU_05"),
    (CodeScheme.CN, "7902", "GTU_05"),
    # GTU_06 electronic devices and parts
    (CodeScheme.CN, "8471", "GTU_06"),
    (CodeScheme.CN, "851713", "GTU_06"),
    (CodeScheme.CN, "851714", "GTU_06"),
    (CodeScheme.CN, "8528", "GTU_06"),
    (CodeScheme.CN, "950450", "GTU_06"),
    # GTU_07 vehicles and parts
    (CodeScheme.CN, "8701", "GTU_07"),
    (CodeScheme.CN, "8702", "GTU_07"),
    (CodeScheme.CN, "8703", "GTU_07"),
    (CodeScheme.CN, "8704", "GTU_07"),
    (CodeScheme.CN, "8705", "GTU_07"),
    (CodeScheme.CN, "8708", "GTU_07"),
    (CodeScheme.CN, "8711", "GTU_07"),
    # GTU_08 precious metals and jewellery
    (CodeScheme.CN, "7106", "GTU_08"),
    (CodeScheme.CN, "7108", "GTU_08"),
    (CodeScheme.CN, "7110", "GTU_08"),
    (CodeScheme.CN, "7113", "GTU_08"),
    (CodeScheme.CN, "7114", "GTU_08"),
    # GTU_09 medicines and medical devices
    (CodeScheme.CN, "3002", "GTU_09"),
    (CodeScheme.CN, "3003", "GTU_09"),
    (CodeScheme.CN, "3004", "GTU_09"),
    # GTU_12 intangible services
    (CodeScheme.PKWIU, "69", "GTU_12"),  # legal and accounting
    (CodeScheme.PKWIU, "702", "GTU_12"),  # management consultancy
    (CodeScheme.PKWIU, "731", "GTU_12"),  # advertising
    (CodeScheme.PKWIU, "732", "GTU_12"),  # market research
    (CodeScheme.PKWIU, "781", "GTU_12"),  # employment services
    (CodeScheme.PKWIU, "8559", "GTU_12"),  # training
    # GTU_13 transport and warehousing
    (CodeScheme.PKWIU, "494", "GTU_13"),
    (CodeScheme.PKWIU, "5210", "GTU_13"),
]

# GTU flags set by the nature of the supply rather than an item code.
_SERVICE_TYPE_GTU: dict[ServiceType, str] = {
    ServiceType.REAL_ESTATE: "GTU_10",
    ServiceType.EMISSION_ALLOWANCES: "GTU_11",
}

_SERVICE_TYPE_PROCEDURES: dict[ServiceType, ProcedureCode] = {
    ServiceType.ELECTRONIC_SERVICES: ProcedureCode.EE,
    ServiceType.MARGIN_TRAVEL: ProcedureCode.MR_T,
    ServiceType.MARGIN_USED_GOODS: ProcedureCode.MR_UZ,
    ServiceType.TAX_WAREHOUSE: ProcedureCode.I_63,
}

# Goods listed for mandatory split payment (CN prefixes).
_SENSITIVE_GOODS: tuple[str, ...] = (
    "2710",  # fuels
    "7106", "7108", "7113",  # precious metals, jewellery
    "7204", "7404", "7503", "7602", "7802", "7902",  # scrap
    "7208", "7209", "7210", "7213", "7214", "7216",  # steel products
    "8471", "851713", "851714",  # computers, phones
    "8507",  # accumulators
    "8708",  # vehicle parts
)


def normalize_code(code: Optional[str]) -> str:
    if not code:
        return ""
    return "".join(ch for ch in code.upper() if ch.isalnum())


class TransactionClassifier:
    """
    Derives classification flags from line items and metadata.

    Pure: the same input always yields the same flags. Unclassifiable items
    contribute nothing.
    """

    def __init__(
        self,
        gtu_prefixes: Optional[list[tuple[CodeScheme, str, str]]] = None,
        sensitive_goods: Optional[Iterable[str]] = None,
        split_payment_threshold: Decimal = MANDATORY_SPLIT_PAYMENT_THRESHOLD,
    ) -> None:
        self._gtu_prefixes = list(gtu_prefixes or _GTU_PREFIXES)
        self._sensitive_goods = tuple(
            normalize_code(code)
            for code in (sensitive_goods if sensitive_goods is not None else _SENSITIVE_GOODS)
        )
        self.split_payment_threshold = split_payment_threshold

    def gtu_for_item(self, item: LineItem) -> set[str]:
        codes = {
            CodeScheme.CN: normalize_code(item.cn_code),
            CodeScheme.PKWIU: normalize_code(item.pkwiu_code),
        }
        flags: set[str] = set()
        for scheme, prefix, gtu in self._gtu_prefixes:
            code = codes[scheme]
            if code and code.startswith(prefix):
                flags.add(gtu)
        return flags

    def is_sensitive(self, item: LineItem) -> bool:
        code = normalize_code(item.cn_code)
        return bool(code) and any(code.startswith(p) for p in self._sensitive_goods)

    def requires_split_payment(
        self, items: Iterable[LineItem], gross_total: Decimal
    ) -> bool:
        if gross_total < self.split_payment_threshold:
            return False
        return any(self.is_sensitive(item) for item in items)

    def procedures_for(self, metadata: TransactionMetadata) -> set[ProcedureCode]:
        procedures: set[ProcedureCode] = set()
        if metadata.related_party:
            procedures.add(ProcedureCode.TP)
        if metadata.mail_order:
            procedures.add(ProcedureCode.SW)
        if metadata.triangular_trade:
            procedures.add(
                ProcedureCode.TT_WNT
                if metadata.intra_eu_acquisition
                else ProcedureCode.TT_D
            )
        service_procedure = _SERVICE_TYPE_PROCEDURES.get(metadata.service_type)
        if service_procedure is not None:
            procedures.add(service_procedure)
        return procedures

    def classify(
        self,
        items: Iterable[LineItem],
        metadata: Optional[TransactionMetadata] = None,
    ) -> Classification:
        """Return the union of flags across items plus metadata-driven flags."""
        meta = metadata or TransactionMetadata()
        item_list = list(items)

        gtu: set[str] = set()
        for item in item_list:
            gtu |= self.gtu_for_item(item)
        service_gtu = _SERVICE_TYPE_GTU.get(meta.service_type)
        if service_gtu:
            gtu.add(service_gtu)

        return Classification(
            gtu_codes=frozenset(gtu),
            procedure_codes=frozenset(self.procedures_for(meta)),
            split_payment=self.requires_split_payment(item_list, meta.gross_total),
        )
