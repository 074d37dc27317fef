"""
VAT amount derivation and transaction posting.

Handles:
- Net -> VAT/gross and gross -> net/VAT derivation, exact decimals, half-up
- Direction derivation from transaction type (OUTPUT / INPUT / BOTH)
- Intra-EU checks for WDT / WNT counterparties
- Posting raw documents into immutable, classified Transaction records
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, Optional

from vat_engine.classifier import (
    Classification,
    LineItem,
    ServiceType,
    TransactionClassifier,
    TransactionMetadata,
)
from vat_engine.exceptions import ValidationError, VatEngineError
from vat_engine.periods import PeriodKey
from vat_engine.rates import RateCode, RateResolver

MINOR_UNIT = Decimal("0.01")


class PricingModel(Enum):
    NET = "net"  # VAT added on top of the amount
    GROSS = "gross"  # VAT already embedded in the amount


class Direction(Enum):
    OUTPUT = "output"  # VAT due (sales side)
    INPUT = "input"  # VAT deductible (purchase side)
    BOTH = "both"  # self-assessed: due and deductible


class TransactionType(Enum):
    DOMESTIC_SALE = "domestic_sale"
    WDT = "wdt"  # intra-EU supply
    EXPORT = "export"
    DOMESTIC_PURCHASE = "domestic_purchase"
    FIXED_ASSET_PURCHASE = "fixed_asset_purchase"
    IMPORT_GOODS = "import_goods"
    WNT = "wnt"  # intra-EU acquisition
    IMPORT_SERVICES = "import_services"
    REVERSE_CHARGE = "reverse_charge"  # domestic, buyer accounts for VAT


class TransactionStatus(Enum):
    ACTIVE = "active"
    CORRECTED = "corrected"  # still counts; corrections are deltas
    SUPERSEDED = "superseded"  # excluded from settlement


_DIRECTIONS: dict[TransactionType, Direction] = {
    TransactionType.DOMESTIC_SALE: Direction.OUTPUT,
    TransactionType.WDT: Direction.OUTPUT,
    TransactionType.EXPORT: Direction.OUTPUT,
    TransactionType.DOMESTIC_PURCHASE: Direction.INPUT,
    TransactionType.FIXED_ASSET_PURCHASE: Direction.INPUT,
    TransactionType.IMPORT_GOODS: Direction.INPUT,
    TransactionType.WNT: Direction.BOTH,
    TransactionType.IMPORT_SERVICES: Direction.BOTH,
    TransactionType.REVERSE_CHARGE: Direction.BOTH,
}

_ZERO_RATED_TYPES = (TransactionType.WDT, TransactionType.EXPORT)
_INTRA_EU_TYPES = (TransactionType.WDT, TransactionType.WNT)

EU_MEMBER_PREFIXES = frozenset({
    "AT", "BE", "BG", "CY", "CZ", "DE", "DK", "EE", "EL", "ES", "FI", "FR",
    "HR", "HU", "IE", "IT", "LT", "LU", "LV", "MT", "NL", "PT", "RO",
    "SE", "SI", "SK", "XI",
})
_EU_VAT_ID = re.compile(r"^[A-Z]{2}[0-9A-Z+*]{2,12}$")


def direction_for(transaction_type: TransactionType) -> Direction:
    return _DIRECTIONS.get(transaction_type, Direction.OUTPUT)


def round_amount(amount: Decimal) -> Decimal:
    """Round to one grosz, half-up."""
    return amount.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Parse money without ever passing through float."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise ValidationError(
            f"{field_name} must not be a float", field=field_name
        )
    try:
        return Decimal(str(value).strip().replace(",", "."))
    except (InvalidOperation, AttributeError):
        raise ValidationError(
            f"{field_name} is not a valid amount: {value!r}", field=field_name
        ) from None


def is_valid_eu_vat_id(vat_id: Optional[str]) -> bool:
    """Format check only; VIES confirmation is recorded by the caller."""
    if not vat_id:
        return False
    cleaned = vat_id.replace(" ", "").upper()
    return cleaned[:2] in EU_MEMBER_PREFIXES and bool(_EU_VAT_ID.match(cleaned))


@dataclass(frozen=True)
class VatAmounts:
    """Net / VAT / gross triple for one rate."""

    net: Decimal
    vat: Decimal
    gross: Decimal
    rate: Decimal


def calculate_from_net(net: Decimal, rate: Decimal) -> VatAmounts:
    """vat = round(net x rate); gross = net + vat."""
    vat = round_amount(net * rate)
    return VatAmounts(net=net, vat=vat, gross=net + vat, rate=rate)


def calculate_from_gross(gross: Decimal, rate: Decimal) -> VatAmounts:
    """net = round(gross / (1 + rate)); vat = gross - net."""
    net = round_amount(gross / (Decimal("1") + rate))
    return VatAmounts(net=net, vat=gross - net, gross=gross, rate=rate)


@dataclass(frozen=True)
class Counterparty:
    """Buyer or supplier as it appears on the document."""

    name: str = ""
    tax_id: Optional[str] = None
    country_code: str = "PL"
    foreign_id_verified: bool = False

    @property
    def is_domestic(self) -> bool:
        return self.country_code.upper() == "PL"


@dataclass(frozen=True)
class Transaction:
    """
    A posted, immutable VAT transaction.

    Corrections are separate Transaction records linked through
    corrects_transaction_id; the original is only ever re-marked via
    with_status().
    """

    transaction_id: str
    client_id: str
    sequence_number: int
    document_number: str
    transaction_type: TransactionType
    direction: Direction
    transaction_date: date
    tax_year: int
    tax_month: int
    net_amount: Decimal
    vat_amount: Decimal
    gross_amount: Decimal
    rate_code: Optional[RateCode]
    rate_value: Optional[Decimal]
    rule_set: Optional[str] = None
    classification: Optional[Classification] = None
    counterparty: Counterparty = field(default_factory=Counterparty)
    cross_border: bool = False
    deductible: bool = True
    status: TransactionStatus = TransactionStatus.ACTIVE
    corrects_transaction_id: Optional[str] = None
    correction_reason: Optional[str] = None
    correction_sequence: int = 0
    sale_date: Optional[date] = None
    ksef_number: Optional[str] = None

    def __post_init__(self) -> None:
        if abs(self.gross_amount - (self.net_amount + self.vat_amount)) > MINOR_UNIT:
            raise ValidationError(
                f"{self.transaction_id}: gross {self.gross_amount} != "
                f"net {self.net_amount} + vat {self.vat_amount}",
                field="gross_amount",
            )
        if self.rate_value is not None:
            expected = round_amount(self.net_amount * self.rate_value)
            # gross-priced documents derive vat as gross - net
            if abs(self.vat_amount - expected) > MINOR_UNIT:
                raise ValidationError(
                    f"{self.transaction_id}: vat {self.vat_amount} != "
                    f"round({self.net_amount} x {self.rate_value}) = {expected}",
                    field="vat_amount",
                )

    @property
    def is_correction(self) -> bool:
        return self.corrects_transaction_id is not None

    @property
    def tax_period(self) -> PeriodKey:
        return PeriodKey.of_month(self.tax_year, self.tax_month)

    @property
    def has_output(self) -> bool:
        return self.direction in (Direction.OUTPUT, Direction.BOTH)

    @property
    def has_input(self) -> bool:
        return self.direction in (Direction.INPUT, Direction.BOTH)

    @property
    def deductible_vat(self) -> Decimal:
        return self.vat_amount if self.deductible else Decimal("0.00")

    def with_status(self, status: TransactionStatus) -> "Transaction":
        return replace(self, status=status)


@dataclass
class TransactionInput:
    """Raw document data before posting."""

    transaction_id: str
    client_id: str
    document_number: str
    transaction_type: TransactionType
    transaction_date: date
    amount: Decimal
    rate_code: str
    pricing_model: PricingModel = PricingModel.NET
    line_items: list[LineItem] = field(default_factory=list)
    service_type: ServiceType = ServiceType.GOODS
    related_party: bool = False
    mail_order: bool = False
    triangular_trade: bool = False
    counterparty: Counterparty = field(default_factory=Counterparty)
    deductible: bool = True
    sale_date: Optional[date] = None
    ksef_number: Optional[str] = None
    sequence_number: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TransactionInput":
        def _flag(key: str) -> bool:
            return str(data.get(key, "")).strip().lower() in ("1", "true", "yes", "y")

        def _date(key: str) -> Optional[date]:
            value = data.get(key)
            if not value:
                return None
            return value if isinstance(value, date) else date.fromisoformat(str(value))

        amount_key = "gross_amount" if data.get("gross_amount") else "net_amount"
        line_items = [
            LineItem(cn_code=code.strip())
            for code in str(data.get("cn_codes") or "").split(";")
            if code.strip()
        ] + [
            LineItem(pkwiu_code=code.strip())
            for code in str(data.get("pkwiu_codes") or "").split(";")
            if code.strip()
        ]
        sequence = data.get("sequence_number")
        return cls(
            transaction_id=str(data.get("transaction_id", "")),
            client_id=str(data.get("client_id", "")),
            document_number=str(data.get("document_number") or data.get("transaction_id", "")),
            transaction_type=TransactionType(
                str(data.get("transaction_type", "domestic_sale")).strip().lower()
            ),
            transaction_date=_date("transaction_date") or date.today(),
            amount=to_decimal(data[amount_key], amount_key),
            rate_code=str(data.get("rate_code", "STANDARD")),
            pricing_model=PricingModel.GROSS if amount_key == "gross_amount" else PricingModel.NET,
            line_items=line_items,
            service_type=ServiceType(
                str(data.get("service_type") or "goods").strip().lower()
            ),
            related_party=_flag("related_party"),
            mail_order=_flag("mail_order"),
            triangular_trade=_flag("triangular_trade"),
            counterparty=Counterparty(
                name=str(data.get("counterparty_name", "")),
                tax_id=data.get("counterparty_tax_id") or None,
                country_code=str(data.get("counterparty_country") or "PL").upper(),
                foreign_id_verified=_flag("foreign_id_verified"),
            ),
            deductible=not _flag("non_deductible"),
            sale_date=_date("sale_date"),
            ksef_number=data.get("ksef_number") or None,
            sequence_number=int(sequence) if sequence not in (None, "") else None,
        )


@dataclass
class PostingResult:
    """Outcome of posting a batch of documents."""

    transactions: list[Transaction]
    errors: list[dict[str, Any]]

    @property
    def posted_count(self) -> int:
        return len(self.transactions)


class VatCalculator:
    """
    Posts raw documents into immutable VAT transactions.

    Resolves the rate in force on the transaction date, derives the
    direction, classifies line items, and computes amounts from either
    the net or the gross side.
    """

    def __init__(
        self,
        resolver: Optional[RateResolver] = None,
        classifier: Optional[TransactionClassifier] = None,
    ) -> None:
        self.resolver = resolver or RateResolver()
        self.classifier = classifier or TransactionClassifier()

    def amounts(
        self,
        amount: Decimal,
        rate_code: str,
        as_of: date,
        pricing_model: PricingModel = PricingModel.NET,
    ) -> VatAmounts:
        rate = self.resolver.resolve(rate_code, as_of).rate_value
        if pricing_model == PricingModel.GROSS:
            return calculate_from_gross(amount, rate)
        return calculate_from_net(amount, rate)

    def _check_document(self, doc: TransactionInput, rate_code: RateCode) -> None:
        errors: list[str] = []
        if doc.amount != doc.amount.quantize(MINOR_UNIT):
            errors.append(f"amount {doc.amount} has more than two decimal places")
        if doc.transaction_type in _ZERO_RATED_TYPES and rate_code != RateCode.ZERO:
            errors.append(
                f"{doc.transaction_type.name} must be zero-rated, got {rate_code.name}"
            )
        if doc.transaction_type in _INTRA_EU_TYPES:
            party = doc.counterparty
            if party.is_domestic:
                errors.append("intra-EU transaction requires a foreign counterparty")
            elif not is_valid_eu_vat_id(party.tax_id):
                errors.append(f"invalid EU VAT identifier: {party.tax_id!r}")
            elif not party.foreign_id_verified:
                errors.append(f"EU VAT identifier {party.tax_id} not verified")
        if errors:
            raise ValidationError(
                f"Document {doc.document_number} failed validation",
                field="document",
                errors=errors,
            )

    def post(self, doc: TransactionInput, sequence_number: Optional[int] = None) -> Transaction:
        """Turn a raw document into a classified, immutable Transaction."""
        resolved = self.resolver.resolve(doc.rate_code, doc.transaction_date)
        self._check_document(doc, resolved.code)

        if doc.pricing_model == PricingModel.GROSS:
            amounts = calculate_from_gross(doc.amount, resolved.rate_value)
        else:
            amounts = calculate_from_net(doc.amount, resolved.rate_value)

        classification = self.classifier.classify(
            doc.line_items,
            TransactionMetadata(
                gross_total=amounts.gross,
                service_type=doc.service_type,
                related_party=doc.related_party,
                mail_order=doc.mail_order,
                triangular_trade=doc.triangular_trade,
                intra_eu_acquisition=doc.transaction_type == TransactionType.WNT,
            ),
        )
        sequence = sequence_number if sequence_number is not None else doc.sequence_number
        return Transaction(
            transaction_id=doc.transaction_id,
            client_id=doc.client_id,
            sequence_number=sequence if sequence is not None else 0,
            document_number=doc.document_number,
            transaction_type=doc.transaction_type,
            direction=direction_for(doc.transaction_type),
            transaction_date=doc.transaction_date,
            tax_year=doc.transaction_date.year,
            tax_month=doc.transaction_date.month,
            net_amount=amounts.net,
            vat_amount=amounts.vat,
            gross_amount=amounts.gross,
            rate_code=resolved.code,
            rate_value=resolved.rate_value,
            rule_set=resolved.rule_set,
            classification=classification,
            counterparty=doc.counterparty,
            cross_border=not doc.counterparty.is_domestic,
            deductible=doc.deductible,
            sale_date=doc.sale_date,
            ksef_number=doc.ksef_number,
        )

    def post_batch(self, docs: Iterable[TransactionInput]) -> PostingResult:
        """
        Post many documents, numbering them in ingestion order.

        A document that fails validation is reported and skipped; the
        ingestion counter still advances so sequence numbers stay stable.
        """
        posted: list[Transaction] = []
        errors: list[dict[str, Any]] = []
        for index, doc in enumerate(docs, start=1):
            try:
                posted.append(self.post(doc, sequence_number=index))
            except VatEngineError as exc:
                errors.append({"transaction_id": doc.transaction_id, **exc.to_dict()})
        return PostingResult(transactions=posted, errors=errors)
