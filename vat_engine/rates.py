"""
Effective-dated Polish VAT rate table.

Each rate code maps to a list of non-overlapping validity intervals.
Resolution picks the interval containing the requested date. Rate values
are stored as exact decimal fractions (0.23, not 23 or 0.23 float).

Sources: Ustawa o podatku od towarow i uslug (2004), art. 41 and art. 146a;
rate brackets raised on 2011-01-01 (22/7/3 -> 23/8/5).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Union

from vat_engine.exceptions import ConfigError, UnknownRateCode


class RateCode(Enum):
    """Rate brackets recognised by the engine."""

    STANDARD = "standard"
    REDUCED_8 = "reduced_8"  # 7% bracket before 2011
    REDUCED_5 = "reduced_5"  # 3% bracket before 2011
    ZERO = "zero"
    EXEMPT = "exempt"  # "zw"
    REVERSE_CHARGE = "reverse_charge"  # "np", seller side of reverse charge

    @classmethod
    def parse(cls, value: Union[str, "RateCode"]) -> "RateCode":
        """Accept enum members, names ("STANDARD"), values or form labels ("23", "zw")."""
        if isinstance(value, RateCode):
            return value
        text = str(value).strip()
        if text.upper() in cls.__members__:
            return cls[text.upper()]
        lowered = text.lower().rstrip("%")
        for member in cls:
            if member.value == lowered:
                return member
        if lowered in _LABEL_ALIASES:
            return _LABEL_ALIASES[lowered]
        raise UnknownRateCode(text, "any date")


_LABEL_ALIASES: dict[str, RateCode] = {
    "23": RateCode.STANDARD,
    "22": RateCode.STANDARD,
    "8": RateCode.REDUCED_8,
    "7": RateCode.REDUCED_8,
    "5": RateCode.REDUCED_5,
    "3": RateCode.REDUCED_5,
    "0": RateCode.ZERO,
    "zw": RateCode.EXEMPT,
    "np": RateCode.REVERSE_CHARGE,
    "oo": RateCode.REVERSE_CHARGE,
}


@dataclass(frozen=True)
class RatePeriod:
    """One validity interval of a rate code. valid_to is inclusive; None = open."""

    code: RateCode
    rate: Decimal
    label: str
    valid_from: date
    valid_to: Optional[date]
    rule_set: str

    def covers(self, as_of: date) -> bool:
        if as_of < self.valid_from:
            return False
        return self.valid_to is None or as_of <= self.valid_to

    def overlaps(self, other: "RatePeriod") -> bool:
        self_end = self.valid_to or date.max
        other_end = other.valid_to or date.max
        return self.valid_from <= other_end and other.valid_from <= self_end


@dataclass(frozen=True)
class ResolvedRate:
    """Outcome of a rate lookup."""

    code: RateCode
    rate_value: Decimal
    rule_set: str
    label: str

    @property
    def percent(self) -> Decimal:
        return self.rate_value * 100


# ---------------------------------------------------------------------------
# Rate table
# ---------------------------------------------------------------------------

_PRE_2011_END = date(2010, 12, 31)
_FROM_2011 = date(2011, 1, 1)
_VAT_ACT = date(2004, 5, 1)

_RATE_DATA: list[dict] = [
    {"code": RateCode.STANDARD, "rate": "0.22", "label": "22",
     "from": _VAT_ACT, "to": _PRE_2011_END, "rule_set": "VAT-2004"},
    {"code": RateCode.STANDARD, "rate": "0.23", "label": "23",
     "from": _FROM_2011, "to": None, "rule_set": "VAT-2011"},
    {"code": RateCode.REDUCED_8, "rate": "0.07", "label": "7",
     "from": _VAT_ACT, "to": _PRE_2011_END, "rule_set": "VAT-2004"},
    {"code": RateCode.REDUCED_8, "rate": "0.08", "label": "8",
     "from": _FROM_2011, "to": None, "rule_set": "VAT-2011"},
    {"code": RateCode.REDUCED_5, "rate": "0.03", "label": "3",
     "from": _VAT_ACT, "to": _PRE_2011_END, "rule_set": "VAT-2004"},
    {"code": RateCode.REDUCED_5, "rate": "0.05", "label": "5",
     "from": _FROM_2011, "to": None, "rule_set": "VAT-2011"},
    {"code": RateCode.ZERO, "rate": "0", "label": "0",
     "from": _VAT_ACT, "to": None, "rule_set": "VAT-2004"},
    {"code": RateCode.EXEMPT, "rate": "0", "label": "zw",
     "from": _VAT_ACT, "to": None, "rule_set": "VAT-2004"},
    {"code": RateCode.REVERSE_CHARGE, "rate": "0", "label": "np",
     "from": _VAT_ACT, "to": None, "rule_set": "VAT-2004"},
]


def default_rate_table() -> list[RatePeriod]:
    return [
        RatePeriod(
            code=row["code"],
            rate=Decimal(row["rate"]),
            label=row["label"],
            valid_from=row["from"],
            valid_to=row["to"],
            rule_set=row["rule_set"],
        )
        for row in _RATE_DATA
    ]


class RateResolver:
    """
    Resolves the applicable rate for a code on a date.

    The table is injected read-only data; the default is the statutory
    Polish table. Overlapping intervals for one code are rejected up front.
    """

    def __init__(self, table: Optional[Iterable[RatePeriod]] = None) -> None:
        self._periods: dict[RateCode, list[RatePeriod]] = {}
        for period in table if table is not None else default_rate_table():
            self._periods.setdefault(period.code, []).append(period)
        for code, periods in self._periods.items():
            periods.sort(key=lambda p: p.valid_from)
            self._check_overlaps(code, periods)

    @staticmethod
    def _check_overlaps(code: RateCode, periods: list[RatePeriod]) -> None:
        for earlier, later in zip(periods, periods[1:]):
            if earlier.overlaps(later):
                raise ConfigError(
                    f"Overlapping validity intervals for {code.name}",
                    issues=[
                        f"{earlier.valid_from}..{earlier.valid_to} overlaps "
                        f"{later.valid_from}..{later.valid_to}"
                    ],
                )

    @property
    def codes(self) -> list[RateCode]:
        return [code for code in RateCode if code in self._periods]

    def resolve(self, rate_code: Union[str, RateCode], as_of: date) -> ResolvedRate:
        """Return rate value and rule set in force on as_of."""
        try:
            code = RateCode.parse(rate_code)
        except UnknownRateCode:
            raise UnknownRateCode(str(rate_code), as_of) from None
        for period in self._periods.get(code, []):
            if period.covers(as_of):
                return ResolvedRate(
                    code=code,
                    rate_value=period.rate,
                    rule_set=period.rule_set,
                    label=period.label,
                )
        raise UnknownRateCode(code.name, as_of)

    def history(self, rate_code: Union[str, RateCode]) -> list[RatePeriod]:
        """All validity intervals for a code, oldest first."""
        return list(self._periods.get(RateCode.parse(rate_code), []))

    def rates_on(self, as_of: date) -> list[ResolvedRate]:
        """Every code effective on a date, in enum order."""
        resolved: list[ResolvedRate] = []
        for code in self.codes:
            try:
                resolved.append(self.resolve(code, as_of))
            except UnknownRateCode:
                continue
        return resolved
