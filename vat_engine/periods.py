"""
Tax period keys.

A settlement covers either one calendar month or one calendar quarter.
Keys are parsed from "2024-03" / "2024-Q1" labels and compared by their
start date.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

from vat_engine.exceptions import InvalidPeriodError


class PeriodKind(Enum):
    MONTH = "month"
    QUARTER = "quarter"


_MONTH_LABEL = re.compile(r"^(\d{4})-(\d{1,2})$")
_QUARTER_LABEL = re.compile(r"^(\d{4})-?Q([1-4])$", re.IGNORECASE)


@dataclass(frozen=True)
class PeriodKey:
    """A calendar month or quarter of a tax year."""

    year: int
    month: Optional[int] = None
    quarter: Optional[int] = None

    def __post_init__(self) -> None:
        if not 2000 <= self.year <= 2100:
            raise InvalidPeriodError(f"Year out of range: {self.year}")
        if (self.month is None) == (self.quarter is None):
            raise InvalidPeriodError(
                "Exactly one of month or quarter must be given"
            )
        if self.month is not None and not 1 <= self.month <= 12:
            raise InvalidPeriodError(f"Month out of range: {self.month}")
        if self.quarter is not None and not 1 <= self.quarter <= 4:
            raise InvalidPeriodError(f"Quarter out of range: {self.quarter}")

    @classmethod
    def of_month(cls, year: int, month: int) -> "PeriodKey":
        return cls(year=year, month=month)

    @classmethod
    def of_quarter(cls, year: int, quarter: int) -> "PeriodKey":
        return cls(year=year, quarter=quarter)

    @classmethod
    def for_date(cls, value: date, kind: PeriodKind = PeriodKind.MONTH) -> "PeriodKey":
        if kind == PeriodKind.QUARTER:
            return cls(year=value.year, quarter=(value.month - 1) // 3 + 1)
        return cls(year=value.year, month=value.month)

    @classmethod
    def parse(cls, label: str) -> "PeriodKey":
        """Parse "YYYY-MM" or "YYYY-Qn"."""
        text = (label or "").strip()
        match = _QUARTER_LABEL.match(text)
        if match:
            return cls(year=int(match.group(1)), quarter=int(match.group(2)))
        match = _MONTH_LABEL.match(text)
        if match:
            return cls(year=int(match.group(1)), month=int(match.group(2)))
        raise InvalidPeriodError(f"Malformed period label: {label!r}")

    @property
    def kind(self) -> PeriodKind:
        return PeriodKind.MONTH if self.month is not None else PeriodKind.QUARTER

    @property
    def label(self) -> str:
        if self.month is not None:
            return f"{self.year}-{self.month:02d}"
        return f"{self.year}-Q{self.quarter}"

    @property
    def months(self) -> tuple[int, ...]:
        if self.month is not None:
            return (self.month,)
        first = (self.quarter - 1) * 3 + 1
        return (first, first + 1, first + 2)

    @property
    def start(self) -> date:
        return date(self.year, self.months[0], 1)

    @property
    def end(self) -> date:
        last_month = self.months[-1]
        return date(self.year, last_month, calendar.monthrange(self.year, last_month)[1])

    def contains(self, year: int, month: int) -> bool:
        return year == self.year and month in self.months

    def containing_quarter(self) -> "PeriodKey":
        if self.quarter is not None:
            return self
        return PeriodKey(year=self.year, quarter=(self.month - 1) // 3 + 1)

    def next(self) -> "PeriodKey":
        if self.month is not None:
            if self.month == 12:
                return PeriodKey(year=self.year + 1, month=1)
            return PeriodKey(year=self.year, month=self.month + 1)
        if self.quarter == 4:
            return PeriodKey(year=self.year + 1, quarter=1)
        return PeriodKey(year=self.year, quarter=self.quarter + 1)

    def is_before(self, other: "PeriodKey") -> bool:
        return self.end < other.start

    def __str__(self) -> str:
        return self.label
