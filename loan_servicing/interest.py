"""
Interest Accrual Module

Day-count interest accrual over a capital ledger. Interest is Actual/365
simple interest, computed per segment of constant principal and rate and
rounded to the currency minor unit once per segment, never per day.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .config import EngineSettings, get_config
from .currency import Money, Currency, money_sum
from .ledger import CapitalLedger
from .loans import ScheduleRow, PostingFrequency


def raw_interest(principal: Decimal, annual_rate: Decimal, days: int,
                 basis: Decimal = Decimal('365')) -> Decimal:
    """Unrounded principal x rate/100 x days/basis"""
    return principal * annual_rate / Decimal('100') * Decimal(days) / basis


def segment_interest(principal: Money, annual_rate: Decimal, days: int,
                     basis: Decimal = Decimal('365')) -> Money:
    """Interest for one segment, rounded to the minor unit"""
    return Money(raw_interest(principal.amount, annual_rate, days, basis), principal.currency)


def next_posting_date(day: date, frequency: PostingFrequency) -> date:
    """First day of the next calendar month, quarter or year after ``day``"""
    months = frequency.months
    index = (day.year * 12 + day.month - 1) // months * months + months
    return date(index // 12, index % 12 + 1, 1)


@dataclass(frozen=True)
class Segment:
    """Maximal date range over which principal and rate are constant"""
    start_date: date
    end_date: date                     # Exclusive
    days: int
    principal_at_start: Money
    annual_rate: Decimal
    is_penalty_rate: bool
    interest_amount: Money

    def to_dict(self) -> Dict:
        return {
            'start_date': self.start_date.isoformat(),
            'end_date': self.end_date.isoformat(),
            'days': self.days,
            'principal': str(self.principal_at_start.amount),
            'annual_rate': str(self.annual_rate),
            'is_penalty_rate': self.is_penalty_rate,
            'interest': str(self.interest_amount.amount)
        }


@dataclass(frozen=True)
class AccrualResult:
    """Ledger interest over ``[from_date, to_date)``"""
    from_date: date
    to_date: date
    currency: Currency
    segments: List[Segment] = field(default_factory=list)

    @property
    def total_interest(self) -> Money:
        return money_sum((s.interest_amount for s in self.segments), self.currency)

    @property
    def days(self) -> int:
        return sum(s.days for s in self.segments)

    def to_dict(self) -> Dict:
        return {
            'from_date': self.from_date.isoformat(),
            'to_date': self.to_date.isoformat(),
            'days': self.days,
            'total_interest': str(self.total_interest.amount),
            'currency': self.currency.code,
            'segments': [s.to_dict() for s in self.segments]
        }


@dataclass(frozen=True)
class PeriodInterest:
    """Scheduled vs ledger interest for one schedule row"""
    installment_number: int
    period_start: date
    period_end: date
    due_date: date
    scheduled_interest: Money
    ledger_interest: Money
    cumulative_ledger_interest: Money

    @property
    def difference(self) -> Money:
        return abs(self.scheduled_interest - self.ledger_interest)

    def to_dict(self) -> Dict:
        return {
            'installment_number': self.installment_number,
            'period_start': self.period_start.isoformat(),
            'period_end': self.period_end.isoformat(),
            'due_date': self.due_date.isoformat(),
            'scheduled_interest': str(self.scheduled_interest.amount),
            'ledger_interest': str(self.ledger_interest.amount),
            'difference': str(self.difference.amount),
            'cumulative_ledger_interest': str(self.cumulative_ledger_interest.amount)
        }


class InterestAccrualCalculator:
    """
    Computes accrued interest from a capital ledger.

    Holds no state beyond its settings; safe to share between threads.
    """

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or get_config()

    def accrue(self, ledger: CapitalLedger, as_of: date,
               from_date: Optional[date] = None) -> AccrualResult:
        """
        Accrue interest over ``[from_date, as_of)``.

        Opening principal and rate are taken from every event dated on or
        before ``from_date``; each later event inside the window starts a new
        segment. Zero-principal segments are kept so segment days always add
        up to the full window.
        """
        start = from_date or ledger.start_date
        if as_of <= start:
            return AccrualResult(from_date=start, to_date=start, currency=ledger.currency)

        boundaries = [start]
        boundaries.extend(event.date for event in ledger.events_between(start, as_of))
        boundaries.append(as_of)

        segments = []
        for seg_start, seg_end in zip(boundaries, boundaries[1:]):
            days = (seg_end - seg_start).days
            if days <= 0:
                continue
            principal = ledger.principal_on(seg_start)
            rate = ledger.rate_on(seg_start)
            segments.append(Segment(
                start_date=seg_start,
                end_date=seg_end,
                days=days,
                principal_at_start=principal,
                annual_rate=rate,
                is_penalty_rate=ledger.is_penalty_rate_on(seg_start),
                interest_amount=segment_interest(principal, rate, days, self.settings.basis)
            ))

        return AccrualResult(from_date=start, to_date=as_of,
                             currency=ledger.currency, segments=segments)

    def accrue_by_posting_period(self, ledger: CapitalLedger, as_of: date,
                                 frequency: PostingFrequency) -> List[AccrualResult]:
        """
        Ledger interest split into calendar posting windows up to ``as_of``.

        Windows end on the first day of each month, quarter or year; the
        first window starts at the loan start and the last one is cut at
        ``as_of``.
        """
        windows = []
        start = ledger.start_date
        while start < as_of:
            end = min(next_posting_date(start, frequency), as_of)
            windows.append(self.accrue(ledger, end, from_date=start))
            start = end
        return windows

    def interest_by_period(self, ledger: CapitalLedger, rows: Iterable[ScheduleRow],
                           as_of: date) -> List[PeriodInterest]:
        """Ledger interest over each row's period, for rows due on or before ``as_of``"""
        periods = []
        cumulative = Money.zero(ledger.currency)
        ordered = sorted(rows, key=lambda r: (r.due_date, r.installment_number))
        for row in ordered:
            if row.due_date > as_of:
                continue
            accrued = self.accrue(ledger, row.period_end, from_date=row.period_start).total_interest
            cumulative = cumulative + accrued
            periods.append(PeriodInterest(
                installment_number=row.installment_number,
                period_start=row.period_start,
                period_end=row.period_end,
                due_date=row.due_date,
                scheduled_interest=row.interest_due,
                ledger_interest=accrued,
                cumulative_ledger_interest=cumulative
            ))
        return periods
