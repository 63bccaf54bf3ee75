"""
Reconciliation Module

Cross-checks schedule interest (period-based) against ledger interest
(continuous day count) and reports where and by how much they disagree.
Drift is a diagnostic: it is logged and flagged, never raised.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .config import EngineSettings, get_config
from .currency import Money, money_sum
from .interest import InterestAccrualCalculator, AccrualResult, PeriodInterest
from .ledger import CapitalLedger
from .loans import ScheduleRow, PostingFrequency
from .logging_config import get_logger, log_action


logger = get_logger("loan_servicing.reconciliation")


@dataclass
class ReconciliationReport:
    """Schedule vs ledger interest as of one date"""
    as_of: date
    schedule_interest: Money
    ledger_interest: Money
    interest_paid: Money
    matches: bool
    last_boundary: Optional[date] = None
    periods: List[PeriodInterest] = field(default_factory=list)
    rows_included: int = 0

    @property
    def difference(self) -> Money:
        return abs(self.schedule_interest - self.ledger_interest)

    @property
    def boundary_gap_days(self) -> Optional[int]:
        """Days accrued by the ledger past the last included period end"""
        if self.last_boundary is None:
            return None
        return (self.as_of - self.last_boundary).days

    @property
    def schedule_outstanding(self) -> Money:
        return self.schedule_interest - self.interest_paid

    @property
    def ledger_outstanding(self) -> Money:
        return self.ledger_interest - self.interest_paid

    @property
    def has_drift(self) -> bool:
        return not self.matches

    def to_dict(self) -> Dict:
        return {
            'as_of': self.as_of.isoformat(),
            'schedule_interest': str(self.schedule_interest.amount),
            'ledger_interest': str(self.ledger_interest.amount),
            'difference': str(self.difference.amount),
            'matches': self.matches,
            'last_boundary': self.last_boundary.isoformat() if self.last_boundary else None,
            'boundary_gap_days': self.boundary_gap_days,
            'interest_paid': str(self.interest_paid.amount),
            'schedule_outstanding': str(self.schedule_outstanding.amount),
            'ledger_outstanding': str(self.ledger_outstanding.amount),
            'rows_included': self.rows_included,
            'currency': self.ledger_interest.currency.code,
            'periods': [p.to_dict() for p in self.periods]
        }


class ConsistencyChecker:
    """Compares the schedule's interest figures with the capital ledger's"""

    def __init__(self, settings: Optional[EngineSettings] = None,
                 calculator: Optional[InterestAccrualCalculator] = None):
        self.settings = settings or get_config()
        self.calculator = calculator or InterestAccrualCalculator(self.settings)

    def check(self, ledger: CapitalLedger, rows: Iterable[ScheduleRow],
              as_of: date) -> ReconciliationReport:
        rows = list(rows)
        included = sorted(
            (row for row in rows if row.due_date <= as_of),
            key=lambda r: (r.due_date, r.installment_number)
        )
        currency = ledger.currency

        schedule_interest = money_sum((row.interest_due for row in included), currency)
        interest_paid = money_sum((row.interest_paid for row in rows), currency)
        ledger_interest = self.calculator.accrue(ledger, as_of).total_interest
        periods = self.calculator.interest_by_period(ledger, included, as_of)

        difference = abs(schedule_interest - ledger_interest)
        matches = difference.amount <= self.settings.tolerance
        report = ReconciliationReport(
            as_of=as_of,
            schedule_interest=schedule_interest,
            ledger_interest=ledger_interest,
            interest_paid=interest_paid,
            matches=matches,
            last_boundary=included[-1].period_end if included else None,
            periods=periods,
            rows_included=len(included)
        )

        if not matches:
            log_action(
                logger, "warning", "Schedule interest drifted from ledger interest",
                loan_id=ledger.loan_id, action="reconciliation_drift",
                extra={
                    "as_of": as_of.isoformat(),
                    "schedule_interest": str(schedule_interest.amount),
                    "ledger_interest": str(ledger_interest.amount),
                    "difference": str(difference.amount),
                    "boundary_gap_days": report.boundary_gap_days
                }
            )
        return report

    def export_calculation_data(self, ledger: CapitalLedger, rows: Iterable[ScheduleRow],
                                as_of: date,
                                posting_frequency: PostingFrequency = PostingFrequency.MONTHLY) -> Dict:
        """Segment, posting, period and summary breakdown for statements and diagnostics"""
        rows = list(rows)
        accrual: AccrualResult = self.calculator.accrue(ledger, as_of)
        postings = self.calculator.accrue_by_posting_period(ledger, as_of, posting_frequency)
        report = self.check(ledger, rows, as_of)
        return {
            'loan_id': ledger.loan_id,
            'as_of': as_of.isoformat(),
            'ledger': ledger.to_dict(),
            'accrual': accrual.to_dict(),
            'posting_frequency': posting_frequency.value,
            'postings': [posting.to_dict() for posting in postings],
            'schedule': [row.to_dict() for row in rows],
            'reconciliation': report.to_dict()
        }
