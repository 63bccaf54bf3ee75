"""
Loan Data Model Module

Loan terms, product configuration, transactions and schedule rows: the
immutable inputs and outputs every engine component works from. Terms are
validated on construction so no segment or schedule is ever computed from
impossible figures.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from enum import Enum

from .currency import Money, Currency, ROUNDING_TOLERANCE
from .errors import InvalidTermsError
from .logging_config import get_logger, log_action


logger = get_logger("loan_servicing.loans")


class InterestType(Enum):
    """Basis interest is charged on"""
    SIMPLE = "simple"          # Origination principal (plus advances), repayments ignored
    REDUCING = "reducing"      # Current outstanding principal


class PeriodUnit(Enum):
    """Length of one schedule period"""
    MONTHLY = "monthly"        # 12 periods per year
    WEEKLY = "weekly"          # 52 periods per year

    @property
    def periods_per_year(self) -> int:
        return 12 if self is PeriodUnit.MONTHLY else 52


class InterestCalculationMethod(Enum):
    """How a period's expected interest is computed"""
    DAILY = "daily"                  # Principal x rate x days / 365
    MONTHLY_FIXED = "monthly_fixed"  # Principal x rate / 12 per calendar month


class InterestAlignment(Enum):
    """Where monthly period boundaries fall"""
    PERIOD_BASED = "period_based"    # Same day each month as the start date
    MONTHLY_FIRST = "monthly_first"  # 1st of each month, stub first period


class AmortizationConvention(Enum):
    """How principal falls due across the schedule"""
    AMORTIZING = "amortizing"        # Principal repaid across periods
    INTEREST_ONLY = "interest_only"  # Principal repaid in the final period
    ROLLED_UP = "rolled_up"          # Term interest and principal as one balloon, extensions interest-only


class PostingFrequency(Enum):
    """How often accrued interest is posted"""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "annually": 12}[self.value]


class TransactionType(Enum):
    """Capital movements the engine understands"""
    DISBURSEMENT = "disbursement"
    REPAYMENT = "repayment"


class ScheduleStatus(Enum):
    """Schedule row lifecycle"""
    PENDING = "pending"
    PAID = "paid"


class OverpaymentOption(Enum):
    """What happens to funds left after every row is covered"""
    CREDIT = "credit"                      # Carry forward as overpayment credit
    REDUCE_PRINCIPAL = "reduce_principal"  # Force against next pending row's principal


def _reject(message: str, loan_id: Optional[str], field_name: str) -> None:
    log_action(
        logger, "warning", message,
        loan_id=loan_id, action="terms_rejected",
        extra={"field": field_name}
    )
    raise InvalidTermsError(message, loan_id=loan_id, field=field_name)


@dataclass(frozen=True)
class LoanTerms:
    """Loan terms snapshot, replaced wholesale when the loan is edited"""
    principal_amount: Money
    annual_rate: Decimal                   # Percent, e.g. 12 for 12% p.a.
    interest_type: InterestType
    duration: int                          # Number of periods
    period_unit: PeriodUnit
    start_date: date
    override_rate: Optional[Decimal] = None
    penalty_rate: Optional[Decimal] = None
    penalty_rate_from: Optional[date] = None
    arrangement_fee: Optional[Money] = None
    exit_fee: Optional[Money] = None
    auto_extend: bool = False
    loan_id: Optional[str] = None

    def __post_init__(self):
        currency = self.principal_amount.currency
        for name in ('annual_rate', 'override_rate', 'penalty_rate'):
            value = getattr(self, name)
            if value is not None and not isinstance(value, Decimal):
                object.__setattr__(self, name, Decimal(str(value)))
        for name in ('arrangement_fee', 'exit_fee'):
            if getattr(self, name) is None:
                object.__setattr__(self, name, Money.zero(currency))
        self.validate()

    def validate(self) -> None:
        """Reject terms no calculation can be run against"""
        currency = self.principal_amount.currency

        if not self.principal_amount.is_positive():
            _reject(f"Principal must be positive, got {self.principal_amount.to_string()}",
                    self.loan_id, "principal_amount")
        if self.annual_rate < Decimal('0'):
            _reject(f"Interest rate cannot be negative, got {self.annual_rate}",
                    self.loan_id, "annual_rate")
        if self.override_rate is not None and self.override_rate < Decimal('0'):
            _reject(f"Override rate cannot be negative, got {self.override_rate}",
                    self.loan_id, "override_rate")
        if not isinstance(self.duration, int) or self.duration < 1:
            _reject(f"Duration must be at least one period, got {self.duration}",
                    self.loan_id, "duration")
        if self.penalty_rate is not None:
            if self.penalty_rate < Decimal('0'):
                _reject(f"Penalty rate cannot be negative, got {self.penalty_rate}",
                        self.loan_id, "penalty_rate")
            if self.penalty_rate_from is None:
                _reject("Penalty rate requires an effective date",
                        self.loan_id, "penalty_rate_from")
        for name in ('arrangement_fee', 'exit_fee'):
            fee = getattr(self, name)
            if fee.currency != currency:
                _reject(f"{name} currency must match principal currency", self.loan_id, name)
            if fee.is_negative():
                _reject(f"{name} cannot be negative", self.loan_id, name)

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def effective_rate(self) -> Decimal:
        """Override rate if one is set, otherwise the contractual rate"""
        if self.override_rate is not None:
            return self.override_rate
        return self.annual_rate

    @property
    def periods_per_year(self) -> int:
        return self.period_unit.periods_per_year

    @property
    def has_penalty_rate(self) -> bool:
        return self.penalty_rate is not None and self.penalty_rate_from is not None

    def rate_on(self, day: date) -> Decimal:
        """Annual rate in force on ``day``"""
        if self.has_penalty_rate and day >= self.penalty_rate_from:
            return self.penalty_rate
        return self.effective_rate

    def is_penalty_rate(self, day: date) -> bool:
        return self.has_penalty_rate and day >= self.penalty_rate_from


@dataclass(frozen=True)
class ProductConfig:
    """Product-level calculation settings, read-only to the engine"""
    interest_calculation_method: InterestCalculationMethod = InterestCalculationMethod.DAILY
    interest_alignment: InterestAlignment = InterestAlignment.PERIOD_BASED
    interest_paid_in_advance: bool = False
    posting_frequency: PostingFrequency = PostingFrequency.MONTHLY
    amortization: AmortizationConvention = AmortizationConvention.AMORTIZING


@dataclass(frozen=True)
class Transaction:
    """Externally owned capital movement"""
    date: date
    type: TransactionType
    amount: Money
    principal_applied: Optional[Money] = None
    interest_applied: Optional[Money] = None
    fees_applied: Optional[Money] = None
    gross_amount: Optional[Money] = None   # Disbursements: amount before deducted fees
    is_deleted: bool = False
    is_settlement: bool = False
    id: Optional[str] = None

    def __post_init__(self):
        zero = Money.zero(self.amount.currency)
        for name in ('principal_applied', 'interest_applied', 'fees_applied'):
            if getattr(self, name) is None:
                object.__setattr__(self, name, zero)

    @property
    def interest_bearing_amount(self) -> Money:
        """Gross advance bears interest; deducted fees only affect cash flow"""
        if self.gross_amount is not None:
            return self.gross_amount
        return self.amount

    @property
    def is_repayment(self) -> bool:
        return self.type is TransactionType.REPAYMENT

    @property
    def is_disbursement(self) -> bool:
        return self.type is TransactionType.DISBURSEMENT


@dataclass(frozen=True)
class ScheduleRow:
    """One amortization period"""
    installment_number: int
    due_date: date
    period_start: date
    period_end: date                       # Exclusive
    principal_due: Money
    interest_due: Money
    principal_paid: Money
    interest_paid: Money
    status: ScheduleStatus = ScheduleStatus.PENDING
    calculation_days: int = 0
    principal_at_start: Optional[Money] = None
    annual_rate: Decimal = Decimal('0')
    balance: Optional[Money] = None        # Expected principal after this period
    is_extension_period: bool = False

    @property
    def currency(self) -> Currency:
        return self.interest_due.currency

    @property
    def total_due(self) -> Money:
        return self.principal_due + self.interest_due

    @property
    def total_paid(self) -> Money:
        return self.principal_paid + self.interest_paid

    @property
    def interest_outstanding(self) -> Money:
        remaining = self.interest_due - self.interest_paid
        return remaining if remaining.is_positive() else Money.zero(self.currency)

    @property
    def principal_outstanding(self) -> Money:
        remaining = self.principal_due - self.principal_paid
        return remaining if remaining.is_positive() else Money.zero(self.currency)

    @property
    def is_paid(self) -> bool:
        return self.status is ScheduleStatus.PAID

    def is_covered(self, tolerance: Decimal = ROUNDING_TOLERANCE) -> bool:
        """Paid amounts cover what is due, within rounding tolerance"""
        return self.total_paid.amount >= self.total_due.amount - tolerance

    def to_dict(self) -> Dict:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'period_start': self.period_start.isoformat(),
            'period_end': self.period_end.isoformat(),
            'principal_due': str(self.principal_due.amount),
            'interest_due': str(self.interest_due.amount),
            'total_due': str(self.total_due.amount),
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'status': self.status.value,
            'calculation_days': self.calculation_days,
            'principal_at_start': str(self.principal_at_start.amount) if self.principal_at_start else None,
            'annual_rate': str(self.annual_rate),
            'balance': str(self.balance.amount) if self.balance else None,
            'is_extension_period': self.is_extension_period,
            'currency': self.currency.code
        }


def active_transactions(
    transactions: Iterable[Transaction],
    loan_id: Optional[str] = None
) -> Tuple[List[Transaction], bool]:
    """
    Non-deleted transactions in date order.

    Returns the sorted list and whether the caller supplied them out of
    order. Out-of-order input is sorted rather than rejected, but logged
    since it points at an upstream ordering bug.
    """
    active = [tx for tx in transactions if not tx.is_deleted]
    reordered = any(active[i].date > active[i + 1].date for i in range(len(active) - 1))
    if reordered:
        log_action(
            logger, "warning", "Transactions supplied out of date order, sorting",
            loan_id=loan_id, action="unordered_input",
            extra={"transaction_count": len(active)}
        )
        # sorted() is stable, so same-day transactions keep caller order
        active = sorted(active, key=lambda tx: tx.date)
    return active, reordered
