"""
Schedule Generator Module

Builds the amortization schedule for a loan from its terms, product
configuration and capital ledger. Regeneration is destructive and total:
the schedule is always rebuilt from scratch, and the same inputs always
produce the same rows.
"""

from decimal import Decimal, ROUND_CEILING
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import calendar

from .config import EngineSettings, get_config
from .currency import Money, money_sum
from .errors import InvalidTermsError
from .interest import raw_interest
from .ledger import CapitalLedger, CapitalLedgerBuilder
from .loans import (
    LoanTerms, ProductConfig, Transaction, ScheduleRow, ScheduleStatus,
    InterestType, PeriodUnit, InterestCalculationMethod, InterestAlignment,
    AmortizationConvention
)
from .logging_config import get_logger, log_action


logger = get_logger("loan_servicing.schedule")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def first_of_next_month(day: date) -> date:
    return add_months(day.replace(day=1), 1)


@dataclass(frozen=True)
class Period:
    """Half-open ``[start, end)`` span covered by one schedule row"""
    start: date
    end: date
    is_stub: bool = False

    @property
    def days(self) -> int:
        return (self.end - self.start).days


@dataclass
class ScheduleResult:
    """Generated rows plus the summary figures callers display"""
    rows: List[ScheduleRow]
    ledger: CapitalLedger
    duration: int
    outstanding_principal: Money
    exit_fee: Money
    is_settled: bool = False
    auto_extended: bool = False

    @property
    def total_interest(self) -> Money:
        return money_sum((row.interest_due for row in self.rows), self.outstanding_principal.currency)

    @property
    def total_principal(self) -> Money:
        return money_sum((row.principal_due for row in self.rows), self.outstanding_principal.currency)

    @property
    def total_repayable(self) -> Money:
        return self.total_interest + self.outstanding_principal + self.exit_fee

    @property
    def end_date(self) -> Optional[date]:
        """Due date of the last row"""
        return self.rows[-1].due_date if self.rows else None

    def to_dict(self) -> Dict:
        return {
            'duration': self.duration,
            'is_settled': self.is_settled,
            'auto_extended': self.auto_extended,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'total_interest': str(self.total_interest.amount),
            'total_principal': str(self.total_principal.amount),
            'outstanding_principal': str(self.outstanding_principal.amount),
            'exit_fee': str(self.exit_fee.amount),
            'total_repayable': str(self.total_repayable.amount),
            'currency': self.outstanding_principal.currency.code,
            'rows': [row.to_dict() for row in self.rows]
        }


class ScheduleGenerator:
    """
    Generates amortization schedules.

    Stateless between calls: every figure is derived from the terms,
    product configuration and transactions passed in.
    """

    def __init__(self, settings: Optional[EngineSettings] = None,
                 ledger_builder: Optional[CapitalLedgerBuilder] = None):
        self.settings = settings or get_config()
        self.ledger_builder = ledger_builder or CapitalLedgerBuilder()

    def generate(
        self,
        terms: LoanTerms,
        product: ProductConfig,
        transactions: Iterable[Transaction] = (),
        end_date: Optional[date] = None,
        duration: Optional[int] = None
    ) -> ScheduleResult:
        """
        Generate the full schedule for a loan.

        Args:
            terms: Loan terms snapshot
            product: Product calculation settings
            transactions: Transaction history (deleted ones are ignored)
            end_date: Date the schedule must reach; also the settlement
                date when the loan is fully repaid
            duration: Explicit number of periods, overriding the loan's

        Returns:
            ScheduleResult with Pending rows and summary totals
        """
        if duration is not None and duration < 1:
            raise InvalidTermsError(f"Duration must be at least one period, got {duration}",
                                    loan_id=terms.loan_id, field="duration")

        ledger = self.ledger_builder.build(terms, transactions)
        outstanding = ledger.principal_on(ledger.end_date)

        periods_count, is_settled, auto_extended = self._resolve_duration(
            terms, product, outstanding, end_date, duration
        )
        if product.amortization is AmortizationConvention.ROLLED_UP:
            # The balloon always falls at the end of the loan's own term
            build_count = max(periods_count, terms.duration or self.settings.default_duration)
            self._check_period_limit(terms, build_count)
            periods = self.build_periods(terms, product, build_count)
            rows = self._build_rolled_up_rows(terms, product, ledger, periods)
        else:
            periods = self.build_periods(terms, product, periods_count)
            rows = self._build_rows(terms, product, ledger, periods)

        if is_settled:
            rows = [row for row in rows if row.due_date <= end_date]

        log_action(
            logger, "info", "Schedule generated",
            loan_id=terms.loan_id, action="schedule_generated",
            extra={
                "periods": periods_count,
                "rows": len(rows),
                "is_settled": is_settled,
                "auto_extended": auto_extended
            }
        )

        return ScheduleResult(
            rows=rows,
            ledger=ledger,
            duration=periods_count,
            outstanding_principal=outstanding,
            exit_fee=terms.exit_fee,
            is_settled=is_settled,
            auto_extended=auto_extended
        )

    def periods_to_cover(self, start: date, end: date, unit: PeriodUnit) -> int:
        """Number of whole periods needed to reach ``end`` from ``start``, at least one"""
        days = Decimal(max(0, (end - start).days))
        if unit is PeriodUnit.WEEKLY:
            per_period = Decimal('7')
        else:
            per_period = Decimal(self.settings.average_days_per_month)
        periods = int((days / per_period).to_integral_value(rounding=ROUND_CEILING))
        return max(1, periods)

    def _resolve_duration(
        self,
        terms: LoanTerms,
        product: ProductConfig,
        outstanding: Money,
        end_date: Optional[date],
        duration: Optional[int]
    ) -> Tuple[int, bool, bool]:
        """Returns (periods, is_settled, auto_extended)"""
        base_duration = duration if duration is not None else (terms.duration or self.settings.default_duration)
        is_settled = (
            end_date is not None
            and outstanding.amount <= self.settings.tolerance
            and not terms.auto_extend
        )
        auto_extended = False

        if is_settled:
            periods = self.periods_to_cover(terms.start_date, end_date, terms.period_unit)
        elif end_date is not None and terms.auto_extend:
            periods = self.periods_to_cover(terms.start_date, end_date, terms.period_unit)
            self._check_period_limit(terms, periods)
            # Always leave a due date after the end date
            last_period = self.build_periods(terms, product, periods)[-1]
            if self._due_date(last_period, product) <= end_date:
                periods += 1
            auto_extended = periods > terms.duration
        else:
            periods = base_duration

        self._check_period_limit(terms, periods)
        return periods, is_settled, auto_extended

    def _check_period_limit(self, terms: LoanTerms, periods: int) -> None:
        if periods > self.settings.max_schedule_periods:
            raise InvalidTermsError(
                f"Schedule would need {periods} periods, limit is {self.settings.max_schedule_periods}",
                loan_id=terms.loan_id, field="duration"
            )

    def build_periods(self, terms: LoanTerms, product: ProductConfig, count: int) -> List[Period]:
        """Period boundaries for ``count`` full periods (plus any stub)"""
        start = terms.start_date
        periods = []

        if terms.period_unit is PeriodUnit.WEEKLY:
            for i in range(count):
                periods.append(Period(start + timedelta(days=7 * i), start + timedelta(days=7 * (i + 1))))
            return periods

        if product.interest_alignment is InterestAlignment.MONTHLY_FIRST:
            anchor = start
            if start.day != 1:
                anchor = first_of_next_month(start)
                periods.append(Period(start, anchor, is_stub=True))
            for i in range(count):
                periods.append(Period(add_months(anchor, i), add_months(anchor, i + 1)))
            return periods

        # Always measured from the start date so month-end clamping never drifts
        for i in range(count):
            periods.append(Period(add_months(start, i), add_months(start, i + 1)))
        return periods

    def _due_date(self, period: Period, product: ProductConfig) -> date:
        return period.start if product.interest_paid_in_advance else period.end

    def _build_rows(
        self,
        terms: LoanTerms,
        product: ProductConfig,
        ledger: CapitalLedger,
        periods: List[Period]
    ) -> List[ScheduleRow]:
        currency = terms.currency
        zero = Money.zero(currency)
        amortizing = [p for p in periods if not p.is_stub]
        total_amortizing = len(amortizing)

        rows = []
        running = ledger.principal_on(periods[0].start) if periods else zero
        amortizing_index = 0

        for number, period in enumerate(periods, start=1):
            ledger_opening = ledger.principal_on(period.start)
            opening = running if running <= ledger_opening else ledger_opening
            rate = ledger.rate_on(period.start)
            advances = self._advances_in(ledger, period)

            segments = self._principal_segments(terms, ledger, period, opening)
            interest = self._period_interest(terms, product, period, segments, rate)

            if not period.is_stub:
                amortizing_index += 1
            is_final = not period.is_stub and amortizing_index == total_amortizing
            remaining = total_amortizing - amortizing_index + 1

            if is_final:
                principal_due = opening + advances
            elif period.is_stub:
                principal_due = zero
            else:
                principal_due = self._scheduled_principal(
                    terms, product, opening, interest, rate, remaining
                )
            if principal_due.is_negative():
                principal_due = zero

            balance = opening + advances - principal_due
            if balance.is_negative():
                balance = zero

            rows.append(ScheduleRow(
                installment_number=number,
                due_date=self._due_date(period, product),
                period_start=period.start,
                period_end=period.end,
                principal_due=principal_due,
                interest_due=interest,
                principal_paid=zero,
                interest_paid=zero,
                status=ScheduleStatus.PENDING,
                calculation_days=period.days,
                principal_at_start=opening,
                annual_rate=rate,
                balance=balance,
                is_extension_period=amortizing_index > terms.duration
            ))
            running = balance

        return rows

    def _build_rolled_up_rows(
        self,
        terms: LoanTerms,
        product: ProductConfig,
        ledger: CapitalLedger,
        periods: List[Period]
    ) -> List[ScheduleRow]:
        """
        One balloon row due at term end, then interest-only extension rows.

        The balloon carries the principal outstanding at term end and all
        interest accrued over the term, summed unrounded across the term's
        periods and rounded once. Rolled-up interest does not itself bear
        interest. Periods past the term charge interest only, on the
        outstanding principal.
        """
        currency = terms.currency
        zero = Money.zero(currency)

        term_length = terms.duration or self.settings.default_duration
        term, extension = [], []
        term_count = 0
        for period in periods:
            if period.is_stub or term_count < term_length:
                term.append(period)
                term_count += 0 if period.is_stub else 1
            else:
                extension.append(period)

        term_interest = Decimal('0')
        for period in term:
            opening = ledger.principal_on(period.start)
            segments = self._principal_segments(terms, ledger, period, opening)
            term_interest += self._raw_period_interest(
                terms, product, period, segments, ledger.rate_on(period.start)
            )

        term_start, term_end = term[0].start, term[-1].end
        balloon = ledger.principal_on(term[-1].start) + self._advances_in(ledger, term[-1])
        rows = [ScheduleRow(
            installment_number=1,
            due_date=term_end,
            period_start=term_start,
            period_end=term_end,
            principal_due=balloon,
            interest_due=Money(term_interest, currency),
            principal_paid=zero,
            interest_paid=zero,
            status=ScheduleStatus.PENDING,
            calculation_days=(term_end - term_start).days,
            principal_at_start=ledger.principal_on(term_start),
            annual_rate=ledger.rate_on(term_start),
            balance=zero,
            is_extension_period=False
        )]

        for number, period in enumerate(extension, start=2):
            opening = ledger.principal_on(period.start)
            rate = ledger.rate_on(period.start)
            segments = self._principal_segments(terms, ledger, period, opening)
            rows.append(ScheduleRow(
                installment_number=number,
                due_date=self._due_date(period, product),
                period_start=period.start,
                period_end=period.end,
                principal_due=zero,
                interest_due=self._period_interest(terms, product, period, segments, rate),
                principal_paid=zero,
                interest_paid=zero,
                status=ScheduleStatus.PENDING,
                calculation_days=period.days,
                principal_at_start=opening,
                annual_rate=rate,
                balance=opening + self._advances_in(ledger, period),
                is_extension_period=True
            ))

        return rows

    def _advances_in(self, ledger: CapitalLedger, period: Period) -> Money:
        """Further advances landing in ``(start, end]``, available from the next period"""
        return money_sum(
            (event.advance_amount for event in ledger.events
             if period.start < event.date <= period.end),
            ledger.currency
        )

    def _principal_segments(
        self,
        terms: LoanTerms,
        ledger: CapitalLedger,
        period: Period,
        opening: Money
    ) -> List[Tuple[Money, int]]:
        """(principal, days) pieces of the period, split at capital events"""
        boundaries = [period.start]
        boundaries.extend(event.date for event in ledger.events_between(period.start, period.end))
        boundaries.append(period.end)

        ledger_opening = ledger.principal_on(period.start)
        pieces = []
        for seg_start, seg_end in zip(boundaries, boundaries[1:]):
            days = (seg_end - seg_start).days
            if days <= 0:
                continue
            if terms.interest_type is InterestType.SIMPLE:
                principal = terms.principal_amount + ledger.further_advances_to(seg_start)
            else:
                principal = opening + (ledger.principal_on(seg_start) - ledger_opening)
                if principal.is_negative():
                    principal = Money.zero(terms.currency)
            pieces.append((principal, days))
        return pieces

    def _period_interest(
        self,
        terms: LoanTerms,
        product: ProductConfig,
        period: Period,
        segments: List[Tuple[Money, int]],
        rate: Decimal
    ) -> Money:
        return Money(self._raw_period_interest(terms, product, period, segments, rate), terms.currency)

    def _raw_period_interest(
        self,
        terms: LoanTerms,
        product: ProductConfig,
        period: Period,
        segments: List[Tuple[Money, int]],
        rate: Decimal
    ) -> Decimal:
        """Unrounded interest for one period"""
        use_monthly_fixed = (
            product.interest_calculation_method is InterestCalculationMethod.MONTHLY_FIXED
            and terms.period_unit is PeriodUnit.MONTHLY
            and not period.is_stub
        )

        if use_monthly_fixed:
            total_days = sum(days for _, days in segments)
            if total_days == 0:
                return Decimal('0')
            weighted = sum((principal.amount * days for principal, days in segments), Decimal('0'))
            average = weighted / Decimal(total_days)
            return average * rate / Decimal('100') / Decimal('12')

        return sum(
            (raw_interest(principal.amount, rate, days, self.settings.basis) for principal, days in segments),
            Decimal('0')
        )

    def _scheduled_principal(
        self,
        terms: LoanTerms,
        product: ProductConfig,
        opening: Money,
        interest: Money,
        rate: Decimal,
        remaining: int
    ) -> Money:
        """Principal due for a non-final, non-stub row"""
        if product.amortization is AmortizationConvention.INTEREST_ONLY:
            return Money.zero(terms.currency)

        if terms.interest_type is InterestType.SIMPLE:
            return opening / Decimal(remaining)

        periodic_rate = rate / Decimal('100') / Decimal(terms.periods_per_year)
        if periodic_rate == 0:
            return opening / Decimal(remaining)

        # Level annuity payment over the remaining periods
        factor = (Decimal('1') + periodic_rate) ** (-remaining)
        payment = opening.amount * periodic_rate / (Decimal('1') - factor)
        principal = Money(payment, terms.currency) - interest
        if principal > opening:
            return opening
        return principal
