"""
Loan Servicing Module

Ties the ledger builder, accrual calculator, schedule generator, payment
waterfall and consistency checker together into the operations callers run
against a loan: regenerate-and-replay, single payment allocation, accrued
interest, settlement quotes and reconciliation.

The engine keeps no per-loan state. Regenerate-and-replay is one logical
unit; callers must serialise it per loan while they persist the result.
"""

from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .config import EngineSettings, get_config
from .currency import Money, money_sum
from .interest import InterestAccrualCalculator, AccrualResult, Segment
from .ledger import CapitalLedgerBuilder
from .loans import (
    LoanTerms, ProductConfig, Transaction, ScheduleRow, OverpaymentOption,
    active_transactions
)
from .logging_config import get_logger, log_action
from .reconciliation import ConsistencyChecker, ReconciliationReport
from .schedule import ScheduleGenerator, ScheduleResult
from .waterfall import PaymentWaterfall, WaterfallResult


logger = get_logger("loan_servicing.servicing")


@dataclass
class ReplayResult:
    """Fresh schedule with every historical repayment re-applied"""
    schedule: ScheduleResult
    rows: List[ScheduleRow]
    allocations: List[WaterfallResult]
    overpayment_credit: Money
    principal_paid: Money
    interest_paid: Money

    def to_dict(self) -> Dict:
        summary = self.schedule.to_dict()
        summary.pop('rows')
        return {
            'summary': summary,
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'overpayment_credit': str(self.overpayment_credit.amount),
            'rows': [row.to_dict() for row in self.rows],
            'allocations': [a.to_dict() for a in self.allocations]
        }


@dataclass
class SettlementQuote:
    """Amount needed to close a loan on a given date"""
    settlement_date: date
    principal_remaining: Money
    interest_accrued: Money
    interest_paid: Money
    exit_fee: Money
    days_elapsed: int
    segments: List[Segment] = field(default_factory=list)

    @property
    def interest_remaining(self) -> Money:
        remaining = self.interest_accrued - self.interest_paid
        return remaining if remaining.is_positive() else Money.zero(remaining.currency)

    @property
    def total(self) -> Money:
        return self.principal_remaining + self.interest_remaining + self.exit_fee

    def to_dict(self) -> Dict:
        return {
            'settlement_date': self.settlement_date.isoformat(),
            'principal_remaining': str(self.principal_remaining.amount),
            'interest_accrued': str(self.interest_accrued.amount),
            'interest_paid': str(self.interest_paid.amount),
            'interest_remaining': str(self.interest_remaining.amount),
            'exit_fee': str(self.exit_fee.amount),
            'total': str(self.total.amount),
            'days_elapsed': self.days_elapsed,
            'currency': self.total.currency.code,
            'segments': [s.to_dict() for s in self.segments]
        }


class LoanServicingEngine:
    """Entry point for loan calculations"""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or get_config()
        self.ledger_builder = CapitalLedgerBuilder()
        self.calculator = InterestAccrualCalculator(self.settings)
        self.generator = ScheduleGenerator(self.settings, self.ledger_builder)
        self.waterfall = PaymentWaterfall(self.settings)
        self.checker = ConsistencyChecker(self.settings, self.calculator)

    def regenerate(
        self,
        terms: LoanTerms,
        product: ProductConfig,
        transactions: Iterable[Transaction] = (),
        end_date: Optional[date] = None,
        duration: Optional[int] = None,
        overpayment_option: OverpaymentOption = OverpaymentOption.CREDIT
    ) -> ReplayResult:
        """
        Regenerate the schedule and replay every repayment against it.

        Repayments are replayed oldest first through the automatic
        waterfall, with overpayment credit carried from one to the next.
        A settlement-flagged repayment removes the rows still Pending.
        """
        transactions = list(transactions)
        schedule = self.generator.generate(terms, product, transactions,
                                           end_date=end_date, duration=duration)

        active, _ = active_transactions(transactions, loan_id=terms.loan_id)
        repayments = [tx for tx in active if tx.is_repayment]

        currency = terms.currency
        rows = list(schedule.rows)
        credit = Money.zero(currency)
        allocations = []
        for tx in repayments:
            result = self.waterfall.allocate(
                tx.amount, rows,
                existing_credit=credit,
                overpayment_option=overpayment_option,
                settlement=tx.is_settlement,
                loan_id=terms.loan_id
            )
            rows = result.apply_to(rows)
            credit = result.overpayment_credit
            allocations.append(result)

        replay = ReplayResult(
            schedule=schedule,
            rows=rows,
            allocations=allocations,
            overpayment_credit=credit,
            principal_paid=money_sum((a.principal_applied for a in allocations), currency),
            interest_paid=money_sum((a.interest_applied for a in allocations), currency)
        )

        log_action(
            logger, "info", "Schedule regenerated and repayments replayed",
            loan_id=terms.loan_id, action="schedule_regenerated",
            extra={
                "rows": len(rows),
                "repayments_replayed": len(repayments),
                "overpayment_credit": str(credit.amount)
            }
        )
        return replay

    def record_payment(
        self,
        payment: Money,
        rows: Iterable[ScheduleRow],
        existing_credit: Optional[Money] = None,
        interest_amount: Optional[Money] = None,
        principal_amount: Optional[Money] = None,
        overpayment_option: OverpaymentOption = OverpaymentOption.CREDIT,
        settlement: bool = False,
        loan_id: Optional[str] = None
    ) -> WaterfallResult:
        """Allocate one payment; a manual split is used when either split amount is given"""
        if interest_amount is None and principal_amount is None:
            return self.waterfall.allocate(
                payment, rows,
                existing_credit=existing_credit,
                overpayment_option=overpayment_option,
                settlement=settlement,
                loan_id=loan_id
            )

        zero = Money.zero(payment.currency)
        return self.waterfall.allocate_manual(
            payment,
            interest_amount if interest_amount is not None else zero,
            principal_amount if principal_amount is not None else zero,
            rows,
            existing_credit=existing_credit,
            overpayment_option=overpayment_option,
            settlement=settlement,
            loan_id=loan_id
        )

    def accrued_interest(self, terms: LoanTerms, transactions: Iterable[Transaction],
                         as_of: date, from_date: Optional[date] = None) -> AccrualResult:
        ledger = self.ledger_builder.build(terms, transactions)
        return self.calculator.accrue(ledger, as_of, from_date=from_date)

    def settlement_quote(self, terms: LoanTerms, transactions: Iterable[Transaction],
                         settlement_date: date) -> SettlementQuote:
        """
        Figure needed to settle the loan on ``settlement_date``.

        Interest accrues through the settlement date inclusive, less
        interest already paid, floored at zero.
        """
        transactions = list(transactions)
        ledger = self.ledger_builder.build(terms, transactions)
        accrual = self.calculator.accrue(ledger, settlement_date + timedelta(days=1))

        active, _ = active_transactions(transactions, loan_id=terms.loan_id)
        interest_paid = money_sum(
            (tx.interest_applied for tx in active
             if tx.is_repayment and tx.date <= settlement_date),
            terms.currency
        )

        quote = SettlementQuote(
            settlement_date=settlement_date,
            principal_remaining=ledger.principal_on(settlement_date),
            interest_accrued=accrual.total_interest,
            interest_paid=interest_paid,
            exit_fee=terms.exit_fee,
            days_elapsed=accrual.days,
            segments=accrual.segments
        )

        log_action(
            logger, "info", "Settlement quote calculated",
            loan_id=terms.loan_id, action="settlement_quote",
            extra={"settlement_date": settlement_date.isoformat(), "total": str(quote.total.amount)}
        )
        return quote

    def interest_postings(self, terms: LoanTerms, product: ProductConfig,
                          transactions: Iterable[Transaction], as_of: date) -> List[AccrualResult]:
        """Accrued interest per posting window at the product's posting frequency"""
        ledger = self.ledger_builder.build(terms, transactions)
        return self.calculator.accrue_by_posting_period(ledger, as_of, product.posting_frequency)

    def reconcile(self, terms: LoanTerms, transactions: Iterable[Transaction],
                  rows: Iterable[ScheduleRow], as_of: date) -> ReconciliationReport:
        ledger = self.ledger_builder.build(terms, transactions)
        return self.checker.check(ledger, rows, as_of)

    def export_calculation_data(self, terms: LoanTerms, transactions: Iterable[Transaction],
                                rows: Iterable[ScheduleRow], as_of: date,
                                product: Optional[ProductConfig] = None) -> Dict:
        ledger = self.ledger_builder.build(terms, transactions)
        product = product or ProductConfig()
        return self.checker.export_calculation_data(
            ledger, rows, as_of, posting_frequency=product.posting_frequency
        )
