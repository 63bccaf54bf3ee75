"""
Payment Waterfall Module

Allocates an incoming payment across the schedule: interest before principal
within a row, oldest row before newer rows, leftover funds carried as
overpayment credit. Allocation never mutates the rows it is given; callers
persist the returned updates.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional

from .config import EngineSettings, get_config
from .currency import Money, Currency, money_min, money_sum
from .errors import LoanEngineError, ManualSplitMismatchError
from .loans import ScheduleRow, ScheduleStatus, OverpaymentOption
from .logging_config import get_logger, log_action


logger = get_logger("loan_servicing.waterfall")


@dataclass(frozen=True)
class RowUpdate:
    """New paid totals for one schedule row"""
    installment_number: int
    due_date: date
    interest_paid: Money
    principal_paid: Money
    status: ScheduleStatus
    interest_applied: Money
    principal_applied: Money

    def to_dict(self) -> Dict:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'interest_paid': str(self.interest_paid.amount),
            'principal_paid': str(self.principal_paid.amount),
            'status': self.status.value,
            'interest_applied': str(self.interest_applied.amount),
            'principal_applied': str(self.principal_applied.amount)
        }


@dataclass
class WaterfallResult:
    """Outcome of one allocation, ready for the caller to persist"""
    payment_amount: Money
    previous_credit: Money
    overpayment_credit: Money
    principal_reduction: Money
    updates: List[RowUpdate] = field(default_factory=list)
    removed_installments: List[int] = field(default_factory=list)

    @property
    def currency(self) -> Currency:
        return self.payment_amount.currency

    @property
    def interest_applied(self) -> Money:
        return money_sum((u.interest_applied for u in self.updates), self.currency)

    @property
    def principal_applied(self) -> Money:
        return money_sum((u.principal_applied for u in self.updates), self.currency)

    def apply_to(self, rows: Iterable[ScheduleRow]) -> List[ScheduleRow]:
        """Rows with this result's updates applied and settled rows removed"""
        by_number = {u.installment_number: u for u in self.updates}
        removed = set(self.removed_installments)
        result = []
        for row in rows:
            if row.installment_number in removed:
                continue
            update = by_number.get(row.installment_number)
            if update is not None:
                row = replace(
                    row,
                    interest_paid=update.interest_paid,
                    principal_paid=update.principal_paid,
                    status=update.status
                )
            result.append(row)
        return result

    def to_dict(self) -> Dict:
        return {
            'payment_amount': str(self.payment_amount.amount),
            'previous_credit': str(self.previous_credit.amount),
            'interest_applied': str(self.interest_applied.amount),
            'principal_applied': str(self.principal_applied.amount),
            'principal_reduction': str(self.principal_reduction.amount),
            'overpayment_credit': str(self.overpayment_credit.amount),
            'removed_installments': list(self.removed_installments),
            'currency': self.currency.code,
            'updates': [u.to_dict() for u in self.updates]
        }


@dataclass
class _RowState:
    row: ScheduleRow
    interest_paid: Money
    principal_paid: Money
    interest_applied: Money
    principal_applied: Money
    touched: bool = False

    @property
    def interest_outstanding(self) -> Money:
        remaining = self.row.interest_due - self.interest_paid
        return remaining if remaining.is_positive() else Money.zero(remaining.currency)

    @property
    def principal_outstanding(self) -> Money:
        remaining = self.row.principal_due - self.principal_paid
        return remaining if remaining.is_positive() else Money.zero(remaining.currency)

    def pay_interest(self, amount: Money) -> None:
        if amount.is_positive():
            self.interest_paid = self.interest_paid + amount
            self.interest_applied = self.interest_applied + amount
            self.touched = True

    def pay_principal(self, amount: Money) -> None:
        if amount.is_positive():
            self.principal_paid = self.principal_paid + amount
            self.principal_applied = self.principal_applied + amount
            self.touched = True

    def status(self, tolerance: Decimal) -> ScheduleStatus:
        total_paid = self.interest_paid + self.principal_paid
        if total_paid.amount >= self.row.total_due.amount - tolerance:
            return ScheduleStatus.PAID
        return ScheduleStatus.PENDING


class PaymentWaterfall:
    """
    Payment allocator.

    Stateless; every call works on the rows and credit passed in.
    """

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or get_config()

    def allocate(
        self,
        payment: Money,
        rows: Iterable[ScheduleRow],
        existing_credit: Optional[Money] = None,
        overpayment_option: OverpaymentOption = OverpaymentOption.CREDIT,
        settlement: bool = False,
        loan_id: Optional[str] = None
    ) -> WaterfallResult:
        """
        Allocate a payment automatically.

        Funds (payment plus existing credit) go to each unpaid row in due
        date order, interest first then principal, until exhausted.
        """
        self._check_amount(payment, "payment", loan_id)
        previous_credit = existing_credit or Money.zero(payment.currency)
        self._check_amount(previous_credit, "existing_credit", loan_id)

        states = self._open_states(rows)
        funds = payment + previous_credit

        for state in states:
            if not funds.is_positive():
                break
            if state.row.is_paid:
                continue
            interest = money_min(funds, state.interest_outstanding)
            state.pay_interest(interest)
            funds = funds - interest

            principal = money_min(funds, state.principal_outstanding)
            state.pay_principal(principal)
            funds = funds - principal

        return self._finish(
            payment, previous_credit, states, funds,
            overpayment_option, settlement, loan_id, mode="automatic"
        )

    def allocate_manual(
        self,
        payment: Money,
        interest_amount: Money,
        principal_amount: Money,
        rows: Iterable[ScheduleRow],
        existing_credit: Optional[Money] = None,
        overpayment_option: OverpaymentOption = OverpaymentOption.CREDIT,
        settlement: bool = False,
        loan_id: Optional[str] = None
    ) -> WaterfallResult:
        """
        Allocate a payment with a caller-specified interest/principal split.

        The interest pool covers the oldest rows' outstanding interest, the
        principal pool (plus existing credit) the oldest rows' outstanding
        principal. Principal the pool cannot place is leftover; interest it
        cannot place always becomes overpayment credit.
        """
        self._check_amount(payment, "payment", loan_id)
        self._check_amount(interest_amount, "interest_amount", loan_id)
        self._check_amount(principal_amount, "principal_amount", loan_id)
        if interest_amount + principal_amount != payment:
            raise ManualSplitMismatchError(
                f"Interest {interest_amount.to_string()} plus principal "
                f"{principal_amount.to_string()} does not equal payment {payment.to_string()}",
                loan_id=loan_id, field="principal_amount"
            )
        previous_credit = existing_credit or Money.zero(payment.currency)
        self._check_amount(previous_credit, "existing_credit", loan_id)

        states = self._open_states(rows)
        interest_pool = interest_amount
        principal_pool = principal_amount + previous_credit

        for state in states:
            if not interest_pool.is_positive():
                break
            if state.row.is_paid:
                continue
            interest = money_min(interest_pool, state.interest_outstanding)
            state.pay_interest(interest)
            interest_pool = interest_pool - interest

        for state in states:
            if not principal_pool.is_positive():
                break
            if state.row.is_paid:
                continue
            principal = money_min(principal_pool, state.principal_outstanding)
            state.pay_principal(principal)
            principal_pool = principal_pool - principal

        # Unplaced interest is never forced onto principal
        return self._finish(
            payment, previous_credit, states, principal_pool,
            overpayment_option, settlement, loan_id, mode="manual",
            held_credit=interest_pool
        )

    def _check_amount(self, amount: Money, name: str, loan_id: Optional[str]) -> None:
        if amount.is_negative():
            raise LoanEngineError(f"{name} cannot be negative, got {amount.to_string()}",
                                  loan_id=loan_id, field=name)

    def _open_states(self, rows: Iterable[ScheduleRow]) -> List[_RowState]:
        ordered = sorted(rows, key=lambda r: (r.due_date, r.installment_number))
        states = []
        for row in ordered:
            zero = Money.zero(row.currency)
            states.append(_RowState(
                row=row,
                interest_paid=row.interest_paid,
                principal_paid=row.principal_paid,
                interest_applied=zero,
                principal_applied=zero
            ))
        return states

    def _finish(
        self,
        payment: Money,
        previous_credit: Money,
        states: List[_RowState],
        leftover: Money,
        overpayment_option: OverpaymentOption,
        settlement: bool,
        loan_id: Optional[str],
        mode: str,
        held_credit: Optional[Money] = None
    ) -> WaterfallResult:
        tolerance = self.settings.tolerance
        principal_reduction = Money.zero(payment.currency)

        if leftover.is_positive() and overpayment_option is OverpaymentOption.REDUCE_PRINCIPAL:
            for state in states:
                if state.status(tolerance) is ScheduleStatus.PENDING and not state.row.is_paid:
                    # Row invariant allows principal_paid above principal_due
                    state.pay_principal(leftover)
                    principal_reduction = leftover
                    leftover = Money.zero(payment.currency)
                    break

        if held_credit is not None:
            leftover = leftover + held_credit

        updates = []
        removed = []
        for state in states:
            status = state.row.status if state.row.is_paid else state.status(tolerance)
            if state.touched:
                updates.append(RowUpdate(
                    installment_number=state.row.installment_number,
                    due_date=state.row.due_date,
                    interest_paid=state.interest_paid,
                    principal_paid=state.principal_paid,
                    status=status,
                    interest_applied=state.interest_applied,
                    principal_applied=state.principal_applied
                ))
            if settlement and status is ScheduleStatus.PENDING:
                removed.append(state.row.installment_number)

        result = WaterfallResult(
            payment_amount=payment,
            previous_credit=previous_credit,
            overpayment_credit=leftover,
            principal_reduction=principal_reduction,
            updates=updates,
            removed_installments=removed
        )

        log_action(
            logger, "info", "Payment allocated",
            loan_id=loan_id, action="payment_allocated",
            extra={
                "mode": mode,
                "payment": str(payment.amount),
                "interest_applied": str(result.interest_applied.amount),
                "principal_applied": str(result.principal_applied.amount),
                "overpayment_credit": str(leftover.amount),
                "rows_updated": len(updates),
                "rows_removed": len(removed),
                "settlement": settlement
            }
        )
        return result
