"""
Capital Event Ledger Module

Turns loan terms plus the transaction history into a date-ordered list of
capital events: origination, further advances, principal repayments and
penalty rate changes. The ledger is the single source of truth for
"principal and rate in force on day D".
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from enum import Enum

from .currency import Money, Currency, money_sum
from .loans import LoanTerms, Transaction, active_transactions
from .logging_config import get_logger, log_action


logger = get_logger("loan_servicing.ledger")


class CapitalEventKind(Enum):
    """Why principal or rate changed"""
    ORIGINATION = "origination"
    FURTHER_ADVANCE = "further_advance"
    PRINCIPAL_REPAYMENT = "principal_repayment"
    RATE_CHANGE = "rate_change"


@dataclass(frozen=True)
class CapitalEvent:
    """All capital movements on one date, merged"""
    date: date
    principal_delta: Money
    kind: CapitalEventKind
    rate_after: Decimal
    kinds: Tuple[CapitalEventKind, ...] = ()
    transaction_ids: Tuple[str, ...] = ()
    advance_amount: Optional[Money] = None  # Gross further advances before netting

    def __post_init__(self):
        if not self.kinds:
            object.__setattr__(self, 'kinds', (self.kind,))
        if self.advance_amount is None:
            object.__setattr__(self, 'advance_amount', Money.zero(self.principal_delta.currency))

    def has_kind(self, kind: CapitalEventKind) -> bool:
        return kind in self.kinds

    def to_dict(self) -> Dict:
        return {
            'date': self.date.isoformat(),
            'principal_delta': str(self.principal_delta.amount),
            'advance_amount': str(self.advance_amount.amount),
            'kind': self.kind.value,
            'kinds': [k.value for k in self.kinds],
            'rate_after': str(self.rate_after),
            'transaction_ids': list(self.transaction_ids)
        }


@dataclass(frozen=True)
class CapitalLedger:
    """Date-ordered capital events for one loan"""
    events: Tuple[CapitalEvent, ...]
    currency: Currency
    start_date: date
    reordered: bool = False
    loan_id: Optional[str] = None

    @property
    def end_date(self) -> date:
        """Date of the last capital event"""
        return self.events[-1].date if self.events else self.start_date

    def principal_on(self, day: date) -> Money:
        """Principal outstanding at the close of ``day``, never below zero"""
        balance = Money.zero(self.currency)
        for event in self.events:
            if event.date > day:
                break
            balance = balance + event.principal_delta
            if balance.is_negative():
                balance = Money.zero(self.currency)
        return balance

    def rate_on(self, day: date) -> Decimal:
        """Annual rate in force on ``day``"""
        rate = self.events[0].rate_after if self.events else Decimal('0')
        for event in self.events:
            if event.date > day:
                break
            rate = event.rate_after
        return rate

    def is_penalty_rate_on(self, day: date) -> bool:
        return any(
            event.has_kind(CapitalEventKind.RATE_CHANGE)
            for event in self.events if event.date <= day
        )

    def events_between(self, start: date, end: date) -> List[CapitalEvent]:
        """Events strictly after ``start`` and strictly before ``end``"""
        return [event for event in self.events if start < event.date < end]

    def further_advances_to(self, day: date) -> Money:
        """Gross further advances dated on or before ``day``, unaffected by same-day repayments"""
        return money_sum(
            (event.advance_amount for event in self.events if event.date <= day),
            self.currency
        )

    def to_dict(self) -> Dict:
        return {
            'loan_id': self.loan_id,
            'start_date': self.start_date.isoformat(),
            'currency': self.currency.code,
            'reordered': self.reordered,
            'events': [event.to_dict() for event in self.events]
        }


@dataclass
class _PendingEvent:
    date: date
    delta: Money
    advance: Money
    kinds: List[CapitalEventKind] = field(default_factory=list)
    transaction_ids: List[str] = field(default_factory=list)


class CapitalLedgerBuilder:
    """
    Builds a CapitalLedger from loan terms and transactions.

    Pure: the same terms and transactions always produce the same ledger.
    """

    def build(self, terms: LoanTerms, transactions: Iterable[Transaction] = ()) -> CapitalLedger:
        currency = terms.currency
        active, reordered = active_transactions(transactions, loan_id=terms.loan_id)

        pending: Dict[date, _PendingEvent] = {}

        def add(day: date, delta: Money, kind: CapitalEventKind, tx_id: Optional[str] = None):
            event = pending.get(day)
            if event is None:
                event = _PendingEvent(date=day, delta=Money.zero(currency), advance=Money.zero(currency))
                pending[day] = event
            event.delta = event.delta + delta
            if kind is CapitalEventKind.FURTHER_ADVANCE:
                event.advance = event.advance + delta
            if kind not in event.kinds:
                event.kinds.append(kind)
            if tx_id:
                event.transaction_ids.append(tx_id)

        add(terms.start_date, terms.principal_amount, CapitalEventKind.ORIGINATION)

        for tx in active:
            if tx.is_disbursement:
                # Drawdown on or before start is already the origination principal
                if tx.date <= terms.start_date:
                    continue
                add(tx.date, tx.interest_bearing_amount, CapitalEventKind.FURTHER_ADVANCE, tx.id)
            elif tx.is_repayment and tx.principal_applied.is_positive():
                add(tx.date, -tx.principal_applied, CapitalEventKind.PRINCIPAL_REPAYMENT, tx.id)

        if terms.has_penalty_rate:
            penalty_date = max(terms.penalty_rate_from, terms.start_date)
            add(penalty_date, Money.zero(currency), CapitalEventKind.RATE_CHANGE)

        events = []
        for day in sorted(pending):
            item = pending[day]
            events.append(CapitalEvent(
                date=day,
                principal_delta=item.delta,
                kind=item.kinds[0],
                rate_after=terms.rate_on(day),
                kinds=tuple(item.kinds),
                transaction_ids=tuple(item.transaction_ids),
                advance_amount=item.advance
            ))

        log_action(
            logger, "debug", "Capital ledger built",
            loan_id=terms.loan_id, action="ledger_built",
            extra={"events": len(events), "reordered": reordered}
        )

        return CapitalLedger(
            events=tuple(events),
            currency=currency,
            start_date=terms.start_date,
            reordered=reordered,
            loan_id=terms.loan_id
        )
