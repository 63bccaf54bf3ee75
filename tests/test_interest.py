"""
Test suite for interest accrual

Tests Actual/365 segment accrual over the capital ledger, including further
advances, repayments and penalty rate changes mid-period.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from loan_servicing.currency import Money, Currency
from loan_servicing.interest import (
    InterestAccrualCalculator, segment_interest, raw_interest, next_posting_date
)
from loan_servicing.ledger import CapitalLedgerBuilder
from loan_servicing.loans import LoanTerms, Transaction, InterestType, PeriodUnit, TransactionType, PostingFrequency


def gbp(amount: str) -> Money:
    return Money(Decimal(amount), Currency.GBP)


def make_terms(start: date = date(2024, 1, 1), **overrides) -> LoanTerms:
    fields = dict(
        principal_amount=gbp('10000.00'),
        annual_rate=Decimal('12'),
        interest_type=InterestType.REDUCING,
        duration=12,
        period_unit=PeriodUnit.MONTHLY,
        start_date=start
    )
    fields.update(overrides)
    return LoanTerms(**fields)


@pytest.fixture
def calculator():
    return InterestAccrualCalculator()


@pytest.fixture
def builder():
    return CapitalLedgerBuilder()


class TestSegmentInterest:
    """Test the per-segment formula"""

    def test_formula(self):
        """Test principal x rate x days / 365, rounded once"""
        assert segment_interest(gbp('10000'), Decimal('12'), 30) == gbp('98.63')
        assert raw_interest(Decimal('10000'), Decimal('12'), 365) == Decimal('1200')

    def test_zero_principal(self):
        assert segment_interest(Money.zero(Currency.GBP), Decimal('12'), 30).is_zero()


class TestAccrual:
    """Test ledger accrual"""

    def test_thirty_day_example(self, calculator, builder):
        """Test £10,000 at 12% for 30 days accrues £98.63"""
        ledger = builder.build(make_terms(start=date(2024, 4, 1)), [])
        result = calculator.accrue(ledger, date(2024, 5, 1))

        assert result.days == 30
        assert len(result.segments) == 1
        assert result.total_interest == gbp('98.63')

    def test_further_advance_splits_segment(self, calculator, builder):
        """Test an advance mid-window starts a new segment"""
        advance = Transaction(date=date(2024, 1, 11), type=TransactionType.DISBURSEMENT, amount=gbp('5000.00'))
        ledger = builder.build(make_terms(), [advance])

        result = calculator.accrue(ledger, date(2024, 1, 21))

        assert [s.days for s in result.segments] == [10, 10]
        assert result.segments[0].principal_at_start == gbp('10000.00')
        assert result.segments[1].principal_at_start == gbp('15000.00')
        assert result.segments[0].interest_amount == gbp('32.88')
        assert result.segments[1].interest_amount == gbp('49.32')
        assert result.total_interest == gbp('82.20')

        # Per-segment rounding stays within tolerance of the unrounded formula
        unrounded = raw_interest(Decimal('10000'), Decimal('12'), 10) + raw_interest(Decimal('15000'), Decimal('12'), 10)
        assert abs(result.total_interest.amount - unrounded) <= Decimal('0.01')

    def test_penalty_rate_splits_segment(self, calculator, builder):
        """Test a rate change starts a new segment at the change date"""
        terms = make_terms(penalty_rate=Decimal('24'), penalty_rate_from=date(2024, 1, 11))
        ledger = builder.build(terms, [])

        result = calculator.accrue(ledger, date(2024, 1, 21))

        assert len(result.segments) == 2
        first, second = result.segments
        assert first.annual_rate == Decimal('12')
        assert not first.is_penalty_rate
        assert second.annual_rate == Decimal('24')
        assert second.is_penalty_rate
        assert second.start_date == date(2024, 1, 11)
        assert first.interest_amount == gbp('32.88')
        assert second.interest_amount == gbp('65.75')

    def test_zero_principal_segments_kept(self, calculator, builder):
        """Test fully repaid time still counts toward segment days"""
        payoff = Transaction(
            date=date(2024, 1, 11), type=TransactionType.REPAYMENT, amount=gbp('10032.88'),
            principal_applied=gbp('10000.00'), interest_applied=gbp('32.88')
        )
        ledger = builder.build(make_terms(), [payoff])

        result = calculator.accrue(ledger, date(2024, 1, 21))

        assert result.days == 20
        assert result.segments[1].principal_at_start.is_zero()
        assert result.segments[1].interest_amount.is_zero()
        assert result.total_interest == gbp('32.88')

    def test_segments_cover_window(self, calculator, builder):
        """Test segment days always sum to the full window"""
        transactions = [
            Transaction(date=date(2024, 1, 20), type=TransactionType.DISBURSEMENT, amount=gbp('2500.00')),
            Transaction(date=date(2024, 2, 1), type=TransactionType.REPAYMENT, amount=gbp('1500.00'),
                        principal_applied=gbp('1400.00'), interest_applied=gbp('100.00')),
            Transaction(date=date(2024, 3, 17), type=TransactionType.REPAYMENT, amount=gbp('800.00'),
                        principal_applied=gbp('700.00'), interest_applied=gbp('100.00')),
        ]
        ledger = builder.build(make_terms(), transactions)

        for as_of in (date(2024, 1, 2), date(2024, 2, 1), date(2024, 3, 17), date(2024, 6, 30)):
            result = calculator.accrue(ledger, as_of)
            assert result.days == (as_of - date(2024, 1, 1)).days
            for before, after in zip(result.segments, result.segments[1:]):
                assert before.end_date == after.start_date

    def test_accrual_is_monotonic(self, calculator, builder):
        """Test accrued interest never decreases as the as-of date moves on"""
        repay = Transaction(date=date(2024, 2, 15), type=TransactionType.REPAYMENT, amount=gbp('3000.00'),
                            principal_applied=gbp('3000.00'))
        ledger = builder.build(make_terms(), [repay])

        previous = Money.zero(Currency.GBP)
        day = date(2024, 1, 1)
        while day <= date(2024, 4, 1):
            total = calculator.accrue(ledger, day).total_interest
            assert total >= previous
            previous = total
            day += timedelta(days=7)

    def test_as_of_not_after_start_is_empty(self, calculator, builder):
        """Test an empty window accrues nothing"""
        ledger = builder.build(make_terms(), [])

        assert calculator.accrue(ledger, date(2024, 1, 1)).segments == []
        assert calculator.accrue(ledger, date(2023, 12, 1)).total_interest.is_zero()

    def test_from_date_includes_events_on_that_day(self, calculator, builder):
        """Test opening principal reflects events dated on the window start"""
        advance = Transaction(date=date(2024, 1, 11), type=TransactionType.DISBURSEMENT, amount=gbp('5000.00'))
        ledger = builder.build(make_terms(), [advance])

        result = calculator.accrue(ledger, date(2024, 1, 21), from_date=date(2024, 1, 11))

        assert len(result.segments) == 1
        assert result.segments[0].principal_at_start == gbp('15000.00')
        assert result.total_interest == gbp('49.32')

    def test_to_dict(self, calculator, builder):
        ledger = builder.build(make_terms(start=date(2024, 4, 1)), [])
        data = calculator.accrue(ledger, date(2024, 5, 1)).to_dict()

        assert data['total_interest'] == '98.63'
        assert data['days'] == 30
        assert data['segments'][0]['principal'] == '10000.00'


class TestPostingWindows:
    """Test accrual split at the posting frequency"""

    def test_next_posting_date(self):
        assert next_posting_date(date(2024, 1, 15), PostingFrequency.MONTHLY) == date(2024, 2, 1)
        assert next_posting_date(date(2024, 12, 1), PostingFrequency.MONTHLY) == date(2025, 1, 1)
        assert next_posting_date(date(2024, 1, 1), PostingFrequency.QUARTERLY) == date(2024, 4, 1)
        assert next_posting_date(date(2024, 5, 20), PostingFrequency.QUARTERLY) == date(2024, 7, 1)
        assert next_posting_date(date(2024, 3, 1), PostingFrequency.ANNUALLY) == date(2025, 1, 1)

    def test_monthly_windows(self, calculator, builder):
        """Test the first window runs from a mid-month start to the next month"""
        ledger = builder.build(make_terms(start=date(2024, 1, 15)), [])
        windows = calculator.accrue_by_posting_period(ledger, date(2024, 4, 1), PostingFrequency.MONTHLY)

        assert [(w.from_date, w.to_date) for w in windows] == [
            (date(2024, 1, 15), date(2024, 2, 1)),
            (date(2024, 2, 1), date(2024, 3, 1)),
            (date(2024, 3, 1), date(2024, 4, 1)),
        ]
        assert [w.total_interest for w in windows] == [gbp('55.89'), gbp('95.34'), gbp('101.92')]

    def test_quarterly_window(self, calculator, builder):
        ledger = builder.build(make_terms(start=date(2024, 1, 15)), [])
        windows = calculator.accrue_by_posting_period(ledger, date(2024, 4, 1), PostingFrequency.QUARTERLY)

        assert len(windows) == 1
        assert windows[0].days == 77
        assert windows[0].total_interest == gbp('253.15')

    def test_last_window_cut_at_as_of(self, calculator, builder):
        ledger = builder.build(make_terms(), [])
        windows = calculator.accrue_by_posting_period(ledger, date(2024, 2, 15), PostingFrequency.MONTHLY)

        assert windows[-1].from_date == date(2024, 2, 1)
        assert windows[-1].to_date == date(2024, 2, 15)
        assert sum(w.days for w in windows) == 45

    def test_nothing_before_start(self, calculator, builder):
        ledger = builder.build(make_terms(), [])
        assert calculator.accrue_by_posting_period(ledger, date(2024, 1, 1), PostingFrequency.MONTHLY) == []
