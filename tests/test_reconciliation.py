"""
Test suite for schedule/ledger reconciliation
"""

import logging

import pytest
from decimal import Decimal
from datetime import date
from dataclasses import replace

from loan_servicing.currency import Money, Currency
from loan_servicing.ledger import CapitalLedgerBuilder
from loan_servicing.loans import (
    LoanTerms, ProductConfig, InterestType, PeriodUnit, AmortizationConvention
)
from loan_servicing.reconciliation import ConsistencyChecker
from loan_servicing.schedule import ScheduleGenerator


def gbp(amount: str) -> Money:
    return Money(Decimal(amount), Currency.GBP)


@pytest.fixture
def terms():
    return LoanTerms(
        principal_amount=gbp('10000.00'),
        annual_rate=Decimal('12'),
        interest_type=InterestType.SIMPLE,
        duration=6,
        period_unit=PeriodUnit.MONTHLY,
        start_date=date(2024, 4, 1),
        loan_id="LN-400"
    )


@pytest.fixture
def ledger(terms):
    return CapitalLedgerBuilder().build(terms, [])


@pytest.fixture
def checker():
    return ConsistencyChecker()


def schedule_rows(terms, **product):
    product = ProductConfig(amortization=AmortizationConvention.INTEREST_ONLY, **product)
    return ScheduleGenerator().generate(terms, product).rows


class TestConsistencyChecker:
    """Test schedule vs ledger comparison"""

    def test_first_period_matches_ledger(self, terms, ledger, checker):
        """Test 30 days at 12% on £10,000 agrees on both sides"""
        rows = schedule_rows(terms)
        report = checker.check(ledger, rows, date(2024, 5, 1))

        assert report.schedule_interest == gbp('98.63')
        assert report.ledger_interest == gbp('98.63')
        assert report.matches
        assert report.difference.is_zero()
        assert report.last_boundary == date(2024, 5, 1)
        assert report.boundary_gap_days == 0
        assert report.rows_included == 1

    def test_several_periods_match(self, terms, ledger, checker):
        rows = schedule_rows(terms)
        report = checker.check(ledger, rows, date(2024, 7, 1))

        assert report.schedule_interest == gbp('299.18')
        assert report.ledger_interest == gbp('299.18')
        assert report.matches
        assert len(report.periods) == 3
        for period in report.periods:
            assert period.ledger_interest == period.scheduled_interest
        assert report.periods[-1].cumulative_ledger_interest == gbp('299.18')

    def test_drift_between_due_dates(self, terms, ledger, checker, caplog):
        """Test ledger days past the last due date show as drift, not an error"""
        rows = schedule_rows(terms)

        with caplog.at_level(logging.WARNING, logger="loan_servicing.reconciliation"):
            report = checker.check(ledger, rows, date(2024, 5, 15))

        assert report.schedule_interest == gbp('98.63')
        assert report.ledger_interest == gbp('144.66')
        assert report.difference == gbp('46.03')
        assert not report.matches
        assert report.has_drift
        assert report.boundary_gap_days == 14
        assert any(getattr(r, 'action', None) == "reconciliation_drift" for r in caplog.records)

    def test_in_advance_gap_is_negative(self, terms, ledger, checker):
        """Test an in-advance row due today covers days not yet accrued"""
        rows = schedule_rows(terms, interest_paid_in_advance=True)
        report = checker.check(ledger, rows, date(2024, 4, 1))

        assert report.rows_included == 1
        assert report.ledger_interest.is_zero()
        assert report.schedule_interest == gbp('98.63')
        assert report.boundary_gap_days == -30

    def test_nothing_due_yet(self, terms, ledger, checker):
        report = checker.check(ledger, schedule_rows(terms), date(2024, 4, 20))

        assert report.rows_included == 0
        assert report.last_boundary is None
        assert report.boundary_gap_days is None
        assert report.schedule_interest.is_zero()

    def test_interest_paid_and_outstanding(self, terms, ledger, checker):
        rows = schedule_rows(terms)
        rows[0] = replace(rows[0], interest_paid=gbp('98.63'))
        report = checker.check(ledger, rows, date(2024, 5, 15))

        assert report.interest_paid == gbp('98.63')
        assert report.schedule_outstanding.is_zero()
        assert report.ledger_outstanding == gbp('46.03')

    def test_check_does_not_mutate(self, terms, ledger, checker):
        rows = schedule_rows(terms)
        snapshot = list(rows)
        checker.check(ledger, rows, date(2024, 6, 1))
        assert rows == snapshot

    def test_export_calculation_data(self, terms, ledger, checker):
        rows = schedule_rows(terms)
        data = checker.export_calculation_data(ledger, rows, date(2024, 5, 1))

        assert data['loan_id'] == "LN-400"
        assert data['accrual']['total_interest'] == '98.63'
        assert data['reconciliation']['matches'] is True
        assert len(data['schedule']) == 6
        assert data['ledger']['events'][0]['kind'] == 'origination'

    def test_export_splits_postings(self, terms, ledger, checker):
        """Test posting windows add up to the whole accrual"""
        rows = schedule_rows(terms)
        data = checker.export_calculation_data(ledger, rows, date(2024, 6, 15))

        assert data['posting_frequency'] == 'monthly'
        assert [p['total_interest'] for p in data['postings']] == ['98.63', '101.92', '46.03']
        assert data['accrual']['total_interest'] == '246.58'
