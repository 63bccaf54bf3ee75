"""
Loan Servicing Engine

Interest accrual and repayment ledger engine for term loans: capital event
ledgers, day-count accrual, amortization schedules, payment waterfalls and
schedule/ledger reconciliation, all in Decimal precision.
"""

__version__ = "1.0.0"
