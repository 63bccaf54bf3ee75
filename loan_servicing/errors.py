"""
Engine error types.

Everything derives from ValueError so callers that already guard calculation
input with ``except ValueError`` keep working.
"""

from typing import Optional


class LoanEngineError(ValueError):
    """Calculation input rejected before any computation ran"""

    def __init__(self, message: str, loan_id: Optional[str] = None, field: Optional[str] = None):
        self.loan_id = loan_id
        self.field = field
        context = []
        if loan_id:
            context.append(f"loan {loan_id}")
        if field:
            context.append(f"field '{field}'")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "loan_id": self.loan_id,
            "field": self.field,
        }


class InvalidTermsError(LoanEngineError):
    """Loan terms that no schedule or accrual can be computed from"""


class ManualSplitMismatchError(LoanEngineError):
    """Manual interest/principal split does not add up to the payment"""
