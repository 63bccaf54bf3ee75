"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field

from .config import get_config
from .currency import Money, Currency, decimal_from_string
from .errors import LoanEngineError
from .loans import (
    LoanTerms, ProductConfig, Transaction, ScheduleRow, ScheduleStatus,
    InterestType, PeriodUnit, InterestCalculationMethod, InterestAlignment,
    AmortizationConvention, PostingFrequency, TransactionType, OverpaymentOption
)


def parse_enum(enum_cls, value: str, field_name: str):
    """Enum member by value, rejected as a LoanEngineError when unknown"""
    try:
        return enum_cls(value.lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise LoanEngineError(f"Unknown {field_name} '{value}', expected one of: {allowed}",
                              field=field_name) from None


def parse_decimal(value: Optional[str], field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return decimal_from_string(value)
    except ValueError as e:
        raise LoanEngineError(str(e), field=field_name) from e


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: Optional[str] = Field(None, description="Currency code (GBP, EUR, etc.), defaults to the engine currency")

    def to_money(self) -> Money:
        code = self.currency or get_config().default_currency
        try:
            currency = Currency[code.upper()]
        except KeyError:
            raise LoanEngineError(f"Unsupported currency '{code}'", field="currency") from None
        return Money(parse_decimal(self.amount, "amount"), currency)


def _optional_money(model: Optional[MoneyModel]) -> Optional[Money]:
    return model.to_money() if model is not None else None


class LoanTermsModel(BaseModel):
    principal_amount: MoneyModel
    annual_rate: str = Field(..., description="Annual rate in percent, e.g. '12' for 12%")
    interest_type: str = Field("reducing", description="simple or reducing")
    duration: int = Field(..., description="Number of periods")
    period_unit: str = Field("monthly", description="monthly or weekly")
    start_date: date
    override_rate: Optional[str] = None
    penalty_rate: Optional[str] = None
    penalty_rate_from: Optional[date] = None
    arrangement_fee: Optional[MoneyModel] = None
    exit_fee: Optional[MoneyModel] = None
    auto_extend: bool = False
    loan_id: Optional[str] = None

    def to_loan_terms(self) -> LoanTerms:
        return LoanTerms(
            principal_amount=self.principal_amount.to_money(),
            annual_rate=parse_decimal(self.annual_rate, "annual_rate"),
            interest_type=parse_enum(InterestType, self.interest_type, "interest_type"),
            duration=self.duration,
            period_unit=parse_enum(PeriodUnit, self.period_unit, "period_unit"),
            start_date=self.start_date,
            override_rate=parse_decimal(self.override_rate, "override_rate"),
            penalty_rate=parse_decimal(self.penalty_rate, "penalty_rate"),
            penalty_rate_from=self.penalty_rate_from,
            arrangement_fee=_optional_money(self.arrangement_fee),
            exit_fee=_optional_money(self.exit_fee),
            auto_extend=self.auto_extend,
            loan_id=self.loan_id
        )


class ProductConfigModel(BaseModel):
    interest_calculation_method: str = "daily"
    interest_alignment: str = "period_based"
    interest_paid_in_advance: bool = False
    posting_frequency: str = "monthly"
    amortization: str = "amortizing"

    def to_product_config(self) -> ProductConfig:
        return ProductConfig(
            interest_calculation_method=parse_enum(
                InterestCalculationMethod, self.interest_calculation_method, "interest_calculation_method"
            ),
            interest_alignment=parse_enum(InterestAlignment, self.interest_alignment, "interest_alignment"),
            interest_paid_in_advance=self.interest_paid_in_advance,
            posting_frequency=parse_enum(PostingFrequency, self.posting_frequency, "posting_frequency"),
            amortization=parse_enum(AmortizationConvention, self.amortization, "amortization")
        )


class TransactionModel(BaseModel):
    date: date
    type: str = Field(..., description="disbursement or repayment")
    amount: MoneyModel
    principal_applied: Optional[MoneyModel] = None
    interest_applied: Optional[MoneyModel] = None
    fees_applied: Optional[MoneyModel] = None
    gross_amount: Optional[MoneyModel] = None
    is_deleted: bool = False
    is_settlement: bool = False
    id: Optional[str] = None

    def to_transaction(self) -> Transaction:
        return Transaction(
            date=self.date,
            type=parse_enum(TransactionType, self.type, "type"),
            amount=self.amount.to_money(),
            principal_applied=_optional_money(self.principal_applied),
            interest_applied=_optional_money(self.interest_applied),
            fees_applied=_optional_money(self.fees_applied),
            gross_amount=_optional_money(self.gross_amount),
            is_deleted=self.is_deleted,
            is_settlement=self.is_settlement,
            id=self.id
        )


class ScheduleRowModel(BaseModel):
    installment_number: int
    due_date: date
    period_start: date
    period_end: date
    principal_due: str
    interest_due: str
    principal_paid: str = "0"
    interest_paid: str = "0"
    status: str = "pending"
    currency: Optional[str] = None

    def to_schedule_row(self) -> ScheduleRow:
        def money(value: str) -> Money:
            return MoneyModel(amount=value, currency=self.currency).to_money()

        return ScheduleRow(
            installment_number=self.installment_number,
            due_date=self.due_date,
            period_start=self.period_start,
            period_end=self.period_end,
            principal_due=money(self.principal_due),
            interest_due=money(self.interest_due),
            principal_paid=money(self.principal_paid),
            interest_paid=money(self.interest_paid),
            status=parse_enum(ScheduleStatus, self.status, "status"),
            calculation_days=(self.period_end - self.period_start).days
        )


# Request schemas
class ScheduleRequest(BaseModel):
    terms: LoanTermsModel
    product: ProductConfigModel = Field(default_factory=ProductConfigModel)
    transactions: List[TransactionModel] = Field(default_factory=list)
    end_date: Optional[date] = None
    duration: Optional[int] = None


class RegenerateRequest(ScheduleRequest):
    overpayment_option: str = "credit"


class AccrualRequest(BaseModel):
    terms: LoanTermsModel
    product: ProductConfigModel = Field(default_factory=ProductConfigModel)
    transactions: List[TransactionModel] = Field(default_factory=list)
    as_of: date
    from_date: Optional[date] = None


class AllocatePaymentRequest(BaseModel):
    payment: MoneyModel
    rows: List[ScheduleRowModel]
    existing_credit: Optional[MoneyModel] = None
    interest_amount: Optional[MoneyModel] = Field(None, description="Manual split: interest part")
    principal_amount: Optional[MoneyModel] = Field(None, description="Manual split: principal part")
    overpayment_option: str = "credit"
    settlement: bool = False
    loan_id: Optional[str] = None

    def to_overpayment_option(self) -> OverpaymentOption:
        return parse_enum(OverpaymentOption, self.overpayment_option, "overpayment_option")


class SettlementQuoteRequest(BaseModel):
    terms: LoanTermsModel
    transactions: List[TransactionModel] = Field(default_factory=list)
    settlement_date: date


class ReconcileRequest(BaseModel):
    terms: LoanTermsModel
    transactions: List[TransactionModel] = Field(default_factory=list)
    rows: List[ScheduleRowModel]
    as_of: date
