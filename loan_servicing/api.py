"""
Loan Servicing REST API

FastAPI application exposing the engine's pure operations. Nothing is
persisted: every request carries the loan terms, transactions and schedule
rows it needs, and every response is recomputed from them.
"""

from datetime import datetime, timezone
from typing import List, NoReturn

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .config import get_config
from .errors import LoanEngineError
from .loans import Transaction, ScheduleRow, OverpaymentOption
from .logging_config import setup_logging, get_logger, log_action
from .schemas import (
    ScheduleRequest, RegenerateRequest, AccrualRequest, AllocatePaymentRequest,
    SettlementQuoteRequest, ReconcileRequest, TransactionModel, ScheduleRowModel,
    parse_enum
)
from .servicing import LoanServicingEngine


logger = get_logger("loan_servicing.api")


app = FastAPI(
    title="Loan Servicing Engine API",
    description="Interest accrual, amortization schedules and payment allocation for term loans",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_engine = None


def get_engine() -> LoanServicingEngine:
    """Shared engine instance; it holds settings only, no loan state"""
    global _engine
    if _engine is None:
        _engine = LoanServicingEngine(get_config())
    return _engine


@app.exception_handler(LoanEngineError)
async def loan_engine_error_handler(request: Request, exc: LoanEngineError):
    log_action(
        logger, "warning", str(exc),
        loan_id=exc.loan_id, action="request_rejected",
        extra={"path": request.url.path, "field": exc.field}
    )
    return JSONResponse(status_code=400, content={"detail": exc.to_dict()})


def _bad_request(e: ValueError) -> NoReturn:
    raise HTTPException(status_code=400, detail=str(e))


def _transactions(models: List[TransactionModel]) -> List[Transaction]:
    return [model.to_transaction() for model in models]


def _rows(models: List[ScheduleRowModel]) -> List[ScheduleRow]:
    return [model.to_schedule_row() for model in models]


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/schedule")
async def generate_schedule(
    request: ScheduleRequest,
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Generate an amortization schedule with no repayments applied"""
    try:
        result = engine.generator.generate(
            request.terms.to_loan_terms(),
            request.product.to_product_config(),
            _transactions(request.transactions),
            end_date=request.end_date,
            duration=request.duration
        )
    except LoanEngineError:
        raise
    except ValueError as e:
        _bad_request(e)
    return result.to_dict()


@app.post("/regenerate")
async def regenerate_schedule(
    request: RegenerateRequest,
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Regenerate the schedule and replay every repayment against it"""
    try:
        result = engine.regenerate(
            request.terms.to_loan_terms(),
            request.product.to_product_config(),
            _transactions(request.transactions),
            end_date=request.end_date,
            duration=request.duration,
            overpayment_option=parse_enum(OverpaymentOption, request.overpayment_option, "overpayment_option")
        )
    except LoanEngineError:
        raise
    except ValueError as e:
        _bad_request(e)
    return result.to_dict()


@app.post("/accrual")
async def accrued_interest(
    request: AccrualRequest,
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Ledger interest accrued up to (not including) the as-of date"""
    try:
        result = engine.accrued_interest(
            request.terms.to_loan_terms(),
            _transactions(request.transactions),
            request.as_of,
            from_date=request.from_date
        )
    except LoanEngineError:
        raise
    except ValueError as e:
        _bad_request(e)
    return result.to_dict()


@app.post("/accrual/postings")
async def interest_postings(
    request: AccrualRequest,
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Ledger interest split into posting windows at the product's posting frequency"""
    try:
        product = request.product.to_product_config()
        postings = engine.interest_postings(
            request.terms.to_loan_terms(),
            product,
            _transactions(request.transactions),
            request.as_of
        )
    except LoanEngineError:
        raise
    except ValueError as e:
        _bad_request(e)
    return {
        "posting_frequency": product.posting_frequency.value,
        "postings": [posting.to_dict() for posting in postings]
    }


@app.post("/payments/allocate")
async def allocate_payment(
    request: AllocatePaymentRequest,
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Allocate one payment across the supplied schedule rows"""
    try:
        result = engine.record_payment(
            request.payment.to_money(),
            _rows(request.rows),
            existing_credit=request.existing_credit.to_money() if request.existing_credit else None,
            interest_amount=request.interest_amount.to_money() if request.interest_amount else None,
            principal_amount=request.principal_amount.to_money() if request.principal_amount else None,
            overpayment_option=request.to_overpayment_option(),
            settlement=request.settlement,
            loan_id=request.loan_id
        )
    except LoanEngineError:
        raise
    except ValueError as e:
        _bad_request(e)
    return result.to_dict()


@app.post("/settlement-quote")
async def settlement_quote(
    request: SettlementQuoteRequest,
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Amount required to settle the loan on the given date"""
    try:
        quote = engine.settlement_quote(
            request.terms.to_loan_terms(),
            _transactions(request.transactions),
            request.settlement_date
        )
    except LoanEngineError:
        raise
    except ValueError as e:
        _bad_request(e)
    return quote.to_dict()


@app.post("/reconcile")
async def reconcile(
    request: ReconcileRequest,
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Compare schedule interest with ledger interest as of a date"""
    try:
        report = engine.reconcile(
            request.terms.to_loan_terms(),
            _transactions(request.transactions),
            _rows(request.rows),
            request.as_of
        )
    except LoanEngineError:
        raise
    except ValueError as e:
        _bad_request(e)
    return report.to_dict()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the API server"""
    settings = get_config()
    setup_logging(level=settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
    uvicorn.run(
        "loan_servicing.api:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level="debug" if debug else "info"
    )
