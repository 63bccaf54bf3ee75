"""
Integration tests for the Loan Servicing API
Tests end-to-end calculations using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

import loan_servicing.api
from loan_servicing.api import app
from loan_servicing.config import EngineSettings
from loan_servicing.servicing import LoanServicingEngine


@pytest.fixture
def client():
    """Create a test client with a fresh engine"""
    original_engine = loan_servicing.api._engine
    loan_servicing.api._engine = LoanServicingEngine(EngineSettings())

    yield TestClient(app)

    loan_servicing.api._engine = original_engine


def terms_payload(**overrides):
    payload = {
        "principal_amount": {"amount": "10000.00", "currency": "GBP"},
        "annual_rate": "12",
        "interest_type": "reducing",
        "duration": 6,
        "period_unit": "monthly",
        "start_date": "2024-04-01",
        "loan_id": "LN-API"
    }
    payload.update(overrides)
    return payload


INTEREST_ONLY = {"amortization": "interest_only"}


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert "version" in data


class TestScheduleFlow:
    """Schedule generation and regeneration"""

    def test_generate_schedule(self, client):
        r = client.post("/schedule", json={"terms": terms_payload(), "product": INTEREST_ONLY})
        assert r.status_code == 200
        data = r.json()

        assert len(data["rows"]) == 6
        assert data["rows"][0]["interest_due"] == "98.63"
        assert data["rows"][0]["due_date"] == "2024-05-01"
        assert data["rows"][-1]["principal_due"] == "10000.00"
        assert data["currency"] == "GBP"

    def test_generate_is_repeatable(self, client):
        body = {"terms": terms_payload(), "product": {"interest_calculation_method": "monthly_fixed"}}
        first = client.post("/schedule", json=body).json()
        second = client.post("/schedule", json=body).json()
        assert first == second

    def test_regenerate_replays_repayments(self, client):
        r = client.post("/regenerate", json={
            "terms": terms_payload(),
            "product": INTEREST_ONLY,
            "transactions": [{
                "date": "2024-05-01",
                "type": "repayment",
                "amount": {"amount": "98.63", "currency": "GBP"},
                "interest_applied": {"amount": "98.63", "currency": "GBP"}
            }]
        })
        assert r.status_code == 200
        data = r.json()

        assert data["rows"][0]["status"] == "paid"
        assert data["rows"][1]["status"] == "pending"
        assert data["interest_paid"] == "98.63"
        assert data["overpayment_credit"] == "0.00"
        assert len(data["allocations"]) == 1

    def test_rolled_up_schedule(self, client):
        r = client.post("/schedule", json={"terms": terms_payload(), "product": {"amortization": "rolled_up"}})
        assert r.status_code == 200
        rows = r.json()["rows"]
        assert len(rows) == 1
        assert rows[0]["due_date"] == "2024-10-01"
        assert rows[0]["interest_due"] == "601.64"
        assert rows[0]["principal_due"] == "10000.00"

    def test_invalid_terms_rejected(self, client):
        r = client.post("/schedule", json={"terms": terms_payload(duration=0)})
        assert r.status_code == 400
        detail = r.json()["detail"]
        assert detail["error"] == "InvalidTermsError"
        assert detail["field"] == "duration"
        assert detail["loan_id"] == "LN-API"

    def test_unknown_enum_rejected(self, client):
        r = client.post("/schedule", json={"terms": terms_payload(interest_type="compound")})
        assert r.status_code == 400
        assert r.json()["detail"]["field"] == "interest_type"

    def test_unsupported_currency_rejected(self, client):
        terms = terms_payload(principal_amount={"amount": "100", "currency": "XYZ"})
        r = client.post("/schedule", json={"terms": terms})
        assert r.status_code == 400


class TestAccrualFlow:
    """Ledger accrual and settlement quotes"""

    def test_accrual(self, client):
        r = client.post("/accrual", json={"terms": terms_payload(), "as_of": "2024-05-01"})
        assert r.status_code == 200
        data = r.json()
        assert data["total_interest"] == "98.63"
        assert data["days"] == 30
        assert len(data["segments"]) == 1

    def test_accrual_with_further_advance(self, client):
        r = client.post("/accrual", json={
            "terms": terms_payload(start_date="2024-01-01"),
            "transactions": [{
                "date": "2024-01-11",
                "type": "disbursement",
                "amount": {"amount": "4900.00", "currency": "GBP"},
                "gross_amount": {"amount": "5000.00", "currency": "GBP"}
            }],
            "as_of": "2024-01-21"
        })
        assert r.status_code == 200
        assert r.json()["total_interest"] == "82.20"

    def test_settlement_quote(self, client):
        r = client.post("/settlement-quote", json={
            "terms": terms_payload(exit_fee={"amount": "250.00", "currency": "GBP"}),
            "settlement_date": "2024-04-30"
        })
        assert r.status_code == 200
        data = r.json()
        assert data["days_elapsed"] == 30
        assert data["interest_accrued"] == "98.63"
        assert data["total"] == "10348.63"


    def test_interest_postings(self, client):
        r = client.post("/accrual/postings", json={
            "terms": terms_payload(),
            "product": {"posting_frequency": "quarterly"},
            "as_of": "2024-08-01"
        })
        assert r.status_code == 200
        data = r.json()
        assert data["posting_frequency"] == "quarterly"
        assert [p["to_date"] for p in data["postings"]] == ["2024-07-01", "2024-08-01"]
        assert [p["total_interest"] for p in data["postings"]] == ["299.18", "101.92"]

    def test_unknown_posting_frequency_rejected(self, client):
        r = client.post("/accrual/postings", json={
            "terms": terms_payload(),
            "product": {"posting_frequency": "fortnightly"},
            "as_of": "2024-08-01"
        })
        assert r.status_code == 400


class TestPaymentFlow:
    """Payment allocation"""

    rows = [
        {"installment_number": 1, "due_date": "2024-05-01", "period_start": "2024-04-01",
         "period_end": "2024-05-01", "principal_due": "900.00", "interest_due": "100.00"},
        {"installment_number": 2, "due_date": "2024-06-01", "period_start": "2024-05-01",
         "period_end": "2024-06-01", "principal_due": "910.00", "interest_due": "90.00"},
    ]

    def test_automatic_allocation(self, client):
        r = client.post("/payments/allocate", json={
            "payment": {"amount": "1050.00", "currency": "GBP"},
            "rows": self.rows
        })
        assert r.status_code == 200
        data = r.json()

        assert data["interest_applied"] == "150.00"
        assert data["principal_applied"] == "900.00"
        assert data["updates"][0]["status"] == "paid"
        assert data["updates"][1]["status"] == "pending"

    def test_overpayment_credit(self, client):
        r = client.post("/payments/allocate", json={
            "payment": {"amount": "2100.00", "currency": "GBP"},
            "rows": self.rows,
            "existing_credit": {"amount": "50.00", "currency": "GBP"}
        })
        data = r.json()
        assert data["overpayment_credit"] == "150.00"
        assert data["previous_credit"] == "50.00"

    def test_manual_split_mismatch(self, client):
        r = client.post("/payments/allocate", json={
            "payment": {"amount": "1000.00", "currency": "GBP"},
            "interest_amount": {"amount": "100.00", "currency": "GBP"},
            "principal_amount": {"amount": "800.00", "currency": "GBP"},
            "rows": self.rows,
            "loan_id": "LN-API"
        })
        assert r.status_code == 400
        detail = r.json()["detail"]
        assert detail["error"] == "ManualSplitMismatchError"
        assert detail["loan_id"] == "LN-API"

    def test_settlement_allocation(self, client):
        r = client.post("/payments/allocate", json={
            "payment": {"amount": "1000.00", "currency": "GBP"},
            "rows": self.rows,
            "settlement": True
        })
        data = r.json()
        assert data["removed_installments"] == [2]


class TestReconcileFlow:
    """Schedule vs ledger reconciliation"""

    def test_reconcile(self, client):
        schedule = client.post("/schedule", json={"terms": terms_payload(), "product": INTEREST_ONLY}).json()
        rows = [
            {key: row[key] for key in (
                "installment_number", "due_date", "period_start", "period_end",
                "principal_due", "interest_due", "principal_paid", "interest_paid", "status", "currency"
            )}
            for row in schedule["rows"]
        ]

        r = client.post("/reconcile", json={"terms": terms_payload(), "rows": rows, "as_of": "2024-05-01"})
        assert r.status_code == 200
        data = r.json()
        assert data["matches"] is True
        assert data["schedule_interest"] == "98.63"
        assert data["ledger_interest"] == "98.63"
        assert data["boundary_gap_days"] == 0
