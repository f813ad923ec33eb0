"""
Integration tests for the Loan Servicing API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from loan_servicing.api import create_app
from loan_servicing.api.dependencies import LoanServicingSystem, get_loan_system
from loan_servicing.config import LoanServicingConfig
from loan_servicing.storage import InMemoryStorage


START = "2024-01-01"


class BrokenStorage(InMemoryStorage):
    """Storage whose reads fail unexpectedly"""

    def load_all(self, table):
        raise RuntimeError("connection reset")


@pytest.fixture
def make_client():
    """Build a client over a fresh in-memory system with the given settings"""
    def _make(storage=None, **settings):
        config = LoanServicingConfig(database_url="memory://", **settings)
        system = LoanServicingSystem(config=config, storage=storage or InMemoryStorage())

        app = create_app()
        app.dependency_overrides[get_loan_system] = lambda: system
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


def create_loan(client, amount=100, term=3, start_date=START):
    r = client.post("/api/loans", json={"amount": amount, "term": term, "startDate": start_date})
    assert r.status_code == 201
    return r.json()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Loan Servicing API"
        assert data["endpoints"]["loans"] == "/api/loans"


class TestLoanEndpoints:
    """Create, list, get and delete"""

    def test_create_loan(self, client):
        """Test creating a loan returns it with camelCase keys"""
        data = create_loan(client)

        assert Decimal(data["amount"]) == Decimal("100")
        assert data["term"] == 3
        assert data["status"] == "PENDING"
        assert Decimal(data["remainingAmount"]) == Decimal("100")
        assert "createdAt" in data and "updatedAt" in data

    def test_get_loan_with_schedule(self, client):
        """The schedule is 33, 33, 34 due weekly from the start date"""
        loan_id = create_loan(client)["id"]

        r = client.get(f"/api/loans/{loan_id}")
        assert r.status_code == 200
        repayments = r.json()["repayments"]

        assert [Decimal(p["amount"]) for p in repayments] == [
            Decimal("33"), Decimal("33"), Decimal("34")
        ]
        assert [p["date"] for p in repayments] == ["2024-01-01", "2024-01-08", "2024-01-15"]
        assert all(p["status"] == "PENDING" for p in repayments)
        assert all(p["loanId"] == loan_id for p in repayments)

    def test_list_loans(self, client):
        assert client.get("/api/loans").json() == []

        first = create_loan(client)["id"]
        second = create_loan(client, amount=500, term=5)["id"]

        r = client.get("/api/loans")
        assert r.status_code == 200
        assert [loan["id"] for loan in r.json()] == [first, second]

    def test_get_unknown_loan(self, client):
        r = client.get("/api/loans/does-not-exist")
        assert r.status_code == 404
        assert r.json()["detail"] == "Loan not found"

    @pytest.mark.parametrize("body", [
        {"amount": 0, "term": 3},
        {"amount": -100, "term": 3},
        {"amount": 100, "term": 0},
        {"amount": 100, "term": -1},
    ])
    def test_create_invalid_loan(self, client, body):
        """Non-positive amount or term is a bad request"""
        r = client.post("/api/loans", json=body)
        assert r.status_code == 400
        assert client.get("/api/loans").json() == []

    def test_amounts_returned_in_plain_form(self, client):
        """Exponent input comes back as a plain decimal string"""
        data = create_loan(client, amount="1e2", term=1)

        assert data["amount"] == "100"
        assert data["remainingAmount"] == "100"

        repayments = client.get(f"/api/loans/{data['id']}").json()["repayments"]
        assert repayments[0]["amount"] == "100"

    def test_wide_amount_schedule(self, client):
        """Installments stay exact for principals wider than 28 digits"""
        data = create_loan(client, amount="29999999999999999999999999999", term=3)

        repayments = client.get(f"/api/loans/{data['id']}").json()["repayments"]
        assert [p["amount"] for p in repayments] == [
            "9999999999999999999999999999",
            "9999999999999999999999999999",
            "10000000000000000000000000001",
        ]

    def test_create_malformed_body(self, client):
        r = client.post("/api/loans", json={"amount": "lots", "term": 3})
        assert r.status_code == 422

    def test_delete_loan(self, client):
        loan_id = create_loan(client)["id"]

        r = client.delete(f"/api/loans/{loan_id}")
        assert r.status_code == 200
        assert r.json()["message"] == "Loan deleted successfully"
        assert client.get(f"/api/loans/{loan_id}").status_code == 404

    def test_delete_unknown_loan(self, client):
        """Deleting a loan that does not exist is a 404"""
        r = client.delete("/api/loans/does-not-exist")
        assert r.status_code == 404
        assert r.json()["detail"] == "Loan not found"

    def test_storage_failure_is_500(self, make_client):
        client = make_client(storage=BrokenStorage())

        r = client.get("/api/loans")
        assert r.status_code == 500
        assert r.json()["detail"] == "Error retrieving loans"


class TestApprovalEndpoints:
    """Approve and reject"""

    def test_approve_and_reject(self, client):
        """The last decision wins when transitions are not enforced"""
        loan_id = create_loan(client)["id"]

        r = client.put(f"/api/loans/{loan_id}/approve")
        assert r.status_code == 200
        assert r.json()["message"] == "Loan approved successfully"
        assert client.get(f"/api/loans/{loan_id}").json()["loan"]["status"] == "APPROVED"

        r = client.put(f"/api/loans/{loan_id}/reject")
        assert r.status_code == 200
        assert r.json()["message"] == "Loan rejected"
        assert client.get(f"/api/loans/{loan_id}").json()["loan"]["status"] == "REJECTED"

    def test_approve_unknown_loan(self, client):
        assert client.put("/api/loans/does-not-exist/approve").status_code == 404
        assert client.put("/api/loans/does-not-exist/reject").status_code == 404

    def test_role_required_when_authorization_enabled(self, make_client):
        client = make_client(authorization_enabled=True, admin_roles="admin,underwriter")
        loan_id = create_loan(client)["id"]

        r = client.put(f"/api/loans/{loan_id}/approve")
        assert r.status_code == 403
        assert r.json()["detail"] == "Only admin users can approve loans"

        r = client.put(f"/api/loans/{loan_id}/reject", headers={"X-User-Role": "customer"})
        assert r.status_code == 403

        r = client.put(f"/api/loans/{loan_id}/approve", headers={"X-User-Role": "Underwriter"})
        assert r.status_code == 200

    def test_strict_transitions(self, make_client):
        """A decided loan cannot be decided again"""
        client = make_client(enforce_status_transitions=True)
        loan_id = create_loan(client)["id"]

        assert client.put(f"/api/loans/{loan_id}/approve").status_code == 200
        assert client.put(f"/api/loans/{loan_id}/reject").status_code == 409
        assert client.put(f"/api/loans/{loan_id}/approve").status_code == 409


class TestRepaymentEndpoints:
    """Repayment submission"""

    def test_full_repayment_flow(self, client):
        """Paying every installment marks the loan PAID"""
        loan_id = create_loan(client)["id"]
        client.put(f"/api/loans/{loan_id}/approve")

        for amount, due in [(33, "2024-01-01"), (33, "2024-01-08"), (34, "2024-01-15")]:
            r = client.post(f"/api/loans/{loan_id}/repayments", json={"amount": amount, "date": due})
            assert r.status_code == 200
            assert r.json()["message"] == "Repayment processed successfully"

        data = client.get(f"/api/loans/{loan_id}").json()
        assert data["loan"]["status"] == "PAID"
        assert Decimal(data["loan"]["remainingAmount"]) == Decimal("0")
        assert all(p["status"] == "PAID" and p["paidAt"] for p in data["repayments"])

    def test_partial_repayment_updates_balance(self, client):
        loan_id = create_loan(client)["id"]

        r = client.post(f"/api/loans/{loan_id}/repayments", json={"amount": "33", "date": "2024-01-08"})
        assert r.status_code == 200

        data = client.get(f"/api/loans/{loan_id}").json()
        assert Decimal(data["loan"]["remainingAmount"]) == Decimal("67")
        assert data["loan"]["status"] == "PENDING"
        assert [p["status"] for p in data["repayments"]] == ["PENDING", "PAID", "PENDING"]

    @pytest.mark.parametrize("amount,due,message", [
        (32, "2024-01-01", "Repayment amount is insufficient"),
        (35, "2024-01-15", "Amount is greater than repayment"),
        (33, "2024-01-02", "Repayment not found or already paid"),
    ])
    def test_rejected_repayment(self, client, amount, due, message):
        """Rejected repayments change nothing"""
        loan_id = create_loan(client)["id"]

        r = client.post(f"/api/loans/{loan_id}/repayments", json={"amount": amount, "date": due})
        assert r.status_code == 400
        assert r.json()["detail"] == message

        data = client.get(f"/api/loans/{loan_id}").json()
        assert Decimal(data["loan"]["remainingAmount"]) == Decimal("100")
        assert all(p["status"] == "PENDING" for p in data["repayments"])

    def test_double_settlement(self, client):
        loan_id = create_loan(client)["id"]
        body = {"amount": 33, "date": "2024-01-01"}

        assert client.post(f"/api/loans/{loan_id}/repayments", json=body).status_code == 200
        r = client.post(f"/api/loans/{loan_id}/repayments", json=body)
        assert r.status_code == 400
        assert r.json()["detail"] == "Repayment not found or already paid"

    def test_repayment_for_unknown_loan(self, client):
        r = client.post("/api/loans/does-not-exist/repayments", json={"amount": 33, "date": START})
        assert r.status_code == 400

    def test_missing_date(self, client):
        loan_id = create_loan(client)["id"]
        r = client.post(f"/api/loans/{loan_id}/repayments", json={"amount": 33})
        assert r.status_code == 422

    def test_strict_mode_requires_approval(self, make_client):
        client = make_client(enforce_status_transitions=True)
        loan_id = create_loan(client)["id"]
        body = {"amount": 33, "date": START}

        assert client.post(f"/api/loans/{loan_id}/repayments", json=body).status_code == 409

        client.put(f"/api/loans/{loan_id}/approve")
        assert client.post(f"/api/loans/{loan_id}/repayments", json=body).status_code == 200
