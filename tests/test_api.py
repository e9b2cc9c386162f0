import pytest
import asyncio
from collections import deque
from fastapi.testclient import TestClient
from unittest.mock import patch

from main import app, limiter
from engine import get_payments_engine, reset_payments_engine

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_state():
    """Reset the engine and rate limiter before each test."""
    reset_payments_engine()
    limiter.reset()


def post(kind, client_id, tx, amount=None):
    body = {"type": kind, "client": client_id, "tx": tx}
    if amount is not None:
        body["amount"] = amount
    return client.post("/transactions", json=body)


class TestTransactions:
    """Test applying events over HTTP."""

    def test_deposit(self):
        response = post("deposit", 1, 1, "5.0")

        assert response.status_code == 201
        assert response.json() == {
            "client": 1,
            "available": "5.0000",
            "held": "0.0000",
            "total": "5.0000",
            "locked": False,
        }

    def test_numeric_amount(self):
        response = post("deposit", 1, 1, 100.5)

        assert response.status_code == 201
        assert response.json()["available"] == "100.5000"

    def test_dispute_and_chargeback(self):
        post("deposit", 1, 1, "5.0")
        disputed = post("dispute", 1, 1)
        charged = post("chargeback", 1, 1)

        assert disputed.status_code == 201
        assert disputed.json()["held"] == "5.0000"
        assert charged.status_code == 201
        assert charged.json()["locked"] is True
        assert charged.json()["total"] == "0.0000"

    def test_insufficient_funds(self):
        response = post("withdrawal", 3, 1, "1.0")

        assert response.status_code == 409
        assert response.json()["error_code"] == "insufficient_funds"

    def test_locked_account(self):
        post("deposit", 1, 1, "5.0")
        post("dispute", 1, 1)
        post("chargeback", 1, 1)

        response = post("deposit", 1, 2, "100.0")

        assert response.status_code == 409
        assert response.json()["error_code"] == "account_locked"

    def test_unknown_transaction(self):
        response = post("resolve", 1, 77)

        assert response.status_code == 404
        assert response.json()["error_code"] == "unknown_transaction"

    def test_malformed_amount(self):
        response = post("deposit", 1, 1, "-2")

        assert response.status_code == 422
        assert response.json()["error_code"] == "malformed_amount"

    def test_overflowing_balance_is_rejected(self):
        big = "99999999999999999999999"
        for i in range(1, 11):
            post("deposit", 1, i, big)

        response = post("deposit", 1, 11, big)

        assert response.status_code == 422
        assert response.json()["error_code"] == "malformed_amount"
        account = client.get("/accounts/1").json()
        assert account["available"] == "999999999999999999999990.0000"
        assert get_payments_engine().transaction_repo.get(11) is None

    def test_validation_error(self):
        response = client.post("/transactions", json={"type": "transfer", "client": 1, "tx": 1})

        assert response.status_code == 422

    def test_client_id_out_of_range(self):
        response = post("deposit", 70000, 1, "1.0")

        assert response.status_code == 422

    @patch('engine.logger')
    def test_rejection_is_logged(self, mock_logger):
        response = post("dispute", 1, 5)

        assert response.status_code == 404
        mock_logger.warning.assert_called()


class TestAccounts:
    """Test reading account state."""

    def test_list_accounts_ordered_by_client(self):
        post("deposit", 2, 1, "3.0")
        post("deposit", 1, 2, "5.0")
        post("withdrawal", 1, 3, "2.0")

        response = client.get("/accounts")

        assert response.status_code == 200
        accounts = response.json()["accounts"]
        assert [a["client"] for a in accounts] == [1, 2]
        assert accounts[0]["available"] == "3.0000"
        assert accounts[1]["total"] == "3.0000"

    def test_get_account(self):
        post("deposit", 4, 1, "1.25")

        response = client.get("/accounts/4")

        assert response.status_code == 200
        assert response.json()["available"] == "1.2500"

    def test_get_unknown_account(self):
        response = client.get("/accounts/99")

        assert response.status_code == 404
        assert response.json()["error_code"] == "HTTP_404"


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        post("deposit", 1, 1, "1.0")
        post("withdrawal", 1, 2, "9.0")

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["accounts_count"] == 1
        assert data["transactions_recorded"] == 1
        assert data["transactions_rejected"] == 1

    def test_health_counts_rejections_beyond_the_log(self):
        engine = get_payments_engine()
        engine.rejections = deque(maxlen=1)
        post("dispute", 1, 1)
        post("dispute", 1, 2)
        post("resolve", 1, 3)

        data = client.get("/health").json()

        assert data["transactions_rejected"] == 3
        assert len(engine.rejections) == 1

    def test_root_endpoint(self):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data


class TestConcurrency:
    """Concurrent requests are still applied one event at a time."""

    @pytest.mark.asyncio
    async def test_concurrent_deposits_same_client(self):
        import httpx

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            tasks = [
                ac.post("/transactions", json={"type": "deposit", "client": 1, "tx": i, "amount": "1.5"})
                for i in range(10)
            ]
            results = await asyncio.gather(*tasks)

        assert all(r.status_code == 201 for r in results)
        account = get_payments_engine().accounts()[1]
        assert str(account.available) == "15.0000"
        assert account.total == account.available + account.held
