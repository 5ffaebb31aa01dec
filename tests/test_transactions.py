import pytest
import asyncio
import httpx
from unittest.mock import AsyncMock, patch

from errors import PersistenceFailure


def post_transaction(client, payload, key="txn-key-001"):
    headers = {"Idempotency-Key": key} if key else {}
    return client.post("/transactions", json=payload, headers=headers)


class TestBasicTransactions:
    """Test transaction creation and amount normalization."""

    def test_purchase_is_stored_negative(self, client, create_account):
        account_id = create_account()

        response = post_transaction(client, {
            "account_id": account_id,
            "operation_type_id": 1,
            "amount": 50.0,
        })

        assert response.status_code == 201
        data = response.json()

        assert data["amount"] == -50.0
        assert data["account_id"] == account_id
        assert data["operation_type_id"] == 1
        assert data["transaction_id"] > 0
        assert "event_date" in data

    def test_credit_voucher_is_stored_positive(self, client, create_account):
        account_id = create_account()

        response = post_transaction(client, {
            "account_id": account_id,
            "operation_type_id": 4,
            "amount": -100.0,
        })

        assert response.status_code == 201
        assert response.json()["amount"] == 100.0

    @pytest.mark.parametrize("operation_type_id", [1, 2, 3])
    @pytest.mark.parametrize("amount", [23.5, -23.5])
    def test_debit_operations_ignore_client_sign(self, client, create_account, operation_type_id, amount):
        account_id = create_account()

        response = post_transaction(
            client,
            {"account_id": account_id, "operation_type_id": operation_type_id, "amount": amount},
            key=f"debit-{operation_type_id}-{amount}",
        )

        assert response.status_code == 201
        assert response.json()["amount"] == -23.5

    def test_decimal_precision(self, client, create_account):
        account_id = create_account()

        response = post_transaction(client, {
            "account_id": account_id,
            "operation_type_id": 3,
            "amount": 99.99,
        })

        assert response.status_code == 201
        assert response.json()["amount"] == -99.99

    def test_account_not_found(self, client):
        response = post_transaction(client, {
            "account_id": 9999,
            "operation_type_id": 1,
            "amount": 50.0,
        })

        assert response.status_code == 404
        data = response.json()
        assert data["error_code"] == "ACCOUNT_NOT_FOUND"
        assert "not found" in data["detail"]

    def test_account_id_beyond_storage_range(self, client):
        response = post_transaction(client, {
            "account_id": 99999999999999999999,
            "operation_type_id": 1,
            "amount": 50.0,
        })

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"


class TestValidation:
    """Test input validation; every failure is a 400."""

    def test_missing_idempotency_key(self, client, create_account):
        account_id = create_account()

        response = post_transaction(
            client,
            {"account_id": account_id, "operation_type_id": 1, "amount": 10.0},
            key=None,
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "MISSING_IDEMPOTENCY_KEY"

    def test_invalid_account_id(self, client):
        response = post_transaction(client, {
            "account_id": 0,
            "operation_type_id": 1,
            "amount": 10.0,
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_ACCOUNT_ID"

    @pytest.mark.parametrize("operation_type_id", [0, 5, -1])
    def test_invalid_operation_type(self, client, create_account, operation_type_id):
        account_id = create_account()

        response = post_transaction(client, {
            "account_id": account_id,
            "operation_type_id": operation_type_id,
            "amount": 10.0,
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_OPERATION_TYPE"

    def test_zero_amount(self, client, create_account):
        account_id = create_account()

        response = post_transaction(client, {
            "account_id": account_id,
            "operation_type_id": 4,
            "amount": 0.0,
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "ZERO_AMOUNT"

    def test_first_failing_check_wins(self, client):
        response = post_transaction(client, {
            "account_id": -3,
            "operation_type_id": 9,
            "amount": 0,
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_ACCOUNT_ID"

    def test_malformed_json(self, client):
        response = client.post(
            "/transactions",
            content="{'invalid': 'json'",
            headers={"Content-Type": "application/json", "Idempotency-Key": "bad-json"},
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_missing_required_fields(self, client):
        response = post_transaction(client, {"account_id": 1})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"


class TestIdempotency:
    """Test Idempotency-Key handling on transaction creation."""

    def test_idempotent_requests(self, client, create_account):
        account_id = create_account()
        payload = {"account_id": account_id, "operation_type_id": 1, "amount": 150.0}

        response1 = post_transaction(client, payload, key="idempotent_test_001")
        response2 = post_transaction(client, payload, key="idempotent_test_001")

        assert response1.status_code == 201
        assert response2.status_code == 201
        assert response1.content == response2.content

        listing = client.get(f"/accounts/{account_id}/transactions").json()
        assert listing["pagination"]["total"] == 1

    def test_different_idempotency_keys(self, client, create_account):
        account_id = create_account()
        payload = {"account_id": account_id, "operation_type_id": 4, "amount": 25.0}

        response1 = post_transaction(client, payload, key="multi_test_001")
        response2 = post_transaction(client, payload, key="multi_test_002")

        assert response1.status_code == 201
        assert response2.status_code == 201
        assert response1.json()["transaction_id"] != response2.json()["transaction_id"]

    def test_failed_request_is_not_cached(self, client, create_account):
        payload = {"account_id": 2, "operation_type_id": 1, "amount": 10.0}

        first = post_transaction(client, payload, key="retry-after-404")
        assert first.status_code == 404

        create_account("11111111111")
        create_account("22222222222")

        retry = post_transaction(client, payload, key="retry-after-404")
        assert retry.status_code == 201
        assert retry.json()["account_id"] == 2

    def test_replay_does_not_depend_on_body(self, client, create_account):
        account_id = create_account()

        first = post_transaction(
            client, {"account_id": account_id, "operation_type_id": 1, "amount": 10.0}, key="same-key"
        )
        second = post_transaction(
            client, {"account_id": account_id, "operation_type_id": 4, "amount": 99.0}, key="same-key"
        )

        assert second.status_code == 201
        assert second.json() == first.json()

    @pytest.mark.asyncio
    async def test_concurrent_requests_same_key(self, app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            created = await ac.post("/accounts", json={"document_number": "12345678900"})
            account_id = created.json()["account_id"]

            payload = {"account_id": account_id, "operation_type_id": 2, "amount": 75.25}
            results = await asyncio.gather(*[
                ac.post("/transactions", json=payload, headers={"Idempotency-Key": "concurrent-key"})
                for _ in range(5)
            ])

            assert all(r.status_code == 201 for r in results)
            assert len({r.content for r in results}) == 1

            listing = await ac.get(f"/accounts/{account_id}/transactions")
            assert listing.json()["pagination"]["total"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_different_keys(self, app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            created = await ac.post("/accounts", json={"document_number": "12345678900"})
            account_id = created.json()["account_id"]

            results = await asyncio.gather(*[
                ac.post(
                    "/transactions",
                    json={"account_id": account_id, "operation_type_id": 1, "amount": 10.0},
                    headers={"Idempotency-Key": f"concurrent_{i}"},
                )
                for i in range(10)
            ])

            assert all(r.status_code == 201 for r in results)
            assert len({r.json()["transaction_id"] for r in results}) == 10


class TestListTransactions:
    """Test paginated listing."""

    def test_list_with_pagination(self, client, create_account):
        account_id = create_account()
        for i, (op, amount) in enumerate([(1, 50.0), (4, 100.0)]):
            post_transaction(
                client,
                {"account_id": account_id, "operation_type_id": op, "amount": amount},
                key=f"list-{i}",
            )

        response = client.get(f"/accounts/{account_id}/transactions", params={"limit": 10, "offset": 0})

        assert response.status_code == 200
        data = response.json()
        assert data["pagination"] == {"total": 2, "limit": 10, "offset": 0, "pages": 1}
        assert [t["amount"] for t in data["transactions"]] == [100.0, -50.0]

    def test_default_pagination_on_empty_account(self, client, create_account):
        account_id = create_account()

        response = client.get(f"/accounts/{account_id}/transactions")

        assert response.status_code == 200
        data = response.json()
        assert data["transactions"] == []
        assert data["pagination"] == {"total": 0, "limit": 50, "offset": 0, "pages": 1}

    def test_page_count_rounds_up(self, client, create_account):
        account_id = create_account()
        for i in range(5):
            post_transaction(
                client,
                {"account_id": account_id, "operation_type_id": 3, "amount": 1.0},
                key=f"page-{i}",
            )

        response = client.get(f"/accounts/{account_id}/transactions", params={"limit": 2, "offset": 4})

        data = response.json()
        assert data["pagination"]["pages"] == 3
        assert len(data["transactions"]) == 1

    def test_unknown_account(self, client):
        response = client.get("/accounts/9999/transactions")

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}])
    def test_invalid_pagination(self, client, create_account, params):
        account_id = create_account()

        response = client.get(f"/accounts/{account_id}/transactions", params=params)

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAGINATION"

    def test_non_numeric_limit(self, client, create_account):
        account_id = create_account()

        response = client.get(f"/accounts/{account_id}/transactions", params={"limit": "ten"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_invalid_account_id(self, client):
        response = client.get("/accounts/0/transactions")

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_ACCOUNT_ID"

    def test_offset_beyond_storage_range(self, client, create_account):
        account_id = create_account()
        post_transaction(client, {"account_id": account_id, "operation_type_id": 4, "amount": 10.0})

        response = client.get(
            f"/accounts/{account_id}/transactions",
            params={"offset": 99999999999999999999},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["transactions"] == []
        assert data["pagination"]["total"] == 1
        assert data["pagination"]["offset"] == 99999999999999999999

    def test_account_id_beyond_storage_range(self, client):
        response = client.get("/accounts/99999999999999999999/transactions")

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"


class TestErrorHandling:
    """Test error handling scenarios."""

    def test_persistence_failure_is_generic(self, app, client, create_account):
        account_id = create_account()
        service = app.state.container.transaction_service
        service.transaction_repo.create = AsyncMock(side_effect=PersistenceFailure("create transaction"))

        with patch("main.logger") as mock_logger:
            response = post_transaction(client, {
                "account_id": account_id,
                "operation_type_id": 1,
                "amount": 10.0,
            })

        assert response.status_code == 500
        data = response.json()
        assert data["error_code"] == "PERSISTENCE_FAILURE"
        assert data["detail"] == "Internal server error"
        mock_logger.error.assert_called()

    def test_persistence_failure_releases_key(self, app, client, create_account):
        account_id = create_account()
        repo = app.state.container.transaction_service.transaction_repo
        original_create = repo.create
        repo.create = AsyncMock(side_effect=PersistenceFailure("create transaction"))
        payload = {"account_id": account_id, "operation_type_id": 1, "amount": 10.0}

        assert post_transaction(client, payload, key="flaky").status_code == 500
        assert app.state.container.idempotency.state("flaky") == "absent"

        repo.create = original_create
        assert post_transaction(client, payload, key="flaky").status_code == 201
        assert app.state.container.idempotency.state("flaky") == "completed"

    @patch('services.logger')
    def test_logging_on_error(self, mock_logger, client):
        response = post_transaction(client, {
            "account_id": 9999,
            "operation_type_id": 1,
            "amount": 100.0,
        })

        assert response.status_code == 404
        mock_logger.warning.assert_called()


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data

    def test_unknown_route(self, client):
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.json()["error_code"] == "HTTP_404"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
