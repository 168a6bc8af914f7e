"""
Tests for API Routes.

Exercises the HTTP surface end to end against the in-memory database:
auth, status codes, error mapping and response shapes.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from pointledger.api.routes import run_with_retry
from pointledger.exceptions import ConcurrentModificationError, DatabaseUnavailableError
from pointledger.models.api import PointKind
from pointledger.services.points import PointsService
from pointledger.services.reconciliation import ReconciliationService

# ============================================================================
# Auth
# ============================================================================


class TestServiceToken:
    """Tests for the service token dependency."""

    async def test_missing_token(self, anonymous_client):
        response = await anonymous_client.get("/v1/points/users/1/balance")
        assert response.status_code == 401

    async def test_wrong_token(self, anonymous_client):
        response = await anonymous_client.get(
            "/v1/points/users/1/balance", headers={"Authorization": "Bearer wrong"}
        )
        assert response.status_code == 401

    async def test_admin_requires_token(self, anonymous_client):
        response = await anonymous_client.post("/v1/points/admin/reconcile")
        assert response.status_code == 401

    async def test_health_is_public(self, anonymous_client):
        response = await anonymous_client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"


# ============================================================================
# User Endpoints
# ============================================================================


class TestUserEndpoints:
    """Tests for /v1/points/users/* endpoints."""

    async def test_open_account(self, client):
        response = await client.post("/v1/points/users/1")
        assert response.status_code == 200
        assert response.json() == {"user_id": 1, "free": 0, "paid": 0, "total": 0}

    async def test_acquire_then_balance(self, client):
        response = await client.post(
            "/v1/points/users/1/acquire",
            json={"kind": "paid", "amount": 100, "source": "purchase", "payment_reference": "p1"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["amount"] == 100
        assert body["kind"] == "paid"

        balance = await client.get("/v1/points/users/1/balance")
        assert balance.json()["paid"] == 100

    async def test_acquire_rejects_migration_source(self, client):
        response = await client.post(
            "/v1/points/users/1/acquire",
            json={"kind": "free", "amount": 10, "source": "migration"},
        )
        assert response.status_code == 422

    async def test_acquire_rejects_past_expiry(self, client):
        past = (datetime.now(UTC) - timedelta(days=1)).isoformat()
        response = await client.post(
            "/v1/points/users/1/acquire",
            json={"kind": "paid", "amount": 10, "source": "purchase", "expires_at": past},
        )
        assert response.status_code == 422

        balance = await client.get("/v1/points/users/1/balance")
        assert balance.json()["paid"] == 0

    async def test_acquire_rejects_non_positive_amount(self, client):
        response = await client.post(
            "/v1/points/users/1/acquire",
            json={"kind": "free", "amount": 0, "source": "referral"},
        )
        assert response.status_code == 422

    async def test_spend_free_before_paid(self, client, seed):
        await seed.balance(1, free=10, paid=40)

        response = await client.post(
            "/v1/points/users/1/spend", json={"cost": 25, "usage_type": "chat"}
        )

        assert response.status_code == 200
        body = response.json()
        assert (body["free_used"], body["paid_used"]) == (10, 15)
        assert (body["free_after"], body["paid_after"]) == (0, 25)

    async def test_spend_insufficient_is_402(self, client, seed):
        await seed.balance(1, free=3)

        response = await client.post(
            "/v1/points/users/1/spend", json={"cost": 5, "usage_type": "chat"}
        )

        assert response.status_code == 402
        assert "Available: 3" in response.json()["detail"]

    async def test_spend_negative_cost_is_422(self, client):
        response = await client.post(
            "/v1/points/users/1/spend", json={"cost": -1, "usage_type": "chat"}
        )
        assert response.status_code == 422

    async def test_spend_conflict_retried_then_409(self, client, seed):
        await seed.balance(1, free=10)

        with patch.object(
            PointsService,
            "spend",
            AsyncMock(side_effect=ConcurrentModificationError("points:1")),
        ) as spend:
            response = await client.post(
                "/v1/points/users/1/spend", json={"cost": 1, "usage_type": "chat"}
            )

        assert response.status_code == 409
        assert spend.await_count == 2

    async def test_database_unavailable_is_503(self, client):
        with patch.object(
            PointsService,
            "get_balance",
            AsyncMock(side_effect=DatabaseUnavailableError("refused")),
        ):
            response = await client.get("/v1/points/users/1/balance")
        assert response.status_code == 503

    async def test_attendance_once_per_day(self, client):
        first = await client.post("/v1/points/users/1/attendance")
        second = await client.post("/v1/points/users/1/attendance")

        assert first.status_code == 201
        assert first.json()["points_granted"] == 30
        assert second.status_code == 409

    async def test_balance_details(self, client, seed):
        await seed.entry(1, PointKind.FREE, 10, expires_in=timedelta(days=3))
        await seed.entry(1, PointKind.PAID, 20)

        response = await client.get("/v1/points/users/1/balance/details")

        body = response.json()
        assert (body["total_free"], body["total_paid"], body["total"]) == (10, 20, 30)
        assert [e["kind"] for e in body["entries"]] == ["free", "paid"]

    async def test_history(self, client, seed):
        base = datetime.now(UTC)
        await seed.entry(1, PointKind.FREE, 5, created_at=base - timedelta(minutes=5))
        await seed.balance(1, free=5)
        await client.post("/v1/points/users/1/spend", json={"cost": 2, "usage_type": "boost"})

        response = await client.get("/v1/points/users/1/history", params={"limit": 1})

        body = response.json()
        assert body["total_count"] == 2
        assert body["has_more"] is True
        assert body["items"][0]["category"] == "spend"
        assert body["items"][0]["usage_type"] == "boost"

    async def test_history_filter(self, client, seed):
        await seed.entry(1, PointKind.FREE, 5)

        response = await client.get("/v1/points/users/1/history", params={"kind": "spend"})

        assert response.json() == {"items": [], "total_count": 0, "has_more": False}


# ============================================================================
# Admin Endpoints
# ============================================================================


class TestAdminEndpoints:
    """Tests for /v1/points/admin/* endpoints."""

    async def test_reconcile_user(self, client, seed):
        await seed.entry(1, PointKind.FREE, 50)
        await seed.balance(1, free=30)

        response = await client.post("/v1/points/admin/reconcile/1")

        body = response.json()
        assert body["users_corrected"] == 1
        assert body["diffs"][0]["stored"] == 30
        assert body["diffs"][0]["actual"] == 50
        assert [(d["kind"], d["corrected"]) for d in body["diffs"]] == [
            ("free", True),
            ("paid", False),
        ]

    async def test_reconcile_user_reports_violations(self, client, seed):
        await seed.entry(1, PointKind.PAID, 5, balance=9)
        await seed.balance(1)

        response = await client.post("/v1/points/admin/reconcile/1")

        assert response.json()["integrity_violations"] == 1

    async def test_reconcile_all(self, client, seed):
        await seed.entry(1, PointKind.FREE, 50)
        await seed.balance(1, free=30)
        await seed.balance(2)

        response = await client.post("/v1/points/admin/reconcile")

        body = response.json()
        assert body["users_checked"] == 2
        assert body["users_corrected"] == 1
        assert len(body["diffs"]) == 4

    async def test_migration_twice_is_409(self, client, seed):
        await seed.balance(1, free=30, paid=5)

        first = await client.post("/v1/points/admin/migration")
        second = await client.post("/v1/points/admin/migration")

        assert first.status_code == 200
        assert first.json()["migrated_free"] == 30
        assert second.status_code == 409
        assert "X-Existing-Entry-ID" in second.headers

    async def test_expire(self, client, seed):
        await seed.entry(1, PointKind.FREE, 20, expires_in=timedelta(days=-1))
        await seed.balance(1, free=20)

        response = await client.post("/v1/points/admin/expire")

        assert response.json() == {"entries_expired": 1, "points_expired": 20, "entries_failed": 0}

    async def test_reconcile_unavailable_is_503(self, client):
        with patch.object(
            ReconciliationService,
            "reconcile_all",
            AsyncMock(side_effect=DatabaseUnavailableError("refused")),
        ):
            response = await client.post("/v1/points/admin/reconcile")
        assert response.status_code == 503


# ============================================================================
# Helpers and App
# ============================================================================


class TestRunWithRetry:
    """Tests for run_with_retry."""

    async def test_second_attempt_succeeds(self):
        operation = AsyncMock(side_effect=[ConcurrentModificationError("points:1"), "ok"])
        assert await run_with_retry(operation, "points:1") == "ok"
        assert operation.await_count == 2

    async def test_other_errors_not_retried(self):
        operation = AsyncMock(side_effect=DatabaseUnavailableError("down"))
        with pytest.raises(DatabaseUnavailableError):
            await run_with_retry(operation, "points:1")
        assert operation.await_count == 1


class TestAppEndpoints:
    """Tests for root and metrics endpoints."""

    async def test_root(self, client):
        response = await client.get("/")
        assert response.json()["status"] == "running"

    async def test_metrics(self, client):
        await client.get("/")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "points_http_requests_total" in response.text

    async def test_request_id_echoed(self, client):
        response = await client.get("/", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    async def test_request_id_generated(self, client):
        response = await client.get("/")
        assert len(response.headers["X-Request-ID"]) == 32

    async def test_metrics_use_route_template(self, client):
        await client.get("/v1/points/users/12345/balance")
        response = await client.get("/metrics")
        assert 'endpoint="/v1/points/users/{user_id}/balance"' in response.text
        assert "/users/12345/" not in response.text
