"""Tests for the dispute and escrow REST routes.

These tests verify that:
    1. Domain errors map to 401/403/404/409/422 with a structured body.
    2. A dispute can be opened, worked and escalated over HTTP.
    3. Ledger reads are limited to the caller's transactions and to mediators.
"""

from __future__ import annotations

import pytest

CUSTOMER = {"X-User-Id": "1", "X-User-Roles": "client"}
PROVIDER = {"X-User-Id": "2", "X-User-Roles": "freelancer"}
MEDIATOR = {"X-User-Id": "50", "X-User-Roles": "mediator"}
OUTSIDER = {"X-User-Id": "77", "X-User-Roles": "client"}


async def _open(client, transaction_id, headers=CUSTOMER, **extra):
    body = {
        "transaction_id": str(transaction_id),
        "reason_code": "quality_issue",
        "summary": "Delivered work does not match the brief",
        **extra,
    }
    return await client.post("/api/v1/disputes", json=body, headers=headers)


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "healthy"
        assert "X-Request-ID" in response.headers


class TestOpenDispute:
    @pytest.mark.asyncio
    async def test_missing_user_header(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        response = await _open(client, txn.id, headers={})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_open_returns_case_with_transaction(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        response = await _open(client, txn.id, priority="high")

        assert response.status_code == 201
        body = response.json()
        assert body["stage"] == "intake"
        assert body["status"] == "open"
        assert body["priority"] == "high"
        assert body["transaction"]["status"] == "disputed"
        assert len(body["events"]) == 1

    @pytest.mark.asyncio
    async def test_second_open_is_conflict(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        await _open(client, txn.id)
        response = await _open(client, txn.id)
        assert response.status_code == 409
        assert response.json()["error"] == "CONFLICT"

    @pytest.mark.asyncio
    async def test_mediator_cannot_open(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        response = await _open(client, txn.id, headers=MEDIATOR)
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_unknown_priority_is_rejected(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        response = await _open(client, txn.id, priority="critical")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_naive_deadline_is_rejected(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        response = await _open(client, txn.id, customer_deadline_at="2025-01-01T00:00:00")
        assert response.status_code == 422


class TestDisputeEvents:
    @pytest.mark.asyncio
    async def test_outsider_gets_404(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.get(f"/api/v1/disputes/{case_id}", headers=OUTSIDER)
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_provider_cannot_resolve(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.post(
            f"/api/v1/disputes/{case_id}/events",
            json={
                "action_type": "status_change",
                "status": "settled",
                "transaction_resolution": "release",
            },
            headers=PROVIDER,
        )
        assert response.status_code == 403

        detail = (await client.get(f"/api/v1/disputes/{case_id}", headers=CUSTOMER)).json()
        assert detail["status"] == "open"
        assert detail["transaction"]["status"] == "disputed"

    @pytest.mark.asyncio
    async def test_mediator_advances_stage(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.post(
            f"/api/v1/disputes/{case_id}/events",
            json={"action_type": "stage_advanced", "notes": "Moving to mediation"},
            headers=MEDIATOR,
        )
        assert response.status_code == 201
        body = response.json()
        assert body["event"]["action_type"] == "stage_advanced"
        assert body["event"]["actor_type"] == "mediator"
        assert body["case"]["stage"] == "mediation"
        assert body["transaction"]["status"] == "disputed"

    @pytest.mark.asyncio
    async def test_stage_skip_is_422(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.post(
            f"/api/v1/disputes/{case_id}/events",
            json={"action_type": "stage_advanced", "stage": "resolved"},
            headers=MEDIATOR,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_STATE_TRANSITION"

    @pytest.mark.asyncio
    async def test_close_without_resolution_is_422(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.post(
            f"/api/v1/disputes/{case_id}/events",
            json={"action_type": "status_change", "status": "closed"},
            headers=MEDIATOR,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

        detail = (await client.get(f"/api/v1/disputes/{case_id}", headers=CUSTOMER)).json()
        assert detail["status"] == "open"
        assert detail["transaction"]["status"] == "disputed"

    @pytest.mark.asyncio
    async def test_field_outside_action_is_422(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.post(
            f"/api/v1/disputes/{case_id}/events",
            json={"action_type": "comment", "notes": "hi", "priority": "urgent"},
            headers=CUSTOMER,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_field_is_422(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.post(
            f"/api/v1/disputes/{case_id}/events",
            json={"action_type": "comment", "notes": "hi", "amount": "10"},
            headers=CUSTOMER,
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_evidence_upload(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.post(
            f"/api/v1/disputes/{case_id}/events",
            json={
                "action_type": "evidence_upload",
                "notes": "Original brief",
                "evidence": {"key": "disputes/brief.pdf", "content_type": "application/pdf"},
            },
            headers=PROVIDER,
        )
        assert response.status_code == 201
        assert response.json()["event"]["evidence_key"] == "disputes/brief.pdf"


class TestEscalations:
    @pytest.mark.asyncio
    async def test_breach_escalated_once(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        opened = await _open(client, txn.id, customer_deadline_at="2020-01-01T00:00:00Z")
        case_id = opened.json()["id"]

        first = await client.post(f"/api/v1/disputes/{case_id}/escalations", headers=MEDIATOR)
        second = await client.post(f"/api/v1/disputes/{case_id}/escalations", headers=MEDIATOR)

        assert first.status_code == 200
        assert len(first.json()) == 1
        assert first.json()[0]["action_type"] == "system_notice"
        assert second.json() == []

    @pytest.mark.asyncio
    async def test_party_cannot_escalate(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        case_id = (await _open(client, txn.id)).json()["id"]

        response = await client.post(f"/api/v1/disputes/{case_id}/escalations", headers=CUSTOMER)
        assert response.status_code == 403


class TestDashboardRoute:
    @pytest.mark.asyncio
    async def test_dashboard_with_status_filter(self, client, factory, customer) -> None:
        account = await factory.account()
        disputed = await factory.transaction(customer, account=account)
        await factory.transaction(customer, account=account)
        await _open(client, disputed.id, priority="urgent")

        response = await client.get(
            "/api/v1/disputes/dashboard", params={"status": "open"}, headers=CUSTOMER
        )
        assert response.status_code == 200
        body = response.json()
        assert body["summary"]["total_cases"] == 1
        assert body["summary"]["urgent_cases"] == 1
        assert len(body["eligible_transactions"]) == 1
        assert body["permissions"]["can_open"] is True

    @pytest.mark.asyncio
    async def test_invalid_status_filter(self, client) -> None:
        response = await client.get(
            "/api/v1/disputes/dashboard", params={"status": "archived"}, headers=CUSTOMER
        )
        assert response.status_code == 422


class TestEscrowRoutes:
    @pytest.mark.asyncio
    async def test_list_transactions_for_caller(self, client, factory, customer) -> None:
        await factory.transaction(customer)

        mine = await client.get("/api/v1/escrow/transactions", headers=PROVIDER)
        theirs = await client.get("/api/v1/escrow/transactions", headers=OUTSIDER)

        assert mine.status_code == 200
        assert len(mine.json()) == 1
        assert theirs.json() == []

    @pytest.mark.asyncio
    async def test_reconciliation_is_mediator_only(self, client, factory, customer) -> None:
        account = await factory.account()
        await factory.transaction(customer, account=account)
        url = f"/api/v1/escrow/accounts/{account.id}/reconciliation"

        forbidden = await client.get(url, headers=CUSTOMER)
        allowed = await client.get(url, headers=MEDIATOR)

        assert forbidden.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["is_balanced"] is True
        assert allowed.json()["held_transactions"] == 1

    @pytest.mark.asyncio
    async def test_overview_is_mediator_only(self, client, factory, customer) -> None:
        txn = await factory.transaction(customer)
        await _open(client, txn.id)

        forbidden = await client.get("/api/v1/escrow/overview", headers=CUSTOMER)
        allowed = await client.get("/api/v1/escrow/overview", headers=MEDIATOR)

        assert forbidden.status_code == 403
        assert allowed.status_code == 200
        body = allowed.json()
        assert body["totals_by_status"]["disputed"]["count"] == 1
        assert body["disputes_by_stage"]["intake"] == 1
        assert len(body["dispute_queue"]) == 1
        assert body["dispute_queue"][0]["transaction"]["id"] == str(txn.id)
        assert set(body["release_aging"]) == {"0-3_days", "4-7_days", "8-14_days", "15+_days"}
