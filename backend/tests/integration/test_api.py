"""HTTP tests for the credit, usage, meter event and auto top-up endpoints."""
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient

from creditledger.container import Container
from tests.utils.factories import create_account, create_auto_top_up_config
from tests.utils.fakes import FakeRedis


@pytest.mark.asyncio
async def test_health(async_client: AsyncClient) -> None:
    """Test the liveness probe and the root endpoint."""
    response = await async_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

    root = await async_client.get("/")
    assert root.json()["service"] == "Credit Ledger"


@pytest.mark.asyncio
async def test_readiness(async_client: AsyncClient, fake_redis: FakeRedis) -> None:
    """Test that readiness reports each dependency and fails when Redis is down."""
    ready = await async_client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json()["checks"] == {"database": "connected", "redis": "connected"}

    fake_redis.available = False
    not_ready = await async_client.get("/health/ready")
    assert not_ready.status_code == 503
    assert not_ready.json()["checks"]["redis"] == "disconnected"


@pytest.mark.asyncio
async def test_queue_health(async_client: AsyncClient, container: Container) -> None:
    """Test queue health with the in-process worker disabled."""
    await container.queue.enqueue("cloud_credits", "cus_abc", 5, idempotency_key="health-1")

    response = await async_client.get("/health/queue")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["worker_alive"] is False
    assert body["live_mode"] is False
    assert body["rate_limit"] == 10
    assert body["stats"]["waiting"] == 1


@pytest.mark.asyncio
async def test_get_balance(async_client: AsyncClient, container: Container) -> None:
    """Test reading a balance with its buckets."""
    account = await create_account(container.session_factory)

    response = await async_client.get(f"/v1/accounts/{account.id}/balance")

    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["balance"]) == Decimal("100")
    assert Decimal(body["base_plan_credits"]) == Decimal("100")
    assert body["membership_tier"] == "pro"
    assert response.headers["X-Request-ID"].startswith("req_")


@pytest.mark.asyncio
async def test_get_balance_unknown_account(async_client: AsyncClient) -> None:
    """Test the structured 404 for a missing account, echoing the caller's request id."""
    response = await async_client.get(f"/v1/accounts/{uuid4()}/balance", headers={"X-Request-ID": "req_caller"})

    assert response.status_code == 404
    body = response.json()
    assert body["error"] == "NotFound"
    assert body["details"][0]["code"] == "account_not_found"
    assert body["request_id"] == "req_caller"
    assert response.headers["X-Request-ID"] == "req_caller"


@pytest.mark.asyncio
async def test_get_balance_invalid_uuid(async_client: AsyncClient) -> None:
    """Test that a malformed account id is a validation error."""
    response = await async_client.get("/v1/accounts/not-a-uuid/balance")

    assert response.status_code == 422
    assert response.json()["details"][0]["code"] == "invalid_uuid"


@pytest.mark.asyncio
async def test_deduct(async_client: AsyncClient, container: Container) -> None:
    """Test a successful deduction."""
    account = await create_account(container.session_factory)

    response = await async_client.post(
        f"/v1/accounts/{account.id}/credits/deduct",
        json={"amount": "12.5", "type": "ai_generation", "description": "Code generation"},
    )

    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["balance_after"]) == Decimal("87.5")
    assert Decimal(body["base_plan_deducted"]) == Decimal("12.5")
    assert body["transaction_id"] is not None


@pytest.mark.asyncio
async def test_deduct_minimum_balance_returns_402(async_client: AsyncClient, container: Container) -> None:
    """Test that breaking the minimum balance is 402 with max_affordable."""
    account = await create_account(
        container.session_factory, balance=Decimal("10"), base_plan_credits=Decimal("10")
    )

    response = await async_client.post(
        f"/v1/accounts/{account.id}/credits/deduct",
        json={"amount": "9.6", "description": "Deploy"},
    )

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "PaymentRequired"
    assert body["details"][0]["code"] == "minimum_balance_violation"
    assert Decimal(body["max_affordable"]) == Decimal("9.5")
    assert body["remediation"]


@pytest.mark.asyncio
async def test_deduct_insufficient_returns_402(async_client: AsyncClient, container: Container) -> None:
    """Test that an overdraw is 402 without max_affordable."""
    account = await create_account(container.session_factory, balance=Decimal("5"), base_plan_credits=Decimal("5"))

    response = await async_client.post(
        f"/v1/accounts/{account.id}/credits/deduct",
        json={"amount": "6", "description": "Usage"},
    )

    assert response.status_code == 402
    body = response.json()
    assert body["details"][0]["code"] == "insufficient_credits"
    assert "max_affordable" not in body


@pytest.mark.asyncio
async def test_deduct_negative_amount_is_rejected(async_client: AsyncClient, container: Container) -> None:
    """Test request validation of the amount."""
    account = await create_account(container.session_factory)

    response = await async_client.post(
        f"/v1/accounts/{account.id}/credits/deduct",
        json={"amount": "-1", "description": "Usage"},
    )

    assert response.status_code == 422
    assert response.json()["details"][0]["code"] == "invalid_amount"


@pytest.mark.asyncio
async def test_add_and_list_transactions(async_client: AsyncClient, container: Container) -> None:
    """Test adding purchased credits and listing the ledger."""
    account = await create_account(container.session_factory)

    added = await async_client.post(
        f"/v1/accounts/{account.id}/credits/add",
        json={"amount": "40", "type": "purchase", "description": "Credit pack", "bucket": "purchased"},
    )
    await async_client.post(
        f"/v1/accounts/{account.id}/credits/deduct",
        json={"amount": "1", "description": "Usage"},
    )
    listed = await async_client.get(f"/v1/accounts/{account.id}/transactions", params={"page_size": 1})
    purchases = await async_client.get(f"/v1/accounts/{account.id}/transactions", params={"type": "purchase"})

    assert added.status_code == 201
    assert Decimal(added.json()["balance_after"]) == Decimal("140")
    assert added.json()["metadata"]["bucket"] == "purchased"

    assert listed.status_code == 200
    assert listed.json()["total"] == 2
    assert len(listed.json()["items"]) == 1
    assert purchases.json()["total"] == 1
    assert purchases.json()["items"][0]["type"] == "purchase"


@pytest.mark.asyncio
async def test_list_transactions_bad_paging(async_client: AsyncClient, container: Container) -> None:
    """Test paging bounds."""
    account = await create_account(container.session_factory)

    response = await async_client.get(f"/v1/accounts/{account.id}/transactions", params={"page_size": 501})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_can_afford(async_client: AsyncClient, container: Container) -> None:
    """Test the read-only affordability check."""
    account = await create_account(
        container.session_factory, balance=Decimal("10"), base_plan_credits=Decimal("10")
    )

    ok = await async_client.get(f"/v1/accounts/{account.id}/credits/can-afford", params={"amount": "5"})
    blocked = await async_client.get(f"/v1/accounts/{account.id}/credits/can-afford", params={"amount": "9.6"})

    assert ok.json()["can_afford"] is True
    assert blocked.status_code == 200
    assert blocked.json()["can_afford"] is False
    assert Decimal(blocked.json()["max_affordable"]) == Decimal("9.5")


@pytest.mark.asyncio
async def test_usage_record_report_and_breakdown(async_client: AsyncClient, container: Container) -> None:
    """Test the usage lifecycle over HTTP."""
    account = await create_account(container.session_factory)
    base = f"/v1/accounts/{account.id}/usage"

    recorded = await async_client.post(base, json={"function_calls": 4000, "file_storage_bytes": 1024**3})
    breakdown = await async_client.get(f"{base}/breakdown")
    reported = await async_client.post(f"{base}/report")
    again = await async_client.post(f"{base}/report")
    late = await async_client.post(base, json={"function_calls": 1})

    assert recorded.status_code == 202
    assert recorded.json()["status"] == "pending"
    assert Decimal(recorded.json()["raw_credits"]) == Decimal("5.7")

    assert breakdown.json()["breakdown"]["total"] == 6
    assert breakdown.json()["breakdown"]["file_storage"]["unit"] == "GB-month"

    assert reported.status_code == 200
    assert reported.json()["status"] == "reported"
    assert reported.json()["queued"] == 2
    assert again.json()["queued"] == 0

    assert late.status_code == 409
    assert late.json()["details"][0]["code"] == "invalid_state_transition"


@pytest.mark.asyncio
async def test_usage_rejects_negative_counters(async_client: AsyncClient, container: Container) -> None:
    """Test validation of raw usage counters."""
    account = await create_account(container.session_factory)

    response = await async_client.post(f"/v1/accounts/{account.id}/usage", json={"function_calls": -5})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_enqueue_meter_event(async_client: AsyncClient) -> None:
    """Test enqueueing, idempotent re-sends and skipped zero values."""
    event = {"event_name": "cloud_credits", "external_customer_id": "cus_abc", "value": 5, "idempotency_key": "api-1"}

    first = await async_client.post("/v1/meter-events", json=event)
    second = await async_client.post("/v1/meter-events", json={**event, "value": 7})
    zero = await async_client.post("/v1/meter-events", json={**event, "value": 0, "idempotency_key": "api-2"})

    assert first.status_code == 202
    assert first.json() == {"job_id": "api-1", "queued": True}
    assert second.json() == {"job_id": "api-1", "queued": True}
    assert zero.json() == {"job_id": None, "queued": False}


@pytest.mark.asyncio
async def test_list_failed_meter_events(async_client: AsyncClient, container: Container) -> None:
    """Test the operator view of failed deliveries."""
    await container.queue.enqueue("cloud_credits", "cus_gone", 3, idempotency_key="api-failed")
    [job] = await container.queue.claim_due(1)
    await container.queue.mark_failed(job, "No such customer")

    response = await async_client.get("/v1/meter-events/failed")

    assert response.status_code == 200
    [failed] = response.json()
    assert failed["idempotency_key"] == "api-failed"
    assert failed["status"] == "failed"
    assert failed["last_error"] == "No such customer"


@pytest.mark.asyncio
async def test_auto_top_up_configuration(async_client: AsyncClient, container: Container) -> None:
    """Test GET/PUT/DELETE of the auto top-up configuration."""
    account = await create_account(container.session_factory)
    url = f"/v1/accounts/{account.id}/auto-top-up"

    missing = await async_client.get(url)
    too_small = await async_client.put(url, json={"threshold_credits": 100, "top_up_credits": 50})
    created = await async_client.put(
        url, json={"threshold_credits": 100, "top_up_credits": 1000, "payment_method_id": "pm_card"}
    )
    fetched = await async_client.get(url)
    disabled = await async_client.delete(url)

    assert missing.status_code == 404
    assert too_small.status_code == 400
    assert too_small.json()["details"][0]["code"] == "invalid_amount"
    assert created.status_code == 200
    assert created.json()["top_up_credits"] == 1000
    assert fetched.json()["payment_method_id"] == "pm_card"
    assert disabled.json()["enabled"] is False


@pytest.mark.asyncio
async def test_disable_auto_top_up_not_configured(async_client: AsyncClient, container: Container) -> None:
    """Test that disabling a missing configuration is 404."""
    account = await create_account(container.session_factory)

    response = await async_client.delete(f"/v1/accounts/{account.id}/auto-top-up")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_auto_top_up_config_visible_after_factory_insert(async_client: AsyncClient, container: Container) -> None:
    """Test reading a configuration written directly to the database."""
    account = await create_account(container.session_factory)
    await create_auto_top_up_config(container.session_factory, account.id, threshold_credits=250)

    response = await async_client.get(f"/v1/accounts/{account.id}/auto-top-up")

    assert response.status_code == 200
    assert response.json()["threshold_credits"] == 250
    assert response.json()["needs_manual_review"] is False
