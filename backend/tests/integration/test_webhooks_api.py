"""Integration tests for the webhook HTTP API."""
import time
import uuid

import pytest
from httpx import AsyncClient

from enrollment_webhooks.services import signature
from utils.factories import EnrollmentPayloadFactory, WebhookFactory


async def _register(async_client: AsyncClient, **overrides) -> dict:
    response = await async_client.post("/v1/webhooks", json=WebhookFactory.create(overrides))
    assert response.status_code == 201
    return response.json()


def _host(url: str) -> str:
    return url.split("/")[2]


@pytest.mark.asyncio
async def test_register_webhook(async_client: AsyncClient) -> None:
    """Registration returns the id, a generated secret and the supported events."""
    data = await _register(async_client)

    assert uuid.UUID(data["webhook_id"])
    assert len(data["secret"]) >= 32
    assert "enrollment.created" in data["supported_events"]


@pytest.mark.asyncio
async def test_register_rejects_plain_http(async_client: AsyncClient) -> None:
    response = await async_client.post(
        "/v1/webhooks",
        json={"url": "http://partner.example.com/hooks", "events": ["enrollment.created"]},
    )

    assert response.status_code == 400
    data = response.json()
    assert data["error"] == "InvalidURL"
    assert data["details"][0]["field"] == "url"
    assert data["request_id"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url",
    ["https://[::1/hook", "https://partner.example.com:99999/hooks", "https://partner.example.com:port/hooks"],
)
async def test_register_rejects_malformed_url(async_client: AsyncClient, url: str) -> None:
    response = await async_client.post("/v1/webhooks", json={"url": url, "events": ["enrollment.created"]})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidURL"


@pytest.mark.asyncio
async def test_register_rejects_unknown_event(async_client: AsyncClient) -> None:
    response = await async_client.post(
        "/v1/webhooks",
        json={"url": "https://partner.example.com/hooks", "events": ["enrollment.exploded"]},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidEvents"


@pytest.mark.asyncio
async def test_register_missing_url_is_validation_error(async_client: AsyncClient) -> None:
    response = await async_client.post("/v1/webhooks", json={"events": ["enrollment.created"]})

    assert response.status_code == 422
    data = response.json()
    assert data["error"] == "ValidationError"
    assert data["details"][0]["code"] == "missing_required_field"


@pytest.mark.asyncio
async def test_get_webhook_hides_secret(async_client: AsyncClient) -> None:
    created = await _register(async_client)

    response = await async_client.get(f"/v1/webhooks/{created['webhook_id']}")

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == created["webhook_id"]
    assert data["status"] == "active"
    assert "secret" not in data


@pytest.mark.asyncio
async def test_get_unknown_webhook_returns_404(async_client: AsyncClient) -> None:
    response = await async_client.get(f"/v1/webhooks/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


@pytest.mark.asyncio
async def test_list_webhooks(async_client: AsyncClient) -> None:
    for _ in range(3):
        await _register(async_client)

    response = await async_client.get("/v1/webhooks", params={"page": 1, "page_size": 2})

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 3
    assert len(data["items"]) == 2


@pytest.mark.asyncio
async def test_update_webhook(async_client: AsyncClient) -> None:
    created = await _register(async_client)

    response = await async_client.put(
        f"/v1/webhooks/{created['webhook_id']}",
        json={"events": ["document.uploaded", "document.processed"]},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["events"] == ["document.uploaded", "document.processed"]
    assert data["url"].startswith("https://")


@pytest.mark.asyncio
async def test_delete_is_idempotent(async_client: AsyncClient) -> None:
    created = await _register(async_client)
    path = f"/v1/webhooks/{created['webhook_id']}"

    first = await async_client.delete(path)
    second = await async_client.delete(path)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["deleted"] is True
    assert (await async_client.get(path)).status_code == 404


@pytest.mark.asyncio
async def test_rotate_secret(async_client: AsyncClient) -> None:
    created = await _register(async_client)

    response = await async_client.post(f"/v1/webhooks/{created['webhook_id']}/rotate-secret")

    assert response.status_code == 200
    assert response.json()["new_secret"] != created["secret"]


@pytest.mark.asyncio
async def test_verify_signature(async_client: AsyncClient) -> None:
    created = await _register(async_client)
    payload = {"event": "enrollment.created", "data": EnrollmentPayloadFactory.create()}
    header = signature.sign(created["secret"], int(time.time()), payload)
    path = f"/v1/webhooks/{created['webhook_id']}/verify-signature"

    valid = await async_client.post(path, json=payload, headers={"X-Webhook-Signature": header})
    tampered = await async_client.post(
        path,
        json={**payload, "event": "enrollment.completed"},
        headers={"X-Webhook-Signature": header},
    )

    assert valid.status_code == 200
    assert valid.json()["valid"] is True
    assert tampered.status_code == 401
    assert tampered.json()["error"] == "SignatureInvalid"


@pytest.mark.asyncio
async def test_dispatch_sends_signed_body(async_client: AsyncClient, endpoints) -> None:
    """The subscriber receives exactly the signed compact JSON body."""
    created = await _register(async_client)

    response = await async_client.post(
        "/v1/webhooks/events",
        json={"event": "enrollment.created", "payload": {"id": "abc"}},
    )

    assert response.status_code == 202
    assert response.json()["delivered"] == 1

    request = endpoints.requests[0]
    assert request.content == b'{"event":"enrollment.created","data":{"id":"abc"}}'
    assert request.headers["Content-Type"] == "application/json"
    assert signature.verify(
        created["secret"],
        request.headers["X-Webhook-Signature"],
        {"event": "enrollment.created", "data": {"id": "abc"}},
    )


@pytest.mark.asyncio
async def test_dispatch_unknown_event_returns_400(async_client: AsyncClient) -> None:
    response = await async_client.post("/v1/webhooks/events", json={"event": "enrollment.exploded", "payload": {}})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidEvents"


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures(async_client: AsyncClient, endpoints) -> None:
    created = await _register(async_client)
    webhook = (await async_client.get(f"/v1/webhooks/{created['webhook_id']}")).json()
    endpoints.statuses[_host(webhook["url"])] = 500
    event = {"event": "enrollment.created", "payload": {"id": "abc"}}

    for _ in range(5):
        report = (await async_client.post("/v1/webhooks/events", json=event)).json()
        assert report["failed"] == 1

    status_response = await async_client.get(f"/v1/webhooks/{created['webhook_id']}/delivery-status")
    data = status_response.json()
    assert data["delivery_status"]["circuit_state"] == "open"
    assert data["delivery_status"]["consecutive_failures"] == 5
    assert data["delivery_status"]["circuit_opened_at"] is not None
    assert data["delivery_status"]["pending_retries"] == 5
    assert data["health_metrics"]["total_deliveries"] == 5
    assert data["health_metrics"]["successful_deliveries"] == 0
    assert data["health_metrics"]["status"] == "degraded"

    sixth = (await async_client.post("/v1/webhooks/events", json=event)).json()
    assert sixth["circuit_broken"] == 1
    assert len(endpoints.requests) == 5


@pytest.mark.asyncio
async def test_delivery_status_reports_healthy_webhook(async_client: AsyncClient) -> None:
    created = await _register(async_client)
    await async_client.post("/v1/webhooks/events", json={"event": "enrollment.created", "payload": {"id": "abc"}})

    data = (await async_client.get(f"/v1/webhooks/{created['webhook_id']}/delivery-status")).json()

    assert data["delivery_status"]["circuit_state"] == "closed"
    assert data["delivery_status"]["circuit_opened_at"] is None
    assert data["health_metrics"]["health_score"] == 1.0
    assert data["health_metrics"]["status"] == "healthy"


@pytest.mark.asyncio
async def test_failed_deliveries_listing(async_client: AsyncClient, endpoints) -> None:
    created = await _register(async_client)
    webhook = (await async_client.get(f"/v1/webhooks/{created['webhook_id']}")).json()
    endpoints.unreachable.add(_host(webhook["url"]))

    await async_client.post("/v1/webhooks/events", json={"event": "enrollment.created", "payload": {"id": "abc"}})
    response = await async_client.get(
        f"/v1/webhooks/{created['webhook_id']}/failed-deliveries",
        params={"outcome": "failed"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["outcome"] == "failed"
    assert data["items"][0]["error"].startswith("HTTP error:")


@pytest.mark.asyncio
async def test_test_delivery_succeeds_with_rate_limit_headers(async_client: AsyncClient) -> None:
    created = await _register(async_client)

    response = await async_client.post(
        f"/v1/webhooks/{created['webhook_id']}/test",
        json={"event": "enrollment.completed", "payload": {"id": "abc"}},
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "delivered"
    assert response.headers["X-RateLimit-Limit"] == "100"
    assert response.headers["X-RateLimit-Remaining"] == "99"


@pytest.mark.asyncio
async def test_test_delivery_rate_limited(async_client: AsyncClient) -> None:
    created = await _register(async_client)
    path = f"/v1/webhooks/{created['webhook_id']}/test"

    for _ in range(100):
        assert (await async_client.post(path)).status_code == 200

    response = await async_client.post(path)

    assert response.status_code == 429
    assert response.json()["error"] == "Too Many Requests"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert int(response.headers["Retry-After"]) > 0


@pytest.mark.asyncio
async def test_test_delivery_reports_failure_then_open_circuit(async_client: AsyncClient, endpoints) -> None:
    created = await _register(async_client)
    webhook = (await async_client.get(f"/v1/webhooks/{created['webhook_id']}")).json()
    endpoints.statuses[_host(webhook["url"])] = 500
    path = f"/v1/webhooks/{created['webhook_id']}/test"

    for _ in range(5):
        response = await async_client.post(path)
        assert response.status_code == 502
        assert response.json()["http_status"] == 500

    response = await async_client.post(path)

    assert response.status_code == 503
    assert response.json()["message"] == "Circuit breaker is open"


@pytest.mark.asyncio
async def test_test_delivery_unknown_webhook_returns_404(async_client: AsyncClient) -> None:
    response = await async_client.post(f"/v1/webhooks/{uuid.uuid4()}/test")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_request_id_propagates_to_delivery(async_client: AsyncClient, endpoints) -> None:
    await _register(async_client)

    response = await async_client.post(
        "/v1/webhooks/events",
        json={"event": "enrollment.created", "payload": {"id": "abc"}},
        headers={"X-Request-ID": "req-test-123"},
    )

    assert response.headers["X-Request-ID"] == "req-test-123"
    assert endpoints.requests[0].headers["X-Request-ID"] == "req-test-123"


@pytest.mark.asyncio
async def test_health_check(async_client: AsyncClient) -> None:
    response = await async_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_metrics_exposed(async_client: AsyncClient) -> None:
    await _register(async_client)
    await async_client.post("/v1/webhooks/events", json={"event": "enrollment.created", "payload": {"id": "abc"}})

    response = await async_client.get("/metrics/")

    assert response.status_code == 200
    assert "webhook_deliveries_total" in response.text


@pytest.mark.asyncio
async def test_readiness_checks_database_and_redis(async_client: AsyncClient) -> None:
    response = await async_client.get("/health/ready")

    assert response.status_code == 200
    data = response.json()
    assert data["ready"] is True
    assert data["checks"] == {"database": "connected", "redis": "connected"}
