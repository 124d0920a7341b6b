import json
from dataclasses import replace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.dependencies import ServiceContainer
from api.middleware import RateLimitMiddleware
from api.server import create_app
from conftest import FakePlatformClient, FakeSink, FakeSource, sign
from pipeline.errors import BreakerOpenError, TransientRemoteError
from pipeline.orchestrator import SyncOrchestrator
from services.collector import MetricsCollector
from settings import RateLimitConfig


def _container(settings, sink=None, source=None, shiprocket_healthy=True, triple_whale_healthy=True):
    collector = MetricsCollector()
    orchestrator = SyncOrchestrator(
        sink or FakeSink(),
        source if source is not None else FakeSource(orders=[{"order_id": "SR-1", "total_amount": 100}]),
        collector,
        settings,
    )
    return ServiceContainer(
        settings=settings,
        collector=collector,
        shiprocket=FakePlatformClient("shiprocket", healthy=shiprocket_healthy),
        triple_whale=FakePlatformClient("triple_whale", healthy=triple_whale_healthy),
        orchestrator=orchestrator,
    )


@pytest.fixture
def container(settings):
    return _container(settings)


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client


def _webhook(client, payload, signature=None, header="X-Shiprocket-Signature"):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json"}
    if signature is None:
        signature = sign(body)
    if signature:
        headers[header] = signature
    return client.post("/webhooks/shiprocket", content=body, headers=headers)


ORDER = {
    "event_type": "order_created",
    "data": {"order_id": "A1", "total_amount": "1000", "payment_method": "COD", "cod_amount": "1000"},
}


class TestWebhookEndpoint:
    def test_accepts_signed_event(self, client, container):
        response = _webhook(client, ORDER)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["metricsGenerated"] == 5
        assert "processingTime" in body
        assert response.headers["X-Request-ID"]
        assert "X-Response-Time-Ms" in response.headers
        assert len(container.orchestrator.sink.calls) == 1

    def test_authorization_header_fallback(self, client):
        response = _webhook(client, ORDER, header="Authorization")
        assert response.status_code == 200

    def test_rejects_bad_signature(self, client, container):
        response = _webhook(client, ORDER, signature="sha256=" + "0" * 64)

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert container.orchestrator.sink.calls == []

    def test_rejects_malformed_payload(self, client):
        response = _webhook(client, {"event_type": "order_created"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid webhook data"
        assert body["details"]

    def test_delivery_failure_is_acknowledged(self, settings):
        container = _container(settings, sink=FakeSink(error=TransientRemoteError("down", service="triple_whale")))
        with TestClient(create_app(container)) as client:
            response = _webhook(client, ORDER)

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "Internal processing error"

    def test_unknown_provider(self, client):
        response = client.post("/webhooks/shopify", content=b"{}")
        assert response.status_code == 404

    def test_request_id_is_echoed(self, client):
        response = client.get("/webhooks/shiprocket/health", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["service"] == "shiprocket-webhook-handler"


class TestHealthAndMetrics:
    def test_health_all_up(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["version"] == "1.0.0"
        assert set(body["services"]) == {"shiprocket", "triple_whale"}

    def test_health_degraded(self, settings):
        with TestClient(create_app(_container(settings, triple_whale_healthy=False))) as client:
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["services"]["triple_whale"]["status"] == "unhealthy"

    def test_metrics_reports_counters_and_breakers(self, client):
        _webhook(client, ORDER)
        _webhook(client, ORDER, signature="sha256=bad")

        body = client.get("/metrics").json()

        assert body["counters"]["events_processed"] == 1
        assert body["counters"]["events_rejected"] == 1
        assert body["counters"]["metrics_synced"] == 5
        assert body["circuit_breakers"]["shiprocket"]["state"] == "CLOSED"
        assert body["circuit_breakers"]["triple_whale"]["failure_count"] == 0

    def test_connection_test(self, settings):
        with TestClient(create_app(_container(settings, shiprocket_healthy=False))) as client:
            body = client.get("/api/test-connections").json()

        assert body["success"] is False
        assert body["results"]["shiprocket"]["status"] == "failed"
        assert body["results"]["triple_whale"]["status"] == "connected"


class TestManualSync:
    def test_runs_sync(self, client):
        response = client.post(
            "/api/sync/manual",
            json={"startDate": "2026-03-01", "endDate": "2026-03-09", "syncType": "orders"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Manual sync completed"
        assert body["result"]["orders"] == 1
        assert body["result"]["metrics_synced"] == 1

    def test_invalid_sync_type(self, client):
        response = client.post(
            "/api/sync/manual",
            json={"startDate": "2026-03-01", "endDate": "2026-03-09", "syncType": "returns"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid sync type"

    def test_missing_dates(self, client):
        response = client.post("/api/sync/manual", json={"syncType": "all"})
        assert response.status_code == 400

    def test_open_breaker_maps_to_503(self, settings):
        container = _container(settings, sink=FakeSink(error=BreakerOpenError("triple_whale", retry_after=5.0)))
        with TestClient(create_app(container)) as client:
            response = client.post(
                "/api/sync/manual",
                json={"startDate": "2026-03-01", "endDate": "2026-03-01", "syncType": "orders"},
            )

        assert response.status_code == 503
        assert response.json()["retry_after"] == 5.0

    def test_remote_failure_maps_to_502(self, settings):
        container = _container(settings, sink=FakeSink(error=TransientRemoteError("down", service="triple_whale")))
        with TestClient(create_app(container)) as client:
            response = client.post(
                "/api/sync/manual",
                json={"startDate": "2026-03-01", "endDate": "2026-03-01", "syncType": "orders"},
            )

        assert response.status_code == 502
        assert response.json()["error"] == "TransientRemoteError"


class TestRateLimit:
    def _client(self, settings, **limits):
        limited = replace(settings, rate_limit=RateLimitConfig(**limits))
        return TestClient(create_app(_container(limited)))

    def test_api_routes_return_429_over_the_limit(self, settings):
        with self._client(settings, api_max_requests=2) as client:
            first = client.get("/api/test-connections")
            second = client.get("/api/test-connections")
            third = client.get("/api/test-connections")

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"

        assert third.status_code == 429
        assert third.json()["error"] == "Too many requests"
        assert int(third.headers["Retry-After"]) > 0
        assert third.headers["X-Request-ID"]

    def test_webhooks_have_their_own_limit(self, settings):
        with self._client(settings, api_max_requests=1, webhook_max_requests=1) as client:
            assert _webhook(client, ORDER).status_code == 200
            limited = _webhook(client, ORDER)
            api = client.get("/api/test-connections")

        assert limited.status_code == 429
        assert limited.json()["error"] == "Webhook rate limit exceeded"
        assert api.status_code == 200

    def test_health_and_metrics_are_not_limited(self, settings):
        with self._client(settings, api_max_requests=1, webhook_max_requests=1) as client:
            responses = [client.get("/metrics") for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert "X-RateLimit-Limit" not in responses[0].headers

    def test_disabled(self, settings):
        with self._client(settings, enabled=False, api_max_requests=1) as client:
            statuses = [client.get("/api/test-connections").status_code for _ in range(3)]

        assert statuses == [200, 200, 200]

    def test_window_resets(self):
        clock = {"now": 0.0}
        app = FastAPI()
        app.add_middleware(
            RateLimitMiddleware,
            config=RateLimitConfig(api_max_requests=1, api_window_seconds=60),
            clock=lambda: clock["now"],
        )

        @app.get("/api/ping")
        async def ping():
            return {"ok": True}

        with TestClient(app) as client:
            assert client.get("/api/ping").status_code == 200
            blocked = client.get("/api/ping")
            clock["now"] = 61.0
            assert client.get("/api/ping").status_code == 200

        assert blocked.status_code == 429
        assert blocked.headers["X-RateLimit-Reset"] == "60"
