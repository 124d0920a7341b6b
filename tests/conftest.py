import hashlib
import hmac
from typing import Any, Dict, List, Optional

import pytest

from pipeline.resilience import CircuitBreaker
from schemas.metrics import DeliveryResult
from settings import Settings, ShiprocketConfig, SyncConfig, TripleWhaleConfig, WebhookConfig

WEBHOOK_SECRET = "whsec-test"


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class FakeSink:
    """Records every push; optionally fails."""

    def __init__(self, error: Optional[Exception] = None):
        self.calls: List[list] = []
        self.error = error

    async def push_metrics(self, records):
        self.calls.append(list(records))
        if self.error is not None:
            raise self.error
        return DeliveryResult(
            success=True,
            metrics_sent=len(records),
            chunks_sent=1 if records else 0,
            chunks_total=1 if records else 0,
        )


class FakeSource:
    """In-memory Shiprocket listing."""

    def __init__(self, orders: Optional[List[Dict[str, Any]]] = None, shipments: Optional[List[Dict[str, Any]]] = None):
        self.orders = orders or []
        self.shipments = shipments or []
        self.requests: List[Dict[str, Any]] = []

    async def _rows(self, rows, **filters):
        self.requests.append(filters)
        for row in rows:
            yield row

    def iter_orders(self, start_date=None, end_date=None, per_page=50, max_pages=20):
        return self._rows(self.orders, kind="orders", start_date=start_date, end_date=end_date)

    def iter_shipments(self, start_date=None, end_date=None, per_page=50, max_pages=20):
        return self._rows(self.shipments, kind="shipments", start_date=start_date, end_date=end_date)


class FakePlatformClient:
    """Stands in for a platform client on the HTTP surface."""

    def __init__(self, name: str, healthy: bool = True):
        self.name = name
        self.healthy = healthy
        self.breaker = CircuitBreaker(name)

    async def health_check(self):
        result = {"service": self.name, "status": "healthy" if self.healthy else "unhealthy"}
        if not self.healthy:
            result["error"] = f"{self.name} responded 500"
        return result

    async def validate_api_key(self):
        return self.healthy


@pytest.fixture
def settings():
    return Settings(
        shiprocket=ShiprocketConfig(
            api_key="ops@example.com",
            api_secret="sr-password",
            webhook_secret=WEBHOOK_SECRET,
        ),
        triple_whale=TripleWhaleConfig(api_key="tw-key"),
        webhook=WebhookConfig(verify_signature=True),
        sync=SyncConfig(batch_size=50, max_pages=5),
    )


@pytest.fixture
def fake_sink():
    return FakeSink()


@pytest.fixture
def fake_source():
    return FakeSource(
        orders=[
            {"order_id": "SR-1", "total_amount": "1,250.00", "status": "NEW",
             "channel_name": "Shopify", "payment_method": "prepaid", "paid_amount": "1250",
             "order_date": "2026-03-09T10:15:00"},
            {"order_id": "SR-2", "total_amount": "499", "status": "NEW",
             "channel_name": "Shopify", "payment_method": "cod",
             "created_at": "2026-03-09 18:40:00"},
        ],
        shipments=[
            {"shipment_id": 9001, "shipping_charges": "62.5", "courier_name": "Delhivery",
             "status": "PICKED UP", "created_at": "2026-03-09T12:00:00"},
        ],
    )
