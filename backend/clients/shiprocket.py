# clients/shiprocket.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — SHIPROCKET CLIENT
# ============================================================================
# Read-only access to Shiprocket orders and shipments for batch sync and
# health checks. Login exchanges the API user's email/password for a bearer
# token valid for 24 hours.
# ============================================================================

from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from clients.base import BaseApiClient, ensure_authenticated
from pipeline.errors import AuthenticationError
from pipeline.resilience import RETRY_CONFIGS, CircuitBreaker, RetryPolicy
from schemas.metrics import AuthToken
from settings import ShiprocketConfig

LOGIN_PATH = "/external/auth/login"
ORDERS_PATH = "/external/orders"
SHIPMENTS_PATH = "/external/courier/track/shipments"
CHANNELS_PATH = "/external/channels"


def page_items(body: Any) -> List[Dict[str, Any]]:
    """Rows of a listing response (``{"data": [...]}`` or a bare list)."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        data = body.get("data")
        if isinstance(data, list):
            return data
    return []


def total_pages(body: Any) -> Optional[int]:
    if not isinstance(body, dict):
        return None
    pagination = (body.get("meta") or {}).get("pagination") or {}
    pages = pagination.get("total_pages")
    try:
        return int(pages) if pages is not None else None
    except (TypeError, ValueError):
        return None


class ShiprocketClient(BaseApiClient):
    """Shiprocket external API."""

    service_name = "shiprocket"
    health_path = CHANNELS_PATH

    def __init__(
        self,
        config: Optional[ShiprocketConfig] = None,
        *,
        breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs,
    ):
        self.config = config or ShiprocketConfig.from_env()
        super().__init__(
            self.config.api_url,
            timeout=self.config.timeout_seconds,
            breaker=breaker or CircuitBreaker(
                "shiprocket",
                failure_threshold=self.config.breaker_failure_threshold,
                reset_timeout=self.config.breaker_reset_timeout,
            ),
            retry_policy=retry_policy,
            **kwargs,
        )

    async def authenticate(self) -> AuthToken:
        if not (self.config.api_key and self.config.api_secret):
            raise AuthenticationError(
                "Shiprocket credentials are not configured",
                service=self.service_name,
            )

        response = await self._send(
            "POST",
            LOGIN_PATH,
            json={"email": self.config.api_key, "password": self.config.api_secret},
        )
        ensure_authenticated(response, self.service_name)

        body = self._decode(response)
        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            raise AuthenticationError(
                "Shiprocket login response carried no token",
                service=self.service_name,
                status_code=response.status_code,
            )

        return AuthToken(
            value=token,
            expires_at=self._now() + timedelta(seconds=self.config.token_ttl_seconds),
        )

    # ------------------------------------------------------------------
    # ORDERS
    # ------------------------------------------------------------------

    @staticmethod
    def _listing_params(
        page: int,
        per_page: int,
        start_date: Optional[str],
        end_date: Optional[str],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "per_page": per_page}
        if start_date:
            params["start_date"] = start_date
        if end_date:
            params["end_date"] = end_date
        return params

    async def list_orders(
        self,
        page: int = 1,
        per_page: int = 50,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Any:
        return await self.get(
            ORDERS_PATH,
            params=self._listing_params(page, per_page, start_date, end_date),
            policy=RETRY_CONFIGS["read_only"],
        )

    async def get_order(self, order_id: Any) -> Any:
        return await self.get(f"{ORDERS_PATH}/show/{order_id}", policy=RETRY_CONFIGS["read_only"])

    # ------------------------------------------------------------------
    # SHIPMENTS
    # ------------------------------------------------------------------

    async def list_shipments(
        self,
        page: int = 1,
        per_page: int = 50,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Any:
        return await self.get(
            SHIPMENTS_PATH,
            params=self._listing_params(page, per_page, start_date, end_date),
            policy=RETRY_CONFIGS["read_only"],
        )

    async def get_shipment(self, shipment_id: Any) -> Any:
        return await self.get(
            f"/external/courier/track/shipment/{shipment_id}",
            policy=RETRY_CONFIGS["read_only"],
        )

    async def track_shipment(self, awb: str) -> Any:
        return await self.get(f"/external/courier/track/{awb}", policy=RETRY_CONFIGS["read_only"])

    # ------------------------------------------------------------------
    # PAGINATION
    # ------------------------------------------------------------------

    async def _paginate(self, fetch, per_page: int, max_pages: int, **filters) -> AsyncIterator[Dict[str, Any]]:
        page = 1
        while page <= max_pages:
            body = await fetch(page=page, per_page=per_page, **filters)
            rows = page_items(body)
            for row in rows:
                yield row

            pages = total_pages(body)
            if pages is not None:
                if page >= pages:
                    return
            elif len(rows) < per_page:
                return
            page += 1

        self._logger.warning("pagination_capped", max_pages=max_pages)

    def iter_orders(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        per_page: int = 50,
        max_pages: int = 20,
    ) -> AsyncIterator[Dict[str, Any]]:
        return self._paginate(
            self.list_orders, per_page, max_pages, start_date=start_date, end_date=end_date
        )

    def iter_shipments(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        per_page: int = 50,
        max_pages: int = 20,
    ) -> AsyncIterator[Dict[str, Any]]:
        return self._paginate(
            self.list_shipments, per_page, max_pages, start_date=start_date, end_date=end_date
        )


__all__ = ["ShiprocketClient", "page_items", "total_pages"]
