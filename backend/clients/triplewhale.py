# clients/triplewhale.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — TRIPLE WHALE CLIENT
# ============================================================================
# Delivers custom metrics to Triple Whale and reads reporting data back.
#
# AUTH:
# - x-api-key header when an API key is configured
# - Otherwise OAuth client-credentials with a cached bearer token
#
# DELIVERY:
# - Records are chunked (100 per request by default)
# - A failed chunk aborts the rest; partial delivery raises
#   PartialDeliveryError instead of being swallowed
# ============================================================================

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from clients.base import BaseApiClient, ensure_authenticated
from pipeline.errors import AuthenticationError, PartialDeliveryError, SyncError
from pipeline.resilience import RETRY_CONFIGS, CircuitBreaker, RetryPolicy
from schemas.metrics import AuthToken, DeliveryResult, MetricRecord
from settings import TripleWhaleConfig

METRICS_PATH = "/tw-metrics/metrics"
METRICS_DATA_PATH = "/tw-metrics/metrics-data"
TOKEN_PATH = "/oauth/token"
CURRENT_USER_PATH = "/users/api-keys/me"
ACCOUNT_INFO_PATH = "/account/info"
SUMMARY_PATH = "/summary-page/get-data"
ATTRIBUTION_PATH = "/attribution/get-orders-with-journeys-v2"
EXPORT_PATH = "/export/data"

DEFAULT_TOKEN_TTL_SECONDS = 3600
# Refresh slightly early so a token never expires mid-request
TOKEN_EXPIRY_MARGIN = timedelta(seconds=30)
DEFAULT_LOOKBACK = timedelta(days=30)


def chunked(records: Sequence[MetricRecord], size: int) -> List[List[MetricRecord]]:
    return [list(records[i:i + size]) for i in range(0, len(records), size)]


class TripleWhaleClient(BaseApiClient):
    """Triple Whale custom metrics API."""

    service_name = "triple_whale"
    health_path = CURRENT_USER_PATH

    def __init__(
        self,
        config: Optional[TripleWhaleConfig] = None,
        *,
        breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs,
    ):
        self.config = config or TripleWhaleConfig.from_env()
        super().__init__(
            self.config.api_url,
            timeout=self.config.timeout_seconds,
            breaker=breaker or CircuitBreaker(
                "triple_whale",
                failure_threshold=self.config.breaker_failure_threshold,
                reset_timeout=self.config.breaker_reset_timeout,
            ),
            retry_policy=retry_policy,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # AUTH
    # ------------------------------------------------------------------

    @property
    def uses_token(self) -> bool:
        return self.config.uses_oauth

    def static_headers(self) -> Dict[str, str]:
        if self.config.api_key:
            return {"x-api-key": self.config.api_key}
        return {}

    async def authenticate(self) -> AuthToken:
        """OAuth client-credentials exchange."""
        if not self.config.uses_oauth:
            raise AuthenticationError(
                "Triple Whale OAuth credentials are not configured",
                service=self.service_name,
            )

        response = await self._send(
            "POST",
            TOKEN_PATH,
            json={
                "grant_type": "client_credentials",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )
        ensure_authenticated(response, self.service_name)

        body = self._decode(response)
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise AuthenticationError(
                "Triple Whale token response carried no access_token",
                service=self.service_name,
                status_code=response.status_code,
            )

        expires_in = body.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS
        expires_at = self._now() + timedelta(seconds=float(expires_in)) - TOKEN_EXPIRY_MARGIN
        self._logger.info("oauth_authenticated", expires_in=expires_in)
        return AuthToken(value=access_token, expires_at=expires_at)

    # ------------------------------------------------------------------
    # METRICS
    # ------------------------------------------------------------------

    async def push_metrics(self, records: Sequence[MetricRecord]) -> DeliveryResult:
        """
        Push metric records in fixed-size chunks.

        Raises:
            The chunk's error when nothing was delivered yet, otherwise
            PartialDeliveryError chained from it.
        """
        if not records:
            return DeliveryResult(success=True)

        chunks = chunked(records, self.config.chunk_size)
        delivered = 0

        for index, chunk in enumerate(chunks):
            try:
                await self.post(
                    METRICS_PATH,
                    json={
                        "metrics": [record.to_payload() for record in chunk],
                        "timestamp": datetime.utcnow().isoformat() + "Z",
                    },
                )
            except SyncError as e:
                self._logger.error(
                    "metrics_chunk_failed",
                    chunk=index + 1,
                    chunks_total=len(chunks),
                    delivered=delivered,
                    total=len(records),
                    error=str(e),
                )
                if delivered == 0:
                    raise
                raise PartialDeliveryError(delivered, len(records), e) from e

            delivered += len(chunk)

        self._logger.info("metrics_pushed", count=delivered, chunks=len(chunks))
        return DeliveryResult(
            success=True,
            metrics_sent=delivered,
            chunks_sent=len(chunks),
            chunks_total=len(chunks),
        )

    def _date_window(self, start_date: Optional[str], end_date: Optional[str]) -> Dict[str, str]:
        today = self._now().date()
        return {
            "start_date": start_date or (today - DEFAULT_LOOKBACK).isoformat(),
            "end_date": end_date or today.isoformat(),
        }

    async def get_custom_metrics(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        metric_names: Optional[List[str]] = None,
    ) -> Any:
        params: Dict[str, Any] = self._date_window(start_date, end_date)
        if metric_names:
            params["metrics"] = ",".join(metric_names)
        return await self.get(METRICS_DATA_PATH, params=params, policy=RETRY_CONFIGS["read_only"])

    # ------------------------------------------------------------------
    # REPORTING
    # ------------------------------------------------------------------

    async def get_summary_data(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        granularity: str = "day",
        **filters: Any,
    ) -> Any:
        """Summary page data for a date window (last 30 days by default)."""
        body = {**self._date_window(start_date, end_date), "granularity": granularity, **filters}
        return await self.post(SUMMARY_PATH, json=body, policy=RETRY_CONFIGS["read_only"])

    async def get_attribution_data(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 1000,
        **filters: Any,
    ) -> Any:
        """Orders with their attribution journeys."""
        body = {**self._date_window(start_date, end_date), "limit": limit, **filters}
        return await self.post(ATTRIBUTION_PATH, json=body, policy=RETRY_CONFIGS["read_only"])

    async def export_data(
        self,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        format: str = "json",
        **filters: Any,
    ) -> Any:
        body = {**self._date_window(start_date, end_date), "format": format, **filters}
        return await self.post(EXPORT_PATH, json=body, policy=RETRY_CONFIGS["read_only"])

    # ------------------------------------------------------------------
    # ACCOUNT
    # ------------------------------------------------------------------

    async def get_current_user(self) -> Any:
        return await self.get(CURRENT_USER_PATH, policy=RETRY_CONFIGS["quick"])

    async def get_account_info(self) -> Any:
        return await self.get(ACCOUNT_INFO_PATH, policy=RETRY_CONFIGS["quick"])

    async def validate_api_key(self) -> bool:
        """True when the configured credentials are accepted."""
        try:
            await self.get_current_user()
            return True
        except SyncError as e:
            self._logger.warning("api_key_validation_failed", error=str(e))
            return False


__all__ = ["TripleWhaleClient", "chunked"]
