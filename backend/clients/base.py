# clients/base.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — AUTHENTICATED API CLIENT BASE
# ============================================================================
# Shared plumbing for the Shiprocket and Triple Whale clients:
#
# - One httpx.AsyncClient per platform, created in initialize()
# - Bearer token cache guarded by an asyncio.Lock with a double-check, so a
#   refresh in flight is never duplicated by concurrent callers
# - Every call runs as breaker.call(retry_with_backoff(attempt))
# - A 401 on a token-authenticated call refreshes the token and replays the
#   request once per logical call, ahead of the generic retry counter
# - httpx transport errors surface as TransientRemoteError
# ============================================================================

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
import structlog

from pipeline.errors import AuthenticationError, TransientRemoteError, error_for_status
from pipeline.resilience import RETRY_CONFIGS, CircuitBreaker, RetryPolicy, retry_with_backoff
from schemas.metrics import AuthToken
from settings import ServerConfig


class BaseApiClient:
    """Authenticated, breaker-guarded HTTP client for one external platform."""

    service_name = "api"
    health_path = "/"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(self.service_name)
        self.retry_policy = retry_policy or RETRY_CONFIGS["standard"]

        self._transport = transport
        self._now = now
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[AuthToken] = None
        self._token_lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="api_client", service=self.service_name)

    # ------------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the HTTP client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Content-Type": "application/json",
                "User-Agent": ServerConfig.USER_AGENT,
            },
        )
        self._logger.info("client_initialized", base_url=self.base_url)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{self.service_name} client used before initialize()")
        return self._client

    # ------------------------------------------------------------------
    # AUTH (override in subclasses)
    # ------------------------------------------------------------------

    @property
    def uses_token(self) -> bool:
        """True when requests carry a bearer token that can be refreshed."""
        return True

    def static_headers(self) -> Dict[str, str]:
        return {}

    async def authenticate(self) -> AuthToken:
        """Exchange credentials for a fresh token."""
        raise NotImplementedError

    def _token_valid(self, token: Optional[AuthToken]) -> bool:
        return token is not None and token.is_valid(self._now())

    async def _ensure_token(self) -> AuthToken:
        token = self._token
        if self._token_valid(token):
            return token

        async with self._token_lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if self._token_valid(token):
                return token
            self._token = await self.authenticate()
            self._logger.info("token_refreshed", expires_at=self._token.expires_at.isoformat())
            return self._token

    async def _refresh_token(self, stale: Optional[AuthToken]) -> AuthToken:
        """Replace a token the server rejected, unless someone already did."""
        async with self._token_lock:
            if self._token is not None and self._token is not stale and self._token_valid(self._token):
                return self._token
            self._token = await self.authenticate()
            self._logger.info("token_reauthenticated", expires_at=self._token.expires_at.isoformat())
            return self._token

    async def _auth_headers(self) -> Tuple[Dict[str, str], Optional[AuthToken]]:
        headers = dict(self.static_headers())
        if not self.uses_token:
            return headers, None
        token = await self._ensure_token()
        headers["Authorization"] = f"Bearer {token.value}"
        return headers, token

    # ------------------------------------------------------------------
    # REQUESTS
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        started = time.perf_counter()
        try:
            response = await self.client.request(method, path, headers=headers, params=params, json=json)
        except httpx.TransportError as e:
            self._logger.warning(
                "api_call_failed",
                method=method,
                path=path,
                error=type(e).__name__,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            raise TransientRemoteError(
                f"{self.service_name} unreachable: {e}",
                service=self.service_name,
            ) from e

        self._logger.info(
            "api_call",
            method=method,
            path=path,
            status=response.status_code,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """
        Make one logical, authenticated call.

        Returns:
            Decoded JSON body

        Raises:
            BreakerOpenError, AuthenticationError, TransientRemoteError,
            PermanentRemoteError
        """
        replayed = False

        async def attempt() -> Any:
            nonlocal replayed
            headers, token = await self._auth_headers()
            response = await self._send(method, path, headers=headers, params=params, json=json)

            if response.status_code == 401 and self.uses_token and not replayed:
                replayed = True
                self._logger.warning("token_rejected_replaying", method=method, path=path)
                fresh = await self._refresh_token(token)
                headers["Authorization"] = f"Bearer {fresh.value}"
                response = await self._send(method, path, headers=headers, params=params, json=json)

            if response.is_error:
                raise error_for_status(
                    self.service_name,
                    response.status_code,
                    response.text,
                    context=f"{method} {path}",
                )
            return self._decode(response)

        async def guarded() -> Any:
            return await retry_with_backoff(
                attempt,
                policy or self.retry_policy,
                operation=f"{self.service_name} {method} {path}",
            )

        return await self.breaker.call(guarded)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request("GET", path, params=params, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs) -> Any:
        return await self.request("POST", path, json=json, **kwargs)

    # ------------------------------------------------------------------
    # HEALTH
    # ------------------------------------------------------------------

    async def health_check(self) -> Dict[str, Any]:
        """Lightweight authenticated call. Never raises."""
        try:
            await self.get(self.health_path, policy=RETRY_CONFIGS["quick"])
            return {
                "service": self.service_name,
                "status": "healthy",
                "timestamp": datetime.utcnow().isoformat(),
            }
        except Exception as e:
            self._logger.error("health_check_failed", error=str(e))
            return {
                "service": self.service_name,
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.utcnow().isoformat(),
            }


def ensure_authenticated(response: httpx.Response, service: str) -> None:
    """Credential exchange responses: 4xx means bad credentials."""
    if response.status_code in (400, 401, 403):
        raise AuthenticationError(
            f"{service} rejected credentials",
            service=service,
            status_code=response.status_code,
            response_text=response.text[:500] or None,
        )
    if response.is_error:
        raise error_for_status(service, response.status_code, response.text, context="authentication")


__all__ = ["BaseApiClient", "ensure_authenticated"]
