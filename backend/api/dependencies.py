# api/dependencies.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — SERVICE CONTAINER
# ============================================================================
# Everything the HTTP surface needs, built once per process by the app
# lifespan. Tests hand a container of fakes to create_app() instead.
# ============================================================================

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Request

from clients.shiprocket import ShiprocketClient
from clients.triplewhale import TripleWhaleClient
from pipeline.orchestrator import SyncOrchestrator
from pipeline.resilience import RetryPolicy
from services.collector import MetricsCollector
from settings import Settings
from tasks.scheduled_sync import ScheduledSync


@dataclass
class ServiceContainer:
    settings: Settings
    collector: MetricsCollector
    shiprocket: Any
    triple_whale: Any
    orchestrator: SyncOrchestrator
    scheduler: Optional[ScheduledSync] = None

    async def start(self) -> None:
        for client in (self.shiprocket, self.triple_whale):
            initialize = getattr(client, "initialize", None)
            if initialize is not None:
                await initialize()
        if self.scheduler is not None:
            self.scheduler.start()

    async def aclose(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        for client in (self.shiprocket, self.triple_whale):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_container(settings: Optional[Settings] = None) -> ServiceContainer:
    """Wire real clients, orchestrator and scheduler from settings."""
    settings = settings or Settings.from_env()
    collector = MetricsCollector()

    standard = RetryPolicy(
        max_attempts=settings.retry.max_attempts,
        base_delay=settings.retry.delay_seconds,
        backoff_factor=settings.retry.backoff_factor,
    )
    shiprocket = ShiprocketClient(settings.shiprocket, retry_policy=standard)
    triple_whale = TripleWhaleClient(settings.triple_whale, retry_policy=standard)

    orchestrator = SyncOrchestrator(
        sink=triple_whale,
        source=shiprocket,
        collector=collector,
        settings=settings,
    )

    return ServiceContainer(
        settings=settings,
        collector=collector,
        shiprocket=shiprocket,
        triple_whale=triple_whale,
        orchestrator=orchestrator,
        scheduler=ScheduledSync(orchestrator, settings.sync),
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency."""
    return request.app.state.container
