"""
Sync Orchestrator
=================
Drives one Shiprocket event (or one batch date range) through the pipeline:

    RECEIVED → VERIFIED → CLASSIFIED → TRANSFORMED → DELIVERED | REJECTED | FAILED

Webhook failures after intake are acknowledged with HTTP 200 and
``success: false`` so Shiprocket does not start its own retry storm. The
failure is only visible in logs and the metrics collector.
"""

import asyncio
import json
import re
import time
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import structlog
from pydantic import ValidationError as PydanticValidationError

from pipeline.classifier import parse_event
from pipeline.errors import ConfigurationError, SyncError, ValidationError
from pipeline.signature import verify_signature
from pipeline.transformer import (
    is_known_event,
    transform_event,
    transform_order_snapshot,
    transform_shipment_snapshot,
)
from schemas.events import WebhookPayload
from schemas.metrics import (
    AckResult,
    DeliveryResult,
    EventStage,
    MetricRecord,
    ProcessingOutcome,
    SyncReport,
)
from services.collector import MetricsCollector
from settings import Settings

logger = structlog.get_logger(component="orchestrator")

SYNC_TYPES = ("orders", "shipments", "all")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


# =============================================================================
# COLLABORATOR INTERFACES
# =============================================================================

class MetricSink(Protocol):
    async def push_metrics(self, records: Sequence[MetricRecord]) -> DeliveryResult: ...


class EventSource(Protocol):
    def iter_orders(self, start_date=None, end_date=None, per_page=50, max_pages=20): ...

    def iter_shipments(self, start_date=None, end_date=None, per_page=50, max_pages=20): ...


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _validation_details(error: PydanticValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())) or "body",
            "message": err.get("msg", "invalid"),
        }
        for err in error.errors()
    ]


def parse_sync_date(value: Any, field: str) -> date:
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        raise ValidationError(
            f"{field} must be a YYYY-MM-DD date",
            details=[{"field": field, "message": "expected YYYY-MM-DD"}],
        )
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(
            f"{field} is not a valid date",
            details=[{"field": field, "message": str(e)}],
        ) from e


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SyncOrchestrator:
    """Webhook intake and batch sync over a metric sink and an event source."""

    def __init__(
        self,
        sink: MetricSink,
        source: Optional[EventSource] = None,
        collector: Optional[MetricsCollector] = None,
        settings: Optional[Settings] = None,
    ):
        self.sink = sink
        self.source = source
        self.collector = collector or MetricsCollector()
        self.settings = settings or Settings()

    # -------------------------------------------------------------------------
    # WEBHOOK INTAKE
    # -------------------------------------------------------------------------

    def _reject(
        self,
        started: float,
        status_code: int,
        error: str,
        reason: str,
        details: Optional[List[Dict[str, Any]]] = None,
        event_type: Optional[str] = None,
    ) -> AckResult:
        self.collector.record_rejected()
        elapsed = _elapsed_ms(started)
        outcome = ProcessingOutcome(
            stage=EventStage.REJECTED,
            event_type=event_type,
            processing_time_ms=elapsed,
            rejection_reason=reason,
        )
        logger.warning("webhook_rejected", reason=reason, status_code=status_code, details=details)
        return AckResult(
            status_code=status_code,
            success=False,
            processing_time_ms=elapsed,
            error=error,
            details=details or [],
            outcome=outcome,
        )

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> AckResult:
        """
        Verify, validate and process one webhook delivery.

        Returns:
            AckResult with status 401 (bad signature), 400 (bad payload) or
            200 (acknowledged, whether or not delivery succeeded)
        """
        started = time.perf_counter()

        if not verify_signature(
            raw_body,
            signature,
            self.settings.shiprocket.webhook_secret,
            enabled=self.settings.webhook.verify_signature,
        ):
            return self._reject(started, 401, "Invalid signature", "invalid_signature")

        try:
            body = json.loads(raw_body)
        except ValueError as e:
            return self._reject(
                started, 400, "Invalid webhook data", "invalid_json",
                details=[{"field": "body", "message": str(e)}],
            )

        try:
            payload = WebhookPayload.model_validate(body)
        except PydanticValidationError as e:
            return self._reject(
                started, 400, "Invalid webhook data", "invalid_payload",
                details=_validation_details(e),
                event_type=body.get("event_type") if isinstance(body, dict) else None,
            )

        try:
            outcome = await self.process_event(payload.event_type, payload.data)
        except Exception as e:
            # Acknowledge anyway; Shiprocket must not retry application errors
            logger.exception("webhook_processing_crashed", event_type=payload.event_type)
            self.collector.record_failed(str(e))
            outcome = ProcessingOutcome(
                stage=EventStage.FAILED,
                event_type=payload.event_type,
                error=str(e),
            )

        elapsed = _elapsed_ms(started)
        outcome = outcome.model_copy(update={"processing_time_ms": elapsed})

        if outcome.stage == EventStage.DELIVERED:
            logger.info(
                "webhook_processed",
                event_type=payload.event_type,
                webhook_id=payload.webhook_id,
                metrics_generated=outcome.metrics_generated,
                duration_ms=elapsed,
            )
            return AckResult(
                status_code=200,
                success=True,
                metrics_generated=outcome.metrics_generated,
                processing_time_ms=elapsed,
                message="Webhook processed successfully",
                outcome=outcome,
            )

        return AckResult(
            status_code=200,
            success=False,
            metrics_generated=outcome.metrics_generated,
            processing_time_ms=elapsed,
            message="Webhook received but processing failed",
            error="Internal processing error",
            outcome=outcome,
        )

    async def process_event(self, event_type: str, data: Mapping[str, Any]) -> ProcessingOutcome:
        """Classify, transform and deliver one already-verified event."""
        started = time.perf_counter()

        parsed = parse_event(event_type, data)
        metrics = transform_event(parsed)

        if not is_known_event(event_type):
            logger.warning("unknown_event_type", event_type=event_type)

        log = logger.bind(
            event_type=event_type,
            order_id=parsed.data.order_id,
            shipment_id=parsed.data.shipment_id,
            payment_status=parsed.payment.status.value,
        )

        if not metrics:
            self.collector.record_processed(0)
            return ProcessingOutcome(
                stage=EventStage.DELIVERED,
                event_type=event_type,
                processing_time_ms=_elapsed_ms(started),
            )

        try:
            result = await self.sink.push_metrics(metrics)
        except SyncError as e:
            self.collector.record_failed(str(e))
            log.error(
                "event_delivery_failed",
                error=str(e),
                error_type=type(e).__name__,
                metrics_generated=len(metrics),
            )
            return ProcessingOutcome(
                stage=EventStage.FAILED,
                event_type=event_type,
                metrics_generated=len(metrics),
                processing_time_ms=_elapsed_ms(started),
                error=str(e),
            )

        self.collector.record_processed(result.metrics_sent)
        log.info("event_delivered", metrics_generated=len(metrics), metrics_sent=result.metrics_sent)
        return ProcessingOutcome(
            stage=EventStage.DELIVERED,
            event_type=event_type,
            metrics_generated=len(metrics),
            processing_time_ms=_elapsed_ms(started),
        )

    # -------------------------------------------------------------------------
    # BATCH SYNC
    # -------------------------------------------------------------------------

    async def _sync_orders(self, start_date: str, end_date: str) -> Tuple[int, int, int]:
        sync = self.settings.sync
        metrics: List[MetricRecord] = []
        count = 0
        async for order in self.source.iter_orders(
            start_date=start_date,
            end_date=end_date,
            per_page=sync.batch_size,
            max_pages=sync.max_pages,
        ):
            count += 1
            metrics.extend(transform_order_snapshot(order))

        result = await self.sink.push_metrics(metrics)
        return count, len(metrics), result.metrics_sent

    async def _sync_shipments(self, start_date: str, end_date: str) -> Tuple[int, int, int]:
        sync = self.settings.sync
        metrics: List[MetricRecord] = []
        count = 0
        async for shipment in self.source.iter_shipments(
            start_date=start_date,
            end_date=end_date,
            per_page=sync.batch_size,
            max_pages=sync.max_pages,
        ):
            count += 1
            metrics.extend(transform_shipment_snapshot(shipment))

        result = await self.sink.push_metrics(metrics)
        return count, len(metrics), result.metrics_sent

    async def sync_range(self, start_date: str, end_date: str, sync_type: str = "all") -> SyncReport:
        """
        Fetch orders and/or shipments for a date range and push their metrics.

        Raises:
            ValidationError: unknown sync type, malformed dates, start after end
            SyncError: any upstream or downstream failure
        """
        if sync_type not in SYNC_TYPES:
            raise ValidationError(
                "Invalid sync type",
                details=[{"field": "syncType", "message": f"must be one of {', '.join(SYNC_TYPES)}"}],
            )

        start = parse_sync_date(start_date, "startDate")
        end = parse_sync_date(end_date, "endDate")
        if start > end:
            raise ValidationError(
                "startDate must not be after endDate",
                details=[{"field": "startDate", "message": "after endDate"}],
            )

        log = logger.bind(sync_type=sync_type, start_date=start_date, end_date=end_date)
        log.info("sync_started")
        started = time.perf_counter()

        report = SyncReport(sync_type=sync_type, start_date=start_date, end_date=end_date)
        try:
            if self.source is None:
                raise ConfigurationError("No Shiprocket client configured for batch sync")
            if sync_type == "orders":
                orders = await self._sync_orders(start_date, end_date)
                shipments = (0, 0, 0)
            elif sync_type == "shipments":
                orders = (0, 0, 0)
                shipments = await self._sync_shipments(start_date, end_date)
            else:
                orders, shipments = await asyncio.gather(
                    self._sync_orders(start_date, end_date),
                    self._sync_shipments(start_date, end_date),
                )
        except SyncError as e:
            self.collector.record_error(str(e))
            log.error("sync_failed", error=str(e), error_type=type(e).__name__)
            raise

        report = report.model_copy(update={
            "orders": orders[0],
            "shipments": shipments[0],
            "metrics_generated": orders[1] + shipments[1],
            "metrics_synced": orders[2] + shipments[2],
        })
        self.collector.record_sync(report.metrics_synced)
        log.info(
            "sync_completed",
            orders=report.orders,
            shipments=report.shipments,
            metrics_synced=report.metrics_synced,
            duration_ms=_elapsed_ms(started),
        )
        return report


__all__ = ["SyncOrchestrator", "MetricSink", "EventSource", "SYNC_TYPES", "parse_sync_date"]
