# pipeline/transformer.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — METRIC TRANSFORMER
# ============================================================================
# Maps a classified Shiprocket event onto Triple Whale custom metrics.
#
# RULES:
# - Pure: a fresh list per call, no I/O, no shared state
# - Every metric carries source="shiprocket" and an "event" dimension
# - Unknown event types produce no metrics
# - Metric date is the calendar date of the event's own field, in its own
#   offset, else today (server local)
# - Durations are hours between two timestamps and are not clamped
# ============================================================================

from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from pipeline.classifier import determine_payment_status, parse_event
from schemas.events import (
    OrderEventData,
    ParsedEvent,
    PaymentClassification,
    ReturnEventData,
    ShipmentEventData,
    parse_amount,
    parse_datetime,
)
from schemas.metrics import MetricRecord

SOURCE = "shiprocket"
CURRENCY = "INR"
UNKNOWN = "unknown"


# ============================================================================
# SECTION 1: HELPERS
# ============================================================================

def _today() -> str:
    return date.today().isoformat()


def _metric_date(*candidates: Optional[datetime]) -> str:
    for candidate in candidates:
        if candidate is not None:
            return candidate.date().isoformat()
    return _today()


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _hours_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (_as_utc(end) - _as_utc(start)).total_seconds() / 3600


def _metric(name: str, value: float, day: str, event: str, **dimensions: Any) -> MetricRecord:
    return MetricRecord(
        metric_name=name,
        value=value,
        date=day,
        dimensions={"source": SOURCE, "event": event, **dimensions},
    )


def _payment_dimensions(payment: PaymentClassification) -> Dict[str, Any]:
    return {
        "payment_status": payment.status.value,
        "total_amount": payment.total_amount,
        "paid_amount": payment.paid_amount,
        "cod_amount": payment.cod_amount,
        "outstanding_amount": payment.outstanding_amount,
    }


# ============================================================================
# SECTION 2: PER-EVENT TRANSFORMS
# ============================================================================

def _order_created(event: ParsedEvent) -> List[MetricRecord]:
    data: OrderEventData = event.data
    payment = event.payment
    day = _metric_date(data.order_date)
    channel = data.channel_name or UNKNOWN
    ev = "order_created"

    metrics = [
        _metric(
            "shiprocket_orders_created", 1, day, ev,
            order_id=data.order_id,
            channel=channel,
            payment_method=data.payment_method or UNKNOWN,
            payment_status=payment.status.value,
        ),
        _metric(
            "shiprocket_payment_status", 1, day, ev,
            order_id=data.order_id,
            payment_method=data.payment_method or UNKNOWN,
            **_payment_dimensions(payment),
        ),
    ]

    if payment.is_cod:
        metrics.append(_metric(
            "shiprocket_cod_orders", 1, day, ev,
            order_id=data.order_id, channel=channel,
        ))
        metrics.append(_metric(
            "shiprocket_cod_amount", payment.outstanding_amount, day, ev,
            order_id=data.order_id, channel=channel, currency=CURRENCY,
        ))

    if payment.is_prepaid:
        metrics.append(_metric(
            "shiprocket_prepaid_orders", 1, day, ev,
            order_id=data.order_id, channel=channel,
        ))
        metrics.append(_metric(
            "shiprocket_prepaid_amount", payment.paid_amount, day, ev,
            order_id=data.order_id, channel=channel, currency=CURRENCY,
        ))

    if payment.is_partially_paid:
        metrics.append(_metric(
            "shiprocket_partially_paid_orders", 1, day, ev,
            order_id=data.order_id, channel=channel,
        ))
        metrics.append(_metric(
            "shiprocket_partial_payment_amount", payment.paid_amount, day, ev,
            order_id=data.order_id, currency=CURRENCY,
        ))
        metrics.append(_metric(
            "shiprocket_outstanding_amount", payment.outstanding_amount, day, ev,
            order_id=data.order_id, currency=CURRENCY,
        ))

    if data.total_amount is not None:
        metrics.append(_metric(
            "shiprocket_order_value", data.total_amount, day, ev,
            order_id=data.order_id, channel=channel, currency=CURRENCY,
        ))

    if data.products:
        metrics.append(_metric(
            "shiprocket_products_ordered", len(data.products), day, ev,
            order_id=data.order_id,
        ))
        metrics.append(_metric(
            "shiprocket_items_ordered", sum(p.quantity for p in data.products), day, ev,
            order_id=data.order_id,
        ))

    return metrics


def _order_shipped(event: ParsedEvent) -> List[MetricRecord]:
    data: ShipmentEventData = event.data
    day = _metric_date(data.shipped_date)
    courier = data.courier_name or UNKNOWN
    ev = "order_shipped"

    metrics = [
        _metric(
            "shiprocket_shipments_created", 1, day, ev,
            order_id=data.order_id, shipment_id=data.shipment_id, courier=courier,
        ),
    ]

    if data.shipping_charges is not None:
        metrics.append(_metric(
            "shiprocket_shipping_cost", data.shipping_charges, day, ev,
            order_id=data.order_id, shipment_id=data.shipment_id,
            courier=courier, currency=CURRENCY,
        ))

    processing = _hours_between(data.order_created_date, data.shipped_date)
    if processing is not None:
        metrics.append(_metric(
            "shiprocket_processing_time", processing, day, ev,
            order_id=data.order_id, unit="hours",
        ))

    return metrics


def _order_delivered(event: ParsedEvent) -> List[MetricRecord]:
    data: ShipmentEventData = event.data
    payment = event.payment
    day = _metric_date(data.delivered_date)
    courier = data.courier_name or UNKNOWN
    ev = "order_delivered"

    metrics = [
        _metric(
            "shiprocket_deliveries_successful", 1, day, ev,
            order_id=data.order_id, shipment_id=data.shipment_id, courier=courier,
        ),
    ]

    if payment.is_cod:
        metrics.append(_metric(
            "shiprocket_cod_collected", 1, day, ev,
            order_id=data.order_id, courier=courier,
        ))
        metrics.append(_metric(
            "shiprocket_cod_collection_amount", payment.outstanding_amount, day, ev,
            order_id=data.order_id, courier=courier, currency=CURRENCY,
        ))
        metrics.append(_metric(
            "shiprocket_payment_status_transition", 1, day, ev,
            order_id=data.order_id, from_status="COD", to_status="COD_Collected",
        ))

    delivery = _hours_between(data.shipped_date, data.delivered_date)
    if delivery is not None:
        metrics.append(_metric(
            "shiprocket_delivery_time", delivery, day, ev,
            order_id=data.order_id, courier=courier, unit="hours",
        ))

    fulfillment = _hours_between(data.order_created_date, data.delivered_date)
    if fulfillment is not None:
        metrics.append(_metric(
            "shiprocket_fulfillment_time", fulfillment, day, ev,
            order_id=data.order_id, unit="hours",
        ))

    return metrics


def _order_cancelled(event: ParsedEvent) -> List[MetricRecord]:
    data: OrderEventData = event.data
    day = _metric_date(data.cancelled_date)
    ev = "order_cancelled"

    metrics = [
        _metric(
            "shiprocket_orders_cancelled", 1, day, ev,
            order_id=data.order_id, reason=data.cancellation_reason or UNKNOWN,
        ),
    ]

    if data.total_amount is not None:
        metrics.append(_metric(
            "shiprocket_revenue_lost", data.total_amount, day, ev,
            order_id=data.order_id, currency=CURRENCY,
        ))

    return metrics


def is_rto(event: ParsedEvent) -> bool:
    data: ReturnEventData = event.data
    markers = (data.event_type, data.return_type, event.event_type)
    return any(m is not None and m.strip().lower() == "rto" for m in markers)


def _order_returned(event: ParsedEvent) -> List[MetricRecord]:
    data: ReturnEventData = event.data
    payment = event.payment
    day = _metric_date(data.returned_date, data.rto_date)
    rto = is_rto(event)
    ev = "rto" if rto else "return"

    metrics = [
        _metric(
            "shiprocket_rto_orders" if rto else "shiprocket_returns", 1, day, ev,
            order_id=data.order_id, shipment_id=data.shipment_id,
            reason=data.return_reason or UNKNOWN,
        ),
    ]

    if rto and payment.is_cod:
        metrics.append(_metric(
            "shiprocket_cod_failed_collections", 1, day, ev,
            order_id=data.order_id,
        ))
        metrics.append(_metric(
            "shiprocket_cod_failed_amount", payment.outstanding_amount, day, ev,
            order_id=data.order_id, currency=CURRENCY,
        ))
        metrics.append(_metric(
            "shiprocket_payment_status_transition", 1, day, ev,
            order_id=data.order_id, from_status="COD", to_status="COD_Failed",
        ))

    if data.return_charges is not None:
        metrics.append(_metric(
            "shiprocket_return_cost", data.return_charges, day, ev,
            order_id=data.order_id, currency=CURRENCY,
        ))

    return metrics


def _shipment_pickup(event: ParsedEvent) -> List[MetricRecord]:
    data: ShipmentEventData = event.data
    return [_metric(
        "shiprocket_pickups", 1, _metric_date(data.pickup_date), "pickup",
        shipment_id=data.shipment_id, courier=data.courier_name or UNKNOWN,
    )]


def _in_transit(event: ParsedEvent) -> List[MetricRecord]:
    data = event.data
    return [_metric(
        "shiprocket_in_transit", 1, _today(), "in_transit",
        shipment_id=data.shipment_id, order_id=data.order_id,
    )]


def _out_for_delivery(event: ParsedEvent) -> List[MetricRecord]:
    data = event.data
    return [_metric(
        "shiprocket_out_for_delivery", 1, _today(), "out_for_delivery",
        shipment_id=data.shipment_id, order_id=data.order_id,
    )]


def _failed_delivery(event: ParsedEvent) -> List[MetricRecord]:
    data: ShipmentEventData = event.data
    return [_metric(
        "shiprocket_failed_deliveries", 1, _today(), "failed_delivery",
        shipment_id=data.shipment_id, order_id=data.order_id,
        reason=data.failure_reason or UNKNOWN,
    )]


TRANSFORMS: Dict[str, Callable[[ParsedEvent], List[MetricRecord]]] = {
    "order_created": _order_created,
    "order_placed": _order_created,
    "order_shipped": _order_shipped,
    "shipment_created": _order_shipped,
    "order_delivered": _order_delivered,
    "delivered": _order_delivered,
    "order_cancelled": _order_cancelled,
    "cancelled": _order_cancelled,
    "order_returned": _order_returned,
    "rto": _order_returned,
    "shipment_pickup": _shipment_pickup,
    "in_transit": _in_transit,
    "out_for_delivery": _out_for_delivery,
    "failed_delivery": _failed_delivery,
    "delivery_failed": _failed_delivery,
}


# ============================================================================
# SECTION 3: PUBLIC API
# ============================================================================

def is_known_event(event_type: str) -> bool:
    return event_type in TRANSFORMS


def transform_event(event: ParsedEvent) -> List[MetricRecord]:
    handler = TRANSFORMS.get(event.event_type)
    if handler is None:
        return []
    return handler(event)


def transform(event_type: str, data: Mapping[str, Any]) -> List[MetricRecord]:
    """Raw event in, metric records out. Never raises on malformed fields."""
    return transform_event(parse_event(event_type, data))


# --- Bulk-fetch mode (manual / scheduled sync) ---

def transform_order_snapshot(order: Mapping[str, Any]) -> List[MetricRecord]:
    """One order from the Shiprocket orders listing → order value metric."""
    day = _metric_date(
        parse_datetime(order.get("order_date")) or parse_datetime(order.get("created_at"))
    )
    total = order.get("total_amount", order.get("total"))
    return [_metric(
        "shiprocket_order_value", parse_amount(total), day, "order_sync",
        order_id=_text(order.get("order_id", order.get("id"))),
        status=_text(order.get("status")),
        channel=_text(order.get("channel_name")),
        payment_status=determine_payment_status(order).status.value,
    )]


def transform_shipment_snapshot(shipment: Mapping[str, Any]) -> List[MetricRecord]:
    """One shipment from the Shiprocket shipments listing → shipment cost metric."""
    day = _metric_date(parse_datetime(shipment.get("created_at")))
    return [_metric(
        "shiprocket_shipment_cost", parse_amount(shipment.get("shipping_charges")), day,
        "shipment_sync",
        shipment_id=_text(shipment.get("shipment_id", shipment.get("id"))),
        courier=_text(shipment.get("courier_name")),
        status=_text(shipment.get("status")),
    )]


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


__all__ = [
    "transform",
    "transform_event",
    "transform_order_snapshot",
    "transform_shipment_snapshot",
    "is_known_event",
    "is_rto",
    "TRANSFORMS",
]
