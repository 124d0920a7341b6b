# schemas/events.py
# ============================================================================
# SHIPROCKET → TRIPLE WHALE BRIDGE — INBOUND EVENT SCHEMAS
# ============================================================================
# Purpose: Validate the webhook envelope once at the boundary, then parse the
# untyped ``data`` mapping into a typed variant per event category.
#
# PARSING RULES:
# - Numeric fields never fail: unparsable values become 0
# - Date fields never fail: unparsable values become None
# - "Present" means the key exists with a non-null, non-empty value
# - Unknown keys are kept (extra="allow") and still reachable as attributes
# ============================================================================

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# SECTION 1: LENIENT FIELD PARSERS
# ============================================================================

DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d %b %Y, %I:%M %p",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y",
)


def is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def parse_amount(value: Any) -> float:
    """Coerce a monetary/numeric field. Anything unusable is 0."""
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.replace(",", "").strip())
        except ValueError:
            return 0.0
    else:
        return 0.0

    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a timestamp. Offsets are kept so .date() is the sender's calendar date."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in DATE_FORMATS:
                try:
                    parsed = datetime.strptime(value.strip(), fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    else:
        return None

    return parsed


def _optional_amount(value: Any) -> Optional[float]:
    return parse_amount(value) if is_present(value) else None


def _optional_text(value: Any) -> Optional[str]:
    if not is_present(value):
        return None
    return str(value)


# ============================================================================
# SECTION 2: WEBHOOK ENVELOPE
# ============================================================================

class WebhookPayload(BaseModel):
    """Body of POST /webhooks/shiprocket."""
    event_type: str = Field(min_length=1)
    data: Dict[str, Any]
    timestamp: Optional[str] = None
    webhook_id: Optional[str] = None

    @field_validator("event_type")
    @classmethod
    def normalise_event_type(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event_type must not be blank")
        return v

    @field_validator("timestamp", "webhook_id", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Optional[str]:
        return _optional_text(v)


# ============================================================================
# SECTION 3: PAYMENT CLASSIFICATION
# ============================================================================

class PaymentStatus(str, Enum):
    COD = "COD"
    FULLY_PAID = "Fully_Paid"
    PARTIALLY_PAID = "Partially_Paid"
    UNPAID = "Unpaid"
    FREE_ORDER = "Free_Order"
    UNKNOWN = "Unknown"


class PaymentClassification(BaseModel):
    """Canonical payment status derived from raw order fields."""
    model_config = ConfigDict(frozen=True)

    status: PaymentStatus
    is_cod: bool = False
    is_fully_paid: bool = False
    is_partially_paid: bool = False
    is_prepaid: bool = False
    total_amount: float = 0.0
    paid_amount: float = 0.0
    cod_amount: float = 0.0
    outstanding_amount: float = 0.0


# ============================================================================
# SECTION 4: TYPED EVENT VARIANTS
# ============================================================================

class EventCategory(str, Enum):
    ORDER = "order"
    SHIPMENT = "shipment"
    RETURN = "return"
    UNKNOWN = "unknown"


EVENT_CATEGORIES: Dict[str, EventCategory] = {
    "order_created": EventCategory.ORDER,
    "order_placed": EventCategory.ORDER,
    "order_cancelled": EventCategory.ORDER,
    "cancelled": EventCategory.ORDER,
    "order_shipped": EventCategory.SHIPMENT,
    "shipment_created": EventCategory.SHIPMENT,
    "order_delivered": EventCategory.SHIPMENT,
    "delivered": EventCategory.SHIPMENT,
    "shipment_pickup": EventCategory.SHIPMENT,
    "in_transit": EventCategory.SHIPMENT,
    "out_for_delivery": EventCategory.SHIPMENT,
    "failed_delivery": EventCategory.SHIPMENT,
    "delivery_failed": EventCategory.SHIPMENT,
    "order_returned": EventCategory.RETURN,
    "rto": EventCategory.RETURN,
}


class EventData(BaseModel):
    """Fields every Shiprocket event may carry."""
    model_config = ConfigDict(extra="allow")

    order_id: Optional[str] = None
    shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    channel_name: Optional[str] = None
    payment_method: Optional[str] = None
    total_amount: Optional[float] = None
    order_created_date: Optional[datetime] = None

    @field_validator(
        "order_id", "shipment_id", "awb_code", "courier_name",
        "channel_name", "payment_method",
        mode="before",
    )
    @classmethod
    def lenient_text(cls, v: Any) -> Optional[str]:
        return _optional_text(v)

    @field_validator("total_amount", mode="before")
    @classmethod
    def lenient_amount(cls, v: Any) -> Optional[float]:
        return _optional_amount(v)

    @field_validator("order_created_date", mode="before")
    @classmethod
    def lenient_date(cls, v: Any) -> Optional[datetime]:
        return parse_datetime(v)


class ProductLine(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    sku: Optional[str] = None
    quantity: float = 1

    @field_validator("name", "sku", mode="before")
    @classmethod
    def lenient_text(cls, v: Any) -> Optional[str]:
        return _optional_text(v)

    @field_validator("quantity", mode="before")
    @classmethod
    def default_quantity(cls, v: Any) -> float:
        # Missing or zero quantity counts as one unit
        return parse_amount(v) or 1


class OrderEventData(EventData):
    order_date: Optional[datetime] = None
    cancelled_date: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    products: List[ProductLine] = Field(default_factory=list)

    @field_validator("order_date", "cancelled_date", mode="before")
    @classmethod
    def lenient_dates(cls, v: Any) -> Optional[datetime]:
        return parse_datetime(v)

    @field_validator("cancellation_reason", mode="before")
    @classmethod
    def lenient_reason(cls, v: Any) -> Optional[str]:
        return _optional_text(v)

    @field_validator("products", mode="before")
    @classmethod
    def lenient_products(cls, v: Any) -> List[Any]:
        if not isinstance(v, list):
            return []
        return [p if isinstance(p, dict) else {} for p in v]


class ShipmentEventData(EventData):
    shipped_date: Optional[datetime] = None
    delivered_date: Optional[datetime] = None
    pickup_date: Optional[datetime] = None
    shipping_charges: Optional[float] = None
    failure_reason: Optional[str] = None

    @field_validator("shipped_date", "delivered_date", "pickup_date", mode="before")
    @classmethod
    def lenient_dates(cls, v: Any) -> Optional[datetime]:
        return parse_datetime(v)

    @field_validator("shipping_charges", mode="before")
    @classmethod
    def lenient_charges(cls, v: Any) -> Optional[float]:
        return _optional_amount(v)

    @field_validator("failure_reason", mode="before")
    @classmethod
    def lenient_reason(cls, v: Any) -> Optional[str]:
        return _optional_text(v)


class ReturnEventData(EventData):
    returned_date: Optional[datetime] = None
    rto_date: Optional[datetime] = None
    return_type: Optional[str] = None
    return_reason: Optional[str] = None
    return_charges: Optional[float] = None
    # The payload's own event_type, which may mark an RTO
    event_type: Optional[str] = None

    @field_validator("returned_date", "rto_date", mode="before")
    @classmethod
    def lenient_dates(cls, v: Any) -> Optional[datetime]:
        return parse_datetime(v)

    @field_validator("return_type", "return_reason", "event_type", mode="before")
    @classmethod
    def lenient_reason(cls, v: Any) -> Optional[str]:
        return _optional_text(v)

    @field_validator("return_charges", mode="before")
    @classmethod
    def lenient_charges(cls, v: Any) -> Optional[float]:
        return _optional_amount(v)


TypedEventData = Union[OrderEventData, ShipmentEventData, ReturnEventData, EventData]

VARIANTS = {
    EventCategory.ORDER: OrderEventData,
    EventCategory.SHIPMENT: ShipmentEventData,
    EventCategory.RETURN: ReturnEventData,
    EventCategory.UNKNOWN: EventData,
}


@dataclass(frozen=True)
class ParsedEvent:
    """An event after boundary validation, ready for transformation."""
    event_type: str
    category: EventCategory
    data: TypedEventData
    payment: PaymentClassification


__all__ = [
    "is_present",
    "parse_amount",
    "parse_datetime",
    "WebhookPayload",
    "PaymentStatus",
    "PaymentClassification",
    "EventCategory",
    "EVENT_CATEGORIES",
    "EventData",
    "ProductLine",
    "OrderEventData",
    "ShipmentEventData",
    "ReturnEventData",
    "TypedEventData",
    "VARIANTS",
    "ParsedEvent",
]
