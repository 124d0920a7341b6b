"""
Event Classifier
================
Derives a canonical payment status from heterogeneous Shiprocket fields and
parses raw event data into its typed variant.

Decision order (first match wins):
    1. COD            payment text mentions cod/cash, cod_amount > 0, or a COD flag
    2. Fully_Paid     paid >= total > 0
    3. Partially_Paid 0 < paid < total
    4. Unpaid         paid == 0 < total
    5. Free_Order     total == 0
    6. Unknown        anything else (negative totals)

Never raises: absent or unparsable amounts count as 0.
"""

from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from schemas.events import (
    EVENT_CATEGORIES,
    VARIANTS,
    EventCategory,
    ParsedEvent,
    PaymentClassification,
    PaymentStatus,
    is_present,
    parse_amount,
)

COD_KEYWORDS = ("cod", "cash")
TRUTHY_FLAGS = {"1", "true", "yes", "y", "cod"}


def _first_amount(data: Mapping[str, Any], *keys: str) -> float:
    for key in keys:
        if is_present(data.get(key)):
            return parse_amount(data.get(key))
    return 0.0


def _flag_set(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_FLAGS
    return False


def _is_cod(data: Mapping[str, Any], cod_amount: float) -> bool:
    for key in ("payment_method", "payment_mode"):
        text = data.get(key)
        if isinstance(text, str) and any(k in text.lower() for k in COD_KEYWORDS):
            return True

    if cod_amount > 0:
        return True

    return _flag_set(data.get("is_cod")) or _flag_set(data.get("cod"))


def determine_payment_status(data: Mapping[str, Any]) -> PaymentClassification:
    """Classify an order's payment state from raw event data."""
    if not isinstance(data, Mapping):
        data = {}

    total = _first_amount(data, "total_amount", "order_total")
    paid = _first_amount(data, "paid_amount", "amount_paid")
    cod = parse_amount(data.get("cod_amount"))

    amounts = dict(total_amount=total, paid_amount=paid, cod_amount=cod)

    if _is_cod(data, cod):
        return PaymentClassification(
            status=PaymentStatus.COD,
            is_cod=True,
            outstanding_amount=cod if cod > 0 else total,
            **amounts,
        )

    if total > 0 and paid >= total:
        return PaymentClassification(
            status=PaymentStatus.FULLY_PAID,
            is_fully_paid=True,
            is_prepaid=True,
            outstanding_amount=0.0,
            **amounts,
        )

    if 0 < paid < total:
        return PaymentClassification(
            status=PaymentStatus.PARTIALLY_PAID,
            is_partially_paid=True,
            outstanding_amount=total - paid,
            **amounts,
        )

    if paid == 0 and total > 0:
        return PaymentClassification(
            status=PaymentStatus.UNPAID,
            outstanding_amount=total,
            **amounts,
        )

    if total == 0:
        return PaymentClassification(
            status=PaymentStatus.FREE_ORDER,
            is_fully_paid=True,
            outstanding_amount=0.0,
            **amounts,
        )

    return PaymentClassification(status=PaymentStatus.UNKNOWN, **amounts)


def categorize(event_type: str) -> EventCategory:
    return EVENT_CATEGORIES.get(event_type, EventCategory.UNKNOWN)


def parse_event(event_type: str, data: Mapping[str, Any]) -> ParsedEvent:
    """Validate raw data once into the typed variant for its category."""
    raw = dict(data) if isinstance(data, Mapping) else {}
    category = categorize(event_type)
    variant = VARIANTS[category]

    try:
        typed = variant.model_validate(raw)
    except PydanticValidationError:
        # Keys pydantic refuses as extras; keep the typed shape, drop the rest
        typed = variant()

    return ParsedEvent(
        event_type=event_type,
        category=category,
        data=typed,
        payment=determine_payment_status(raw),
    )


__all__ = ["determine_payment_status", "categorize", "parse_event"]
