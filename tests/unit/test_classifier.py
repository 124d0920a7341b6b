import pytest

from pipeline.classifier import categorize, determine_payment_status, parse_event
from schemas.events import (
    EventCategory,
    OrderEventData,
    PaymentStatus,
    ReturnEventData,
    ShipmentEventData,
)


@pytest.mark.parametrize(
    "data, status, outstanding",
    [
        ({"payment_method": "COD", "total_amount": "1000", "cod_amount": "1000"}, PaymentStatus.COD, 1000.0),
        ({"payment_method": "Cash on Delivery", "total_amount": 800}, PaymentStatus.COD, 800.0),
        ({"payment_mode": "cod", "total_amount": 500, "cod_amount": 300}, PaymentStatus.COD, 300.0),
        ({"total_amount": 900, "cod_amount": "450"}, PaymentStatus.COD, 450.0),
        ({"total_amount": 900, "is_cod": True}, PaymentStatus.COD, 900.0),
        ({"total_amount": 900, "cod": "1"}, PaymentStatus.COD, 900.0),
        ({"payment_method": "prepaid", "total_amount": 1000, "paid_amount": 1000}, PaymentStatus.FULLY_PAID, 0.0),
        ({"order_total": "1,000", "amount_paid": "1,200"}, PaymentStatus.FULLY_PAID, 0.0),
        ({"total_amount": 1000, "paid_amount": 400}, PaymentStatus.PARTIALLY_PAID, 600.0),
        ({"total_amount": 1000}, PaymentStatus.UNPAID, 1000.0),
        ({"total_amount": 0}, PaymentStatus.FREE_ORDER, 0.0),
        ({}, PaymentStatus.FREE_ORDER, 0.0),
        ({"total_amount": -50}, PaymentStatus.UNKNOWN, 0.0),
    ],
)
def test_decision_table(data, status, outstanding):
    result = determine_payment_status(data)
    assert result.status == status
    assert result.outstanding_amount == pytest.approx(outstanding)


def test_cod_takes_precedence_over_full_payment():
    result = determine_payment_status(
        {"payment_method": "COD", "total_amount": 500, "paid_amount": 500}
    )
    assert result.status == PaymentStatus.COD
    assert result.is_cod is True
    assert result.is_fully_paid is False


def test_fully_paid_is_prepaid():
    result = determine_payment_status({"total_amount": 250, "paid_amount": 250})
    assert result.is_fully_paid is True
    assert result.is_prepaid is True
    assert result.is_cod is False


def test_free_order_is_fully_paid_but_not_prepaid():
    result = determine_payment_status({"total_amount": "0"})
    assert result.is_fully_paid is True
    assert result.is_prepaid is False


def test_partially_paid_flags():
    result = determine_payment_status({"total_amount": 300, "paid_amount": 100})
    assert result.is_partially_paid is True
    assert result.is_fully_paid is False
    assert result.paid_amount == 100
    assert result.total_amount == 300


@pytest.mark.parametrize("garbage", ["abc", "NaN", "inf", True, None, [], {"x": 1}, ""])
def test_unparsable_amounts_count_as_zero(garbage):
    result = determine_payment_status({"total_amount": garbage, "paid_amount": garbage})
    assert result.total_amount == 0
    assert result.paid_amount == 0
    assert result.status == PaymentStatus.FREE_ORDER


def test_non_mapping_input_never_raises():
    assert determine_payment_status(None).status == PaymentStatus.FREE_ORDER
    assert determine_payment_status("order").status == PaymentStatus.FREE_ORDER


def test_false_cod_flag_is_ignored():
    result = determine_payment_status({"total_amount": 100, "paid_amount": 100, "is_cod": "false"})
    assert result.status == PaymentStatus.FULLY_PAID


SAMPLES = [
    {"payment_method": "COD", "total_amount": 100},
    {"payment_method": "upi", "total_amount": 100, "paid_amount": 100},
    {"total_amount": 100, "paid_amount": 10},
    {"total_amount": 100, "paid_amount": 0},
    {"total_amount": 0, "paid_amount": 10},
    {"total_amount": -1, "paid_amount": 5},
    {"cod_amount": 10, "paid_amount": 100, "total_amount": 10},
    {"total_amount": "bad", "cod": True},
]


@pytest.mark.parametrize("data", SAMPLES)
def test_flags_consistent_with_status(data):
    result = determine_payment_status(data)

    assert not (result.is_cod and result.is_fully_paid)
    assert result.is_cod == (result.status == PaymentStatus.COD)
    if result.is_fully_paid:
        assert result.status in (PaymentStatus.FULLY_PAID, PaymentStatus.FREE_ORDER)
    if result.is_partially_paid:
        assert result.status == PaymentStatus.PARTIALLY_PAID
    if result.is_prepaid:
        assert result.status == PaymentStatus.FULLY_PAID


def test_categorize():
    assert categorize("order_created") == EventCategory.ORDER
    assert categorize("delivered") == EventCategory.SHIPMENT
    assert categorize("rto") == EventCategory.RETURN
    assert categorize("weight_discrepancy") == EventCategory.UNKNOWN


def test_parse_event_builds_typed_variant():
    order = parse_event("order_created", {"order_id": 1234, "total_amount": "2,000", "order_date": "2026-03-01T09:00:00Z"})
    assert isinstance(order.data, OrderEventData)
    assert order.data.order_id == "1234"
    assert order.data.total_amount == 2000.0
    assert order.data.order_date.isoformat() == "2026-03-01T09:00:00+00:00"
    assert order.payment.status == PaymentStatus.UNPAID

    shipment = parse_event("order_shipped", {"shipped_date": "not a date", "shipping_charges": "x"})
    assert isinstance(shipment.data, ShipmentEventData)
    assert shipment.data.shipped_date is None
    assert shipment.data.shipping_charges == 0.0

    ret = parse_event("rto", {"return_charges": ""})
    assert isinstance(ret.data, ReturnEventData)
    assert ret.data.return_charges is None


def test_parse_event_keeps_unknown_fields():
    parsed = parse_event("order_created", {"order_id": "A1", "pickup_location": "Primary"})
    assert parsed.data.model_extra["pickup_location"] == "Primary"
