from datetime import datetime, timezone

import pytest

from app.modules.billing.domain.billing.billing_shared import Provider
from app.modules.billing.domain.billing.events import BillingEventKind
from app.modules.billing.domain.billing.stripe_adapter import (
    map_stripe_status,
    parse_stripe_event,
)
from app.shared.core.exceptions import MalformedWebhookError
from tests.utils import stripe_event, stripe_invoice, stripe_subscription


def test_subscription_created_snapshot():
    event = parse_stripe_event(
        stripe_event(
            "customer.subscription.created",
            stripe_subscription(metadata={"userId": "u-1"}),
            event_id="evt_sub_created",
        )
    )

    assert event.provider == Provider.STRIPE
    assert event.kind == BillingEventKind.SUBSCRIPTION_CREATED
    assert event.event_id == "evt_sub_created"
    assert event.created_at == 1700000100

    snap = event.subscription
    assert snap.external_id == "sub_stripe_1"
    assert snap.status == "active"
    assert snap.customer_id == "cus_stripe_1"
    assert snap.user_id == "u-1"
    assert snap.plan_external_id == "prod_pro"
    assert snap.price_id == "price_pro_monthly"
    assert snap.amount == 49900
    assert snap.currency == "INR"
    assert snap.interval == "month"
    assert snap.current_period_start == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert snap.current_period_end == datetime.fromtimestamp(1702592000, tz=timezone.utc)
    assert event.subscription_external_id == "sub_stripe_1"


def test_expanded_product_and_item_level_periods():
    obj = stripe_subscription(product={"id": "prod_expanded", "object": "product"})
    del obj["current_period_start"]
    del obj["current_period_end"]
    obj["items"]["data"][0]["current_period_start"] = 1710000000
    obj["items"]["data"][0]["current_period_end"] = 1712592000

    snap = parse_stripe_event(stripe_event("customer.subscription.updated", obj)).subscription

    assert snap.plan_external_id == "prod_expanded"
    assert snap.current_period_start == datetime.fromtimestamp(1710000000, tz=timezone.utc)
    assert snap.current_period_end == datetime.fromtimestamp(1712592000, tz=timezone.utc)


def test_missing_fields_stay_none():
    obj = {"id": "sub_bare", "object": "subscription"}
    snap = parse_stripe_event(stripe_event("customer.subscription.updated", obj)).subscription

    assert snap.status is None
    assert snap.amount is None
    assert snap.interval is None
    assert snap.current_period_end is None
    assert snap.metadata == {}


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("active", "active"),
        ("trialing", "trialing"),
        ("past_due", "past_due"),
        ("canceled", "canceled"),
        ("paused", "paused"),
        ("incomplete", "pending"),
        ("incomplete_expired", "canceled"),
        ("unpaid", "past_due"),
        ("something_new", None),
        (None, None),
    ],
)
def test_status_mapping(raw, expected):
    assert map_stripe_status(raw) == expected


def test_invoice_snapshot():
    event = parse_stripe_event(
        stripe_event("invoice.payment_failed", stripe_invoice(next_payment_attempt=1700086400))
    )

    assert event.kind == BillingEventKind.INVOICE_PAYMENT_FAILED
    inv = event.invoice
    assert inv.external_id == "in_1"
    assert inv.document_type == "invoice"
    assert inv.subscription_id == "sub_stripe_1"
    assert inv.number == "GYM-0001"
    assert inv.amount_paid == 49900
    assert inv.currency == "INR"
    assert inv.attempt_count == 1
    assert inv.download_url.endswith(".pdf")
    assert inv.next_payment_attempt == datetime.fromtimestamp(1700086400, tz=timezone.utc)
    assert event.subscription_external_id == "sub_stripe_1"


def test_invoice_subscription_from_parent_details():
    obj = stripe_invoice(
        subscription=None,
        parent={"subscription_details": {"subscription": "sub_nested"}},
    )
    event = parse_stripe_event(stripe_event("invoice.finalized", obj))
    assert event.invoice.subscription_id == "sub_nested"


def test_checkout_completed_snapshot():
    obj = {
        "id": "cs_1",
        "customer": "cus_1",
        "subscription": "sub_1",
        "metadata": {"user_id": "u-9"},
        "customer_details": {"email": "Owner@Gym.example"},
    }
    checkout = parse_stripe_event(stripe_event("checkout.session.completed", obj)).checkout

    assert checkout.session_id == "cs_1"
    assert checkout.customer_id == "cus_1"
    assert checkout.subscription_id == "sub_1"
    assert checkout.user_id == "u-9"
    assert checkout.customer_email == "Owner@Gym.example"


def test_customer_updated_snapshot():
    event = parse_stripe_event(
        stripe_event("customer.updated", {"id": "cus_1", "email": "a@b.example", "name": "A"})
    )
    assert event.kind == BillingEventKind.CUSTOMER_UPDATED
    assert event.customer.email == "a@b.example"
    assert event.subscription_external_id is None


def test_unknown_event_type_is_unknown_kind():
    event = parse_stripe_event(stripe_event("charge.refunded", {"id": "ch_1"}))
    assert event.kind == BillingEventKind.UNKNOWN
    assert event.subscription is None
    assert event.invoice is None


@pytest.mark.parametrize(
    "envelope",
    [
        {"id": "evt_1", "data": {"object": {"id": "sub_1"}}},
        {"type": "customer.subscription.updated", "data": {"object": {"id": "sub_1"}}},
        {"id": "evt_1", "type": "customer.subscription.updated", "data": {"object": {}}},
        {"id": "evt_1", "type": "invoice.finalized", "data": None},
    ],
)
def test_malformed_envelopes_rejected(envelope):
    with pytest.raises(MalformedWebhookError) as exc:
        parse_stripe_event(envelope)
    assert exc.value.status_code == 400
    assert exc.value.code == "webhook_malformed"
