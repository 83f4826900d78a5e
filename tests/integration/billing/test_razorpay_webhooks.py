"""
Razorpay webhook flows through the HTTP surface.

Signatures are real HMACs over the exact bytes posted, so every request
exercises verification before reconciliation.
"""

from datetime import datetime
from uuid import UUID, uuid4

import pytest
import respx
from httpx import AsyncClient
from sqlalchemy import func, select
from structlog.testing import capture_logs

from app.models.document import Document
from app.models.subscription import Subscription
from app.models.subscription_event import SubscriptionEvent
from app.shared.core.config import get_settings
from tests.utils import (
    encode,
    razorpay_payment_event,
    razorpay_signature,
    razorpay_subscription_event,
)

URL = "/api/v1/webhooks/razorpay"
# Stands in for the scenario's "user_1"; metadata user ids must be UUIDs.
USER_1 = UUID("00000000-0000-4000-8000-000000000001")


async def post_event(client: AsyncClient, event: dict, event_id: str | None = None):
    payload = encode(event)
    headers = {
        "content-type": "application/json",
        "x-razorpay-signature": razorpay_signature(payload),
    }
    if event_id:
        headers["x-razorpay-event-id"] = event_id
    return await client.post(URL, content=payload, headers=headers)


async def count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def load_subscription(db, external_id: str = "sub_1") -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.external_subscription_id == external_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


@pytest.fixture
async def plan_pro(plan_factory):
    return await plan_factory(name="Pro", razorpay_plan_id="plan_pro")


@pytest.fixture
async def user_1(profile_factory):
    return await profile_factory(email="owner@gym.example", id=USER_1)


@pytest.fixture
async def active_subscription(async_client, plan_pro, user_1, db):
    response = await post_event(
        async_client,
        razorpay_subscription_event(
            "subscription.activated", notes={"userId": str(USER_1)}
        ),
        event_id="evt_seed",
    )
    assert response.status_code == 200
    return await load_subscription(db)


@pytest.mark.asyncio
async def test_activation_creates_subscription(async_client, db, plan_pro, user_1):
    event = razorpay_subscription_event(
        "subscription.activated", notes={"userId": str(USER_1)}
    )

    response = await post_event(async_client, event, event_id="evt_act_1")

    assert response.status_code == 200
    body = response.json()
    assert body["received"] is True
    assert body["event_type"] == "subscription.activated"
    assert isinstance(body["processing_time_ms"], int)

    assert await count(db, Subscription) == 1
    sub = await load_subscription(db)
    assert sub.status == "active"
    assert sub.user_id == USER_1
    assert sub.subscription_plan_id == plan_pro.id
    assert sub.billing_cycle == "monthly"
    assert sub.provider == "razorpay"
    assert sub.external_customer_id == "cus_1"
    assert sub.amount == plan_pro.price_monthly
    assert sub.currency == "INR"
    assert _naive(sub.current_period_start) == datetime(2023, 11, 14, 22, 13, 20)
    assert _naive(sub.current_period_end) == datetime(2023, 12, 14, 22, 13, 20)
    assert sub.metadata_ == {"userId": str(USER_1)}

    audit = (await db.execute(select(SubscriptionEvent))).scalar_one()
    assert audit.subscription_id == sub.id
    assert audit.webhook_id == "evt_act_1"
    assert audit.event_type == "created"
    assert audit.event_data["provider"] == "razorpay"
    assert audit.event_data["provider_event_type"] == "subscription.activated"


@pytest.mark.asyncio
async def test_duplicate_activation_is_idempotent(async_client, db, plan_pro, user_1):
    event = razorpay_subscription_event(
        "subscription.activated", notes={"userId": str(USER_1)}
    )

    first = await post_event(async_client, event, event_id="evt_dup")
    second = await post_event(async_client, event, event_id="evt_dup")

    assert first.status_code == 200
    assert second.status_code == 200
    assert await count(db, Subscription) == 1
    assert await count(db, SubscriptionEvent) == 1


@pytest.mark.asyncio
async def test_update_before_create_creates_row(async_client, db, plan_pro, user_1):
    event = razorpay_subscription_event(
        "subscription.updated",
        notes={"userId": str(USER_1)},
        plan={"period": "yearly", "item": {"amount": 499000, "currency": "INR"}},
    )

    with capture_logs() as logs:
        response = await post_event(async_client, event, event_id="evt_upd_first")

    assert response.status_code == 200
    sub = await load_subscription(db)
    assert sub is not None
    assert sub.status == "active"
    assert sub.billing_cycle == "annual"
    assert sub.amount == 499000
    assert any(e["event"] == "billing_subscription_missing_treating_as_new" for e in logs)


@pytest.mark.asyncio
async def test_charged_event_updates_period(async_client, db, active_subscription):
    event = razorpay_subscription_event(
        "subscription.charged",
        current_start=1702592000,
        current_end=1705270400,
    )

    response = await post_event(async_client, event, event_id="evt_charged")

    assert response.status_code == 200
    sub = await load_subscription(db)
    assert sub.status == "active"
    assert _naive(sub.current_period_end) == datetime(2024, 1, 14, 22, 13, 20)


@pytest.mark.asyncio
async def test_pause_then_resume_restores_active(async_client, db, active_subscription):
    paused = await post_event(
        async_client,
        razorpay_subscription_event("subscription.paused", status="paused"),
        event_id="evt_pause",
    )
    assert paused.status_code == 200
    sub = await load_subscription(db)
    assert sub.status == "paused"
    assert sub.paused_at is not None

    resumed = await post_event(
        async_client,
        razorpay_subscription_event("subscription.resumed"),
        event_id="evt_resume",
    )
    assert resumed.status_code == 200
    sub = await load_subscription(db)
    assert sub.status == "active"
    assert sub.paused_at is None

    tags = (
        await db.execute(
            select(SubscriptionEvent.event_type).order_by(SubscriptionEvent.created_at)
        )
    ).scalars().all()
    assert set(tags) == {"created", "paused", "resumed"}


@pytest.mark.asyncio
async def test_cancellation_sets_end(async_client, db, active_subscription):
    response = await post_event(
        async_client,
        razorpay_subscription_event("subscription.cancelled", status="cancelled"),
        event_id="evt_cancel",
    )

    assert response.status_code == 200
    sub = await load_subscription(db)
    assert sub.status == "canceled"
    assert sub.canceled_at is not None
    assert sub.ends_at is not None


@pytest.mark.asyncio
async def test_pending_and_completed_transitions(async_client, db, active_subscription):
    await post_event(
        async_client,
        razorpay_subscription_event("subscription.pending", status="pending"),
        event_id="evt_pending",
    )
    assert (await load_subscription(db)).status == "pending"

    await post_event(
        async_client,
        razorpay_subscription_event(
            "subscription.completed", status="completed", ended_at=1705270400
        ),
        event_id="evt_completed",
    )
    sub = await load_subscription(db)
    assert sub.status == "completed"
    assert _naive(sub.ends_at) == datetime(2024, 1, 14, 22, 13, 20)


@pytest.mark.asyncio
async def test_transition_for_unknown_subscription_is_acknowledged(async_client, db):
    with capture_logs() as logs:
        response = await post_event(
            async_client,
            razorpay_subscription_event("subscription.paused", sub_id="sub_missing"),
        )

    assert response.status_code == 200
    assert await count(db, Subscription) == 0
    assert any(e["event"] == "billing_subscription_not_found" for e in logs)


@pytest.mark.asyncio
async def test_payment_captured_archives_receipt(async_client, db, active_subscription):
    first = await post_event(
        async_client, razorpay_payment_event("payment.captured"), event_id="evt_pay_1"
    )
    second = await post_event(
        async_client, razorpay_payment_event("payment.captured"), event_id="evt_pay_2"
    )

    assert first.status_code == 200
    assert second.status_code == 200
    doc = (await db.execute(select(Document))).scalar_one()
    assert doc.type == "receipt"
    assert doc.external_id == "pay_1"
    assert doc.user_id == USER_1
    assert doc.amount == 49900
    assert doc.tags == ["receipt", "razorpay", "subscription"]
    assert doc.title == "Subscription Invoice"
    assert doc.description == "Subscription invoice for INR 499"


@pytest.mark.asyncio
async def test_payment_failed_marks_past_due(async_client, db, active_subscription):
    with capture_logs() as logs:
        response = await post_event(
            async_client,
            razorpay_payment_event(
                "payment.failed",
                status="failed",
                error_code="BAD_REQUEST_ERROR",
                error_description="Payment declined",
            ),
            event_id="evt_pay_failed",
        )

    assert response.status_code == 200
    assert (await load_subscription(db)).status == "past_due"
    failure = next(e for e in logs if e["event"] == "billing_payment_failed")
    assert failure["error_code"] == "BAD_REQUEST_ERROR"
    assert failure["log_level"] == "warning"


@pytest.mark.asyncio
@respx.mock
async def test_unresolvable_user_is_acknowledged(async_client, db, plan_pro):
    respx.get("https://api.razorpay.test/v1/customers/cus_unknown").respond(
        json={"id": "cus_unknown", "email": "stranger@elsewhere.example"}
    )
    event = razorpay_subscription_event("subscription.activated", customer_id="cus_unknown")

    with capture_logs() as logs:
        response = await post_event(async_client, event, event_id="evt_orphan")

    assert response.status_code == 200
    assert await count(db, Subscription) == 0
    assert await count(db, SubscriptionEvent) == 0
    failure = next(e for e in logs if e["event"] == "billing_user_resolution_failed")
    assert failure["log_level"] == "error"
    assert failure["customer_id"] == "cus_unknown"


@pytest.mark.asyncio
@pytest.mark.foreign_keys
@respx.mock
async def test_stale_metadata_user_falls_back_to_customer_lookup(
    async_client, db, plan_pro, user_1
):
    respx.get("https://api.razorpay.test/v1/customers/cus_1").respond(
        json={"id": "cus_1", "email": "owner@gym.example"}
    )
    event = razorpay_subscription_event(
        "subscription.activated", notes={"userId": str(uuid4())}
    )

    with capture_logs() as logs:
        response = await post_event(async_client, event, event_id="evt_stale_user")

    assert response.status_code == 200
    sub = await load_subscription(db)
    assert sub.user_id == USER_1
    assert any(e["event"] == "billing_metadata_user_not_found" for e in logs)


@pytest.mark.asyncio
@pytest.mark.foreign_keys
@respx.mock
async def test_stale_metadata_user_without_fallback_is_acknowledged(
    async_client, db, plan_pro
):
    respx.get("https://api.razorpay.test/v1/customers/cus_1").respond(status_code=404)
    event = razorpay_subscription_event(
        "subscription.activated", notes={"userId": str(uuid4())}
    )

    with capture_logs() as logs:
        first = await post_event(async_client, event, event_id="evt_deleted_user")
        retry = await post_event(async_client, event, event_id="evt_deleted_user")

    assert first.status_code == 200
    assert retry.status_code == 200
    assert await count(db, Subscription) == 0
    failure = next(e for e in logs if e["event"] == "billing_user_resolution_failed")
    assert failure["attempted_methods"] == ["metadata", "provider_customer_lookup"]


@pytest.mark.asyncio
async def test_unknown_plan_is_acknowledged(async_client, db, user_1):
    event = razorpay_subscription_event(
        "subscription.activated", plan_id="plan_gone", notes={"userId": str(USER_1)}
    )

    with capture_logs() as logs:
        response = await post_event(async_client, event)

    assert response.status_code == 200
    assert await count(db, Subscription) == 0
    assert any(
        e["event"] == "billing_plan_not_found" and e["log_level"] == "error" for e in logs
    )


@pytest.mark.asyncio
async def test_unhandled_event_is_ignored(async_client, db):
    with capture_logs() as logs:
        response = await post_event(
            async_client, {"event": "refund.processed", "payload": {}}
        )

    assert response.status_code == 200
    assert response.json()["event_type"] == "refund.processed"
    unhandled = next(e for e in logs if e["event"] == "billing_webhook_unhandled_event")
    assert unhandled["log_level"] == "warning"


@pytest.mark.asyncio
@pytest.mark.parametrize("signature", ["deadbeef", None])
async def test_bad_signature_rejected_without_writes(
    async_client, db, plan_pro, user_1, signature
):
    payload = encode(
        razorpay_subscription_event(
            "subscription.activated", notes={"userId": str(USER_1)}
        )
    )
    headers = {"content-type": "application/json"}
    if signature:
        headers["x-razorpay-signature"] = signature

    response = await async_client.post(URL, content=payload, headers=headers)

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "webhook_signature_invalid"
    assert body["id"]
    assert await count(db, Subscription) == 0
    assert await count(db, SubscriptionEvent) == 0
    assert await count(db, Document) == 0


@pytest.mark.asyncio
async def test_signed_but_invalid_json_is_malformed(async_client):
    payload = b"{not json"
    response = await async_client.post(
        URL,
        content=payload,
        headers={"x-razorpay-signature": razorpay_signature(payload)},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "webhook_malformed"


@pytest.mark.asyncio
async def test_missing_webhook_secret_is_server_error(async_client, monkeypatch):
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", "")
    get_settings.cache_clear()

    response = await async_client.post(
        URL, content=b"{}", headers={"x-razorpay-signature": "abc"}
    )

    assert response.status_code == 500
    assert response.json()["code"] == "config_error"
