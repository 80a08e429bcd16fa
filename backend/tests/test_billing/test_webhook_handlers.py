"""Tests for Stripe webhook handler functions with mocked Stripe events."""

import uuid
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import RecordingNotifier, create_subscription, create_user
from memberhub.billing.dunning import is_dunning_suspended, set_dunning_flag
from memberhub.billing.notifications import NotificationKind
from memberhub.billing.states import MembershipStatus, PaymentStatus, SubscriptionStatus
from memberhub.billing.webhooks import (
    CREATED,
    DUPLICATE,
    IGNORED,
    PAYMENT_BACKFILLED,
    PENDING_CHANGE_KEYS,
    _pending_change_due,
    handle_invoice_paid,
    handle_invoice_payment_action_required,
    handle_invoice_payment_failed,
    handle_subscription_deleted,
    handle_subscription_updated,
    record_paid_invoice,
)
from memberhub.config import settings
from memberhub.exceptions import SubscriptionMappingError
from memberhub.models.membership import Membership
from memberhub.models.payment import Payment
from memberhub.models.subscription import Invoice
from memberhub.models.user import User

JAN_1 = 1767225600  # 2026-01-01T00:00:00Z
FEB_1 = 1769904000  # 2026-02-01T00:00:00Z


class _StripeObj(SimpleNamespace):
    """SimpleNamespace with bracket notation support (like Stripe API objects)."""

    def __getitem__(self, key: str):
        return getattr(self, key)


def _make_event(event_type: str, data_object: dict) -> _StripeObj:
    """Create a fake Stripe Event-like object."""
    return _StripeObj(
        type=event_type,
        id=f"evt_test_{uuid.uuid4().hex[:8]}",
        data=_StripeObj(object=data_object),
    )


def _paid_invoice(invoice_id: str = "in_paid_1", subscription: str = "sub_test_123", **overrides) -> dict:
    invoice = {
        "id": invoice_id,
        "subscription": subscription,
        "customer": "cus_test_123",
        "amount_paid": 7500,
        "currency": "gbp",
        "status": "paid",
        "metadata": {},
        "status_transitions": {"paid_at": JAN_1},
        "lines": {"data": [{"period": {"start": JAN_1, "end": FEB_1}}]},
    }
    invoice.update(overrides)
    return invoice


def _failed_invoice(attempt: int, invoice_id: str = "in_fail_1", subscription: str = "sub_test_123") -> dict:
    return {
        "id": invoice_id,
        "subscription": subscription,
        "customer": "cus_test_123",
        "amount_due": 7500,
        "currency": "gbp",
        "attempt_count": attempt,
        "next_payment_attempt": FEB_1 if attempt < 3 else None,
        "metadata": {},
        "lines": {"data": []},
    }


def _stripe_sub(sub_id: str = "sub_test_123", status: str = "active", **overrides) -> dict:
    obj = {
        "id": sub_id,
        "status": status,
        "customer": "cus_test_123",
        "cancel_at_period_end": False,
        "metadata": {},
        "items": {"data": [{"current_period_start": JAN_1, "current_period_end": FEB_1}]},
    }
    obj.update(overrides)
    return obj


async def _membership_statuses(db: AsyncSession, user_id: uuid.UUID) -> list[str]:
    result = await db.execute(select(Membership.status).where(Membership.user_id == user_id))
    return list(result.scalars().all())


async def _payments_for(db: AsyncSession, invoice_id: str) -> list[Payment]:
    result = await db.execute(select(Payment).where(Payment.stripe_invoice_id == invoice_id))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# invoice.paid
# ---------------------------------------------------------------------------


class TestInvoicePaid:
    @pytest.mark.asyncio
    async def test_first_payment_activates(self, db_session: AsyncSession, mma_entity, notifier: RecordingNotifier):
        user = await create_user(db_session)
        sub = await create_subscription(
            db_session,
            user,
            mma_entity,
            status=SubscriptionStatus.PENDING_PAYMENT,
            membership_status=MembershipStatus.PENDING_PAYMENT,
        )

        await handle_invoice_paid(db_session, _make_event("invoice.paid", _paid_invoice()), notifier)

        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.is_provisional is False
        assert sub.current_period_end == datetime(2026, 2, 1)
        assert sub.next_billing_date == datetime(2026, 2, 1)
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.ACTIVE.value]

        payments = await _payments_for(db_session, "in_paid_1")
        assert len(payments) == 1
        assert payments[0].status == PaymentStatus.CONFIRMED.value
        assert payments[0].amount == 75.0
        assert payments[0].currency == "GBP"
        assert payments[0].routed_entity_id == mma_entity.id
        assert payments[0].processed_at == datetime(2026, 1, 1)
        assert payments[0].tags["inv"] == "in_paid_1"
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_idempotent(self, db_session: AsyncSession, mma_entity, notifier):
        user = await create_user(db_session)
        await create_subscription(db_session, user, mma_entity)
        event = _make_event("invoice.paid", _paid_invoice())

        first = await record_paid_invoice(db_session, event.data.object, notifier=notifier)
        second = await record_paid_invoice(db_session, event.data.object, notifier=notifier)

        assert first == CREATED
        assert second == DUPLICATE
        payments = await _payments_for(db_session, "in_paid_1")
        assert len(payments) == 1
        assert payments[0].amount == 75.0
        invoice_count = await db_session.scalar(select(func.count()).select_from(Invoice))
        assert invoice_count == 1

    @pytest.mark.asyncio
    async def test_zero_amount_ignored(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        await create_subscription(db_session, user, mma_entity)

        outcome = await record_paid_invoice(db_session, _paid_invoice(amount_paid=0))

        assert outcome == IGNORED
        assert await _payments_for(db_session, "in_paid_1") == []

    @pytest.mark.asyncio
    async def test_missing_payment_row_is_backfilled(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)
        db_session.add(
            Invoice(subscription_id=sub.id, stripe_invoice_id="in_paid_1", amount=75.0, status="paid")
        )
        await db_session.flush()

        outcome = await record_paid_invoice(db_session, _paid_invoice())

        assert outcome == PAYMENT_BACKFILLED
        payments = await _payments_for(db_session, "in_paid_1")
        assert [p.status for p in payments] == [PaymentStatus.CONFIRMED.value]

    @pytest.mark.asyncio
    async def test_placeholder_id_replaced_by_real_id(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(
            db_session, user, mma_entity, stripe_subscription_id="seti_placeholder", status=SubscriptionStatus.PENDING_PAYMENT
        )
        invoice = _paid_invoice(subscription="sub_real", metadata={"dbSubscriptionId": str(sub.id)})

        await record_paid_invoice(db_session, invoice)

        assert sub.stripe_subscription_id == "sub_real"
        assert sub.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_unmapped_invoice_raises(self, db_session: AsyncSession):
        event = _make_event("invoice.paid", _paid_invoice(subscription="sub_nobody", customer=None))

        with pytest.raises(SubscriptionMappingError):
            await handle_invoice_paid(db_session, event)


# ---------------------------------------------------------------------------
# invoice.payment_failed and dunning
# ---------------------------------------------------------------------------


class TestInvoicePaymentFailed:
    @pytest.mark.asyncio
    async def test_first_failure_sends_retry(self, db_session: AsyncSession, mma_entity, notifier):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)

        await handle_invoice_payment_failed(
            db_session, _make_event("invoice.payment_failed", _failed_invoice(1)), notifier
        )

        payments = await _payments_for(db_session, "in_fail_1")
        assert len(payments) == 1
        assert payments[0].status == PaymentStatus.FAILED.value
        assert payments[0].retry_count == 1
        assert payments[0].failure_reason == "Payment declined"
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.ACTIVE.value]

        assert notifier.kinds() == [NotificationKind.RETRY]
        context = notifier.sent[0].context
        assert context["attempt"] == 1
        assert context["total_attempts"] == 3
        assert context["next_retry"] == "01/02/2026"
        assert context["amount"] == 75.0

    @pytest.mark.asyncio
    async def test_third_failure_suspends_then_payment_recovers(
        self, db_session: AsyncSession, mma_entity, notifier, monkeypatch
    ):
        monkeypatch.setattr(settings, "auto_suspend_after_3_fails", True)
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)

        for attempt in (1, 2):
            await handle_invoice_payment_failed(
                db_session, _make_event("invoice.payment_failed", _failed_invoice(attempt)), notifier
            )

        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.ACTIVE.value]
        assert not await is_dunning_suspended(db_session, sub.id)

        await handle_invoice_payment_failed(
            db_session, _make_event("invoice.payment_failed", _failed_invoice(3)), notifier
        )

        assert notifier.kinds() == [NotificationKind.RETRY, NotificationKind.RETRY, NotificationKind.SUSPENDED]
        assert sub.status == SubscriptionStatus.PAST_DUE.value
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.SUSPENDED.value]
        assert await is_dunning_suspended(db_session, sub.id)
        payment = (await _payments_for(db_session, "in_fail_1"))[0]
        assert payment.retry_count == 3

        await handle_invoice_paid(
            db_session, _make_event("invoice.paid", _paid_invoice(invoice_id="in_fail_1")), notifier
        )

        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.ACTIVE.value]
        assert not await is_dunning_suspended(db_session, sub.id)
        assert payment.status == PaymentStatus.CONFIRMED.value
        assert payment.failure_reason is None
        assert notifier.kinds()[-1] == NotificationKind.RECOVERED

    @pytest.mark.asyncio
    async def test_third_failure_without_auto_suspend(self, db_session: AsyncSession, mma_entity, notifier, monkeypatch):
        monkeypatch.setattr(settings, "auto_suspend_after_3_fails", False)
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)

        await handle_invoice_payment_failed(
            db_session, _make_event("invoice.payment_failed", _failed_invoice(3)), notifier
        )

        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert not await is_dunning_suspended(db_session, sub.id)
        assert notifier.kinds() == [NotificationKind.SUSPENDED]

    @pytest.mark.asyncio
    async def test_failure_after_success_is_ignored(self, db_session: AsyncSession, mma_entity, notifier):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)
        await handle_invoice_paid(db_session, _make_event("invoice.paid", _paid_invoice("in_race")), notifier)

        await handle_invoice_payment_failed(
            db_session,
            _make_event("invoice.payment_failed", _failed_invoice(1, invoice_id="in_race")),
            notifier,
        )

        payments = await _payments_for(db_session, "in_race")
        assert [p.status for p in payments] == [PaymentStatus.CONFIRMED.value]
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_missing_attempt_count_increments(self, db_session: AsyncSession, mma_entity, notifier):
        user = await create_user(db_session)
        await create_subscription(db_session, user, mma_entity)
        invoice = _failed_invoice(1)

        await handle_invoice_payment_failed(db_session, _make_event("invoice.payment_failed", invoice), notifier)
        invoice["attempt_count"] = None
        await handle_invoice_payment_failed(db_session, _make_event("invoice.payment_failed", invoice), notifier)

        payment = (await _payments_for(db_session, "in_fail_1"))[0]
        assert payment.retry_count == 2


class TestInvoiceActionRequired:
    @pytest.mark.asyncio
    async def test_sends_action_required(self, db_session: AsyncSession, mma_entity, notifier):
        user = await create_user(db_session)
        await create_subscription(db_session, user, mma_entity)
        invoice = _failed_invoice(1)
        invoice["hosted_invoice_url"] = "https://pay.stripe.com/i/abc"

        await handle_invoice_payment_action_required(
            db_session, _make_event("invoice.payment_action_required", invoice), notifier
        )

        assert notifier.kinds() == [NotificationKind.ACTION_REQUIRED]
        assert notifier.sent[0].context["hosted_invoice_url"] == "https://pay.stripe.com/i/abc"

    @pytest.mark.asyncio
    async def test_unmapped_is_ignored(self, db_session: AsyncSession, notifier):
        invoice = _failed_invoice(1, subscription="sub_nobody")
        invoice["customer"] = None

        await handle_invoice_payment_action_required(
            db_session, _make_event("invoice.payment_action_required", invoice), notifier
        )

        assert notifier.sent == []


# ---------------------------------------------------------------------------
# customer.subscription.*
# ---------------------------------------------------------------------------


class TestSubscriptionUpdated:
    @pytest.mark.asyncio
    async def test_trialing_maps_to_active(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(
            db_session,
            user,
            mma_entity,
            status=SubscriptionStatus.PENDING_PAYMENT,
            membership_status=MembershipStatus.PENDING_PAYMENT,
        )

        await handle_subscription_updated(
            db_session, _make_event("customer.subscription.updated", _stripe_sub(status="trialing"))
        )

        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.current_period_start == datetime(2026, 1, 1)
        assert sub.current_period_end == datetime(2026, 2, 1)
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.ACTIVE.value]

    @pytest.mark.asyncio
    async def test_links_placeholder_via_internal_id(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity, stripe_subscription_id="seti_123")
        obj = _stripe_sub(sub_id="sub_new", metadata={"dbSubscriptionId": str(sub.id)})

        await handle_subscription_updated(db_session, _make_event("customer.subscription.created", obj))

        assert sub.stripe_subscription_id == "sub_new"

    @pytest.mark.asyncio
    async def test_already_linked_row_is_left_alone(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity, stripe_subscription_id="sub_original")
        obj = _stripe_sub(sub_id="sub_intruder", status="canceled", metadata={"dbSubscriptionId": str(sub.id)})

        await handle_subscription_updated(db_session, _make_event("customer.subscription.updated", obj))

        assert sub.stripe_subscription_id == "sub_original"
        assert sub.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_missing_period_keeps_stored_values(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)
        sub.current_period_end = datetime(2026, 3, 1)
        await db_session.flush()

        await handle_subscription_updated(
            db_session, _make_event("customer.subscription.updated", _stripe_sub(items={"data": []}))
        )

        assert sub.current_period_end == datetime(2026, 3, 1)

    @pytest.mark.asyncio
    async def test_past_due_with_dunning_flag_suspends(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)
        await set_dunning_flag(db_session, sub.id, "in_fail_1")

        await handle_subscription_updated(
            db_session, _make_event("customer.subscription.updated", _stripe_sub(status="past_due"))
        )

        assert sub.status == SubscriptionStatus.PAST_DUE.value
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.SUSPENDED.value]

    @pytest.mark.asyncio
    async def test_past_due_without_flag_keeps_access(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        await create_subscription(db_session, user, mma_entity)

        await handle_subscription_updated(
            db_session, _make_event("customer.subscription.updated", _stripe_sub(status="past_due"))
        )

        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.ACTIVE.value]

    @pytest.mark.asyncio
    async def test_unknown_subscription_raises(self, db_session: AsyncSession):
        with pytest.raises(SubscriptionMappingError):
            await handle_subscription_updated(
                db_session, _make_event("customer.subscription.updated", _stripe_sub(sub_id="sub_ghost"))
            )


class TestSubscriptionDeleted:
    @pytest.mark.asyncio
    async def test_cancels_subscription_and_membership(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)
        await set_dunning_flag(db_session, sub.id, None)

        await handle_subscription_deleted(
            db_session, _make_event("customer.subscription.deleted", _stripe_sub(status="canceled"))
        )

        assert sub.status == SubscriptionStatus.CANCELLED.value
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.CANCELLED.value]
        assert not await is_dunning_suspended(db_session, sub.id)

    @pytest.mark.asyncio
    async def test_unknown_subscription_raises(self, db_session: AsyncSession):
        with pytest.raises(SubscriptionMappingError):
            await handle_subscription_deleted(
                db_session, _make_event("customer.subscription.deleted", _stripe_sub(sub_id="sub_ghost"))
            )


# ---------------------------------------------------------------------------
# Family billing: payer and beneficiary share the subscription lifecycle
# ---------------------------------------------------------------------------


async def _child_member(db: AsyncSession) -> User:
    child = await create_user(db)
    db.add(
        Membership(
            user_id=child.id,
            membership_type="FULL_UNDER18",
            status=MembershipStatus.PENDING_PAYMENT.value,
            monthly_price=55.0,
        )
    )
    await db.flush()
    return child


class TestFamilyBilling:
    @pytest.mark.asyncio
    async def test_beneficiary_cancelled_with_subscription(self, db_session: AsyncSession, mma_entity, notifier):
        payer = await create_user(db_session)
        sub = await create_subscription(db_session, payer, mma_entity)
        child = await _child_member(db_session)

        await handle_invoice_paid(
            db_session,
            _make_event("invoice.paid", _paid_invoice(metadata={"memberUserId": str(child.id)})),
            notifier,
        )
        assert sub.beneficiary_user_id == child.id
        assert await _membership_statuses(db_session, child.id) == [MembershipStatus.ACTIVE.value]

        await handle_subscription_deleted(
            db_session, _make_event("customer.subscription.deleted", _stripe_sub(status="canceled"))
        )

        assert await _membership_statuses(db_session, payer.id) == [MembershipStatus.CANCELLED.value]
        assert await _membership_statuses(db_session, child.id) == [MembershipStatus.CANCELLED.value]

    @pytest.mark.asyncio
    async def test_beneficiary_suspended_by_flagged_past_due(self, db_session: AsyncSession, mma_entity, notifier):
        payer = await create_user(db_session)
        sub = await create_subscription(db_session, payer, mma_entity)
        child = await _child_member(db_session)
        await handle_invoice_paid(
            db_session,
            _make_event("invoice.paid", _paid_invoice(metadata={"childUserId": str(child.id)})),
            notifier,
        )
        await set_dunning_flag(db_session, sub.id, "in_fail_1")

        await handle_subscription_updated(
            db_session, _make_event("customer.subscription.updated", _stripe_sub(status="past_due"))
        )

        assert await _membership_statuses(db_session, payer.id) == [MembershipStatus.SUSPENDED.value]
        assert await _membership_statuses(db_session, child.id) == [MembershipStatus.SUSPENDED.value]

    @pytest.mark.asyncio
    async def test_unknown_beneficiary_is_not_linked(self, db_session: AsyncSession, mma_entity, notifier):
        payer = await create_user(db_session)
        sub = await create_subscription(db_session, payer, mma_entity)

        await handle_invoice_paid(
            db_session,
            _make_event("invoice.paid", _paid_invoice(metadata={"memberUserId": str(uuid.uuid4())})),
            notifier,
        )

        assert sub.beneficiary_user_id is None
        assert sub.status == SubscriptionStatus.ACTIVE.value


# ---------------------------------------------------------------------------
# Scheduled plan changes and gateway-only statuses
# ---------------------------------------------------------------------------


class TestPendingChangeDue:
    def test_iso_timestamp_in_the_past(self):
        metadata = {"pendingMembershipType": "WEEKEND_ADULT", "pendingApplyAt": "2026-01-01T00:00:00Z"}
        assert _pending_change_due(metadata, datetime(2026, 2, 1)) == "WEEKEND_ADULT"

    def test_iso_timestamp_in_the_future(self):
        metadata = {"pendingMembershipType": "WEEKEND_ADULT", "pendingApplyAt": "2026-03-01T00:00:00+01:00"}
        assert _pending_change_due(metadata, datetime(2026, 2, 1)) is None

    def test_epoch_seconds(self):
        metadata = {"pendingMembershipType": "WEEKEND_ADULT", "pendingApplyAt": str(FEB_1)}
        assert _pending_change_due(metadata, datetime(2026, 1, 15)) is None
        assert _pending_change_due(metadata, datetime(2026, 2, 1)) == "WEEKEND_ADULT"

    def test_unparseable_or_incomplete(self):
        assert _pending_change_due({"pendingMembershipType": "WEEKEND_ADULT", "pendingApplyAt": "soon"}, datetime(2026, 2, 1)) is None
        assert _pending_change_due({"pendingApplyAt": str(JAN_1)}, datetime(2026, 2, 1)) is None


class TestSubscriptionLifecycleEdges:
    @pytest.mark.asyncio
    async def test_due_plan_change_is_applied(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)
        metadata = {"pendingMembershipType": "WEEKEND_ADULT", "pendingApplyAt": str(JAN_1)}

        with patch(
            "memberhub.billing.stripe_client.clear_subscription_metadata", new_callable=AsyncMock
        ) as clear_metadata:
            await handle_subscription_updated(
                db_session, _make_event("customer.subscription.updated", _stripe_sub(metadata=metadata))
            )

        assert sub.membership_type == "WEEKEND_ADULT"
        assert sub.monthly_price == 55.0
        types = (
            await db_session.execute(select(Membership.membership_type).where(Membership.user_id == user.id))
        ).scalars().all()
        assert types == ["WEEKEND_ADULT"]
        clear_metadata.assert_awaited_once_with("sub_test_123", PENDING_CHANGE_KEYS)

    @pytest.mark.asyncio
    async def test_future_plan_change_waits(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)
        metadata = {"pendingMembershipType": "WEEKEND_ADULT", "pendingApplyAt": "2100-01-01T00:00:00Z"}

        with patch(
            "memberhub.billing.stripe_client.clear_subscription_metadata", new_callable=AsyncMock
        ) as clear_metadata:
            await handle_subscription_updated(
                db_session, _make_event("customer.subscription.updated", _stripe_sub(metadata=metadata))
            )

        assert sub.membership_type == "FULL_ADULT"
        clear_metadata.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_paused_collection_suspends_access(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(db_session, user, mma_entity)

        await handle_subscription_updated(
            db_session,
            _make_event(
                "customer.subscription.updated", _stripe_sub(pause_collection={"behavior": "void"})
            ),
        )

        assert sub.status == SubscriptionStatus.PAUSED.value
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.SUSPENDED.value]

    @pytest.mark.asyncio
    async def test_incomplete_keeps_membership_pending(self, db_session: AsyncSession, mma_entity):
        user = await create_user(db_session)
        sub = await create_subscription(
            db_session,
            user,
            mma_entity,
            status=SubscriptionStatus.PENDING_PAYMENT,
            membership_status=MembershipStatus.PENDING_PAYMENT,
        )

        await handle_subscription_updated(
            db_session, _make_event("customer.subscription.created", _stripe_sub(status="incomplete"))
        )

        assert sub.status == SubscriptionStatus.INCOMPLETE.value
        assert await _membership_statuses(db_session, user.id) == [MembershipStatus.PENDING_PAYMENT.value]
