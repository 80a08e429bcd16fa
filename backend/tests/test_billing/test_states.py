"""Tests for subscription/payment transition tables and membership derivation."""

from types import SimpleNamespace

import pytest

from memberhub.billing.states import (
    MembershipStatus,
    PaymentStatus,
    SubscriptionStatus,
    apply_subscription_status,
    can_transition,
    can_transition_payment,
    derive_membership_status,
    normalize_gateway_status,
)


class TestSubscriptionTransitions:
    def test_legal_moves(self):
        assert can_transition("PENDING_PAYMENT", "ACTIVE")
        assert can_transition("ACTIVE", "PAST_DUE")
        assert can_transition("PAST_DUE", "ACTIVE")
        assert can_transition("ACTIVE", "PAUSED")
        assert can_transition("INCOMPLETE", "INCOMPLETE_EXPIRED")

    def test_terminal_states_are_final(self):
        assert not can_transition("CANCELLED", "ACTIVE")
        assert not can_transition("INCOMPLETE_EXPIRED", "ACTIVE")

    def test_self_transition_allowed(self):
        assert can_transition("ACTIVE", "ACTIVE")

    def test_apply_skips_illegal_move(self):
        sub = SimpleNamespace(id="sub-1", status="CANCELLED")
        assert apply_subscription_status(sub, SubscriptionStatus.ACTIVE) is False
        assert sub.status == "CANCELLED"

    def test_apply_legal_move(self):
        sub = SimpleNamespace(id="sub-1", status="PENDING_PAYMENT")
        assert apply_subscription_status(sub, SubscriptionStatus.ACTIVE) is True
        assert sub.status == "ACTIVE"


class TestPaymentTransitions:
    def test_forward_only(self):
        assert can_transition_payment("PENDING", "CONFIRMED")
        assert can_transition_payment("FAILED", "CONFIRMED")
        assert can_transition_payment("FAILED", "FAILED")
        assert not can_transition_payment("CONFIRMED", "FAILED")
        assert not can_transition_payment("REFUNDED", "CONFIRMED")

    def test_enum_inputs(self):
        assert can_transition_payment(PaymentStatus.CONFIRMED, PaymentStatus.REFUNDED)


class TestGatewayStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("trialing", SubscriptionStatus.ACTIVE),
            ("active", SubscriptionStatus.ACTIVE),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("canceled", SubscriptionStatus.CANCELLED),
            ("incomplete_expired", SubscriptionStatus.INCOMPLETE_EXPIRED),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_gateway_status(raw) == expected

    def test_pause_collection_overrides(self):
        assert normalize_gateway_status("active", {"behavior": "void"}) == SubscriptionStatus.PAUSED

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            normalize_gateway_status("mystery")


class TestMembershipDerivation:
    @pytest.mark.parametrize(
        ("status", "flag", "expected"),
        [
            ("ACTIVE", False, MembershipStatus.ACTIVE),
            ("PAUSED", False, MembershipStatus.SUSPENDED),
            ("INCOMPLETE", False, MembershipStatus.PENDING_PAYMENT),
            ("INCOMPLETE_EXPIRED", False, MembershipStatus.PENDING_PAYMENT),
            ("CANCELLED", False, MembershipStatus.CANCELLED),
            ("PAST_DUE", False, MembershipStatus.ACTIVE),
            ("PAST_DUE", True, MembershipStatus.SUSPENDED),
        ],
    )
    def test_derive(self, status, flag, expected):
        assert derive_membership_status(status, flag) == expected
