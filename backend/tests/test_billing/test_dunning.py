"""Tests for decline-reason enrichment and the dunning suspension flag."""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from memberhub.billing.dunning import (
    GENERIC_DECLINE,
    clear_dunning_flag,
    describe_decline,
    enrich_decline_reason,
    is_dunning_suspended,
    set_dunning_flag,
)


class TestDescribeDecline:
    def test_known_code(self):
        assert describe_decline("insufficient_funds") == "Insufficient funds"
        assert describe_decline("expired_card", "raw text") == "Card expired"

    def test_unknown_code_uses_raw_message(self):
        assert describe_decline("weird_code", "Your card was declined.") == "Your card was declined."

    def test_nothing_known(self):
        assert describe_decline(None) == GENERIC_DECLINE


class TestEnrichDeclineReason:
    @pytest.mark.asyncio
    async def test_no_charge_or_intent_skips_stripe(self):
        with patch("memberhub.billing.stripe_client.get_charge", new_callable=AsyncMock) as get_charge:
            reason = await enrich_decline_reason({"id": "in_1"})

        assert reason == GENERIC_DECLINE
        get_charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expanded_charge(self):
        invoice = {"id": "in_1", "charge": {"id": "ch_1", "failure_code": "insufficient_funds"}}
        assert await enrich_decline_reason(invoice) == "Insufficient funds"

    @pytest.mark.asyncio
    async def test_charge_id_is_fetched(self):
        charge = {"id": "ch_1", "failure_code": None, "outcome": {"reason": "expired_card"}}
        with patch(
            "memberhub.billing.stripe_client.get_charge", new_callable=AsyncMock, return_value=charge
        ) as get_charge:
            reason = await enrich_decline_reason({"id": "in_1", "charge": "ch_1"})

        get_charge.assert_awaited_once_with("ch_1")
        assert reason == "Card expired"

    @pytest.mark.asyncio
    async def test_payment_intent_error(self):
        intent = {"id": "pi_1", "last_payment_error": {"decline_code": "do_not_honor", "message": "Declined"}}
        with patch(
            "memberhub.billing.stripe_client.get_payment_intent", new_callable=AsyncMock, return_value=intent
        ):
            reason = await enrich_decline_reason({"id": "in_1", "payment_intent": "pi_1"})

        assert reason == "Declined by card issuer"

    @pytest.mark.asyncio
    async def test_stripe_error_falls_back(self):
        with patch(
            "memberhub.billing.stripe_client.get_charge",
            new_callable=AsyncMock,
            side_effect=stripe.APIConnectionError("network down"),
        ):
            reason = await enrich_decline_reason({"id": "in_1", "charge": "ch_1"})

        assert reason == GENERIC_DECLINE


class TestDunningFlag:
    @pytest.mark.asyncio
    async def test_set_is_idempotent_and_clear_reports(self, db_session: AsyncSession):
        sub_id = uuid.uuid4()

        assert not await is_dunning_suspended(db_session, sub_id)
        assert await set_dunning_flag(db_session, sub_id, "in_1") is True
        assert await set_dunning_flag(db_session, sub_id, "in_1") is False
        assert await is_dunning_suspended(db_session, sub_id)

        assert await clear_dunning_flag(db_session, sub_id) is True
        assert await clear_dunning_flag(db_session, sub_id) is False
        assert not await is_dunning_suspended(db_session, sub_id)
