"""Tests for Stripe webhook verification, translation and acknowledgement.

Verified by mocking stripe.Webhook.construct_event; the reconciliation core
runs for real against the in-memory store.
"""

from unittest.mock import patch

import pytest
import stripe

from leaguehq.db.models import EventType, PayoutStatus, SubscriptionStatus
from leaguehq.payments.webhooks import handle_webhook, translate_event

CREATED = 1772366400  # 2026-03-01T12:00:00Z


def stripe_event(event_id: str, event_type: str, obj: dict, created: int = CREATED) -> dict:
    return {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}


def checkout_completed(event_id="evt_co", created=CREATED) -> dict:
    return stripe_event(
        event_id,
        "checkout.session.completed",
        {
            "id": "cs_test_1",
            "client_reference_id": "team-1",
            "metadata": {"team_id": "team-1"},
            "customer": "cus_1",
            "subscription": "sub_1",
            "payment_status": "paid",
        },
        created,
    )


def invoice_failed(event_id="evt_inv", attempt_count=1, created=CREATED + 60) -> dict:
    return stripe_event(
        event_id,
        "invoice.payment_failed",
        {
            "id": "in_1",
            "billing_reason": "subscription_cycle",
            "attempt_count": attempt_count,
            "parent": {
                "subscription_details": {
                    "subscription": "sub_1",
                    "metadata": {"team_id": "team-1"},
                }
            },
        },
        created,
    )


async def deliver(services, event: dict):
    with patch("leaguehq.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
        mock_verify.return_value = event
        return await handle_webhook(b"{}", "t=1,v1=sig", services.reconciliation, "whsec_test")


class TestSignatureVerification:
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, services, store, team):
        with patch("leaguehq.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.side_effect = stripe.SignatureVerificationError(
                "Invalid signature", "t=1,v1=bad"
            )

            response = await handle_webhook(b"{}", "t=1,v1=bad", services.reconciliation, "whsec_test")

        assert response.status == 400
        assert "Invalid signature" in response.text
        assert store.events == {}

    @pytest.mark.asyncio
    async def test_invalid_payload_rejected(self, services):
        with patch("leaguehq.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.side_effect = ValueError("bad json")

            response = await handle_webhook(b"not json", "sig", services.reconciliation, "whsec_test")

        assert response.status == 400
        assert "Invalid payload" in response.text

    @pytest.mark.asyncio
    async def test_secret_passed_to_verification(self, services):
        with patch("leaguehq.payments.webhooks.stripe.Webhook.construct_event") as mock_verify:
            mock_verify.return_value = stripe_event("evt_x", "ping", {})

            await handle_webhook(b"{}", "sig", services.reconciliation, "whsec_test")

        mock_verify.assert_called_once_with(b"{}", "sig", "whsec_test")


class TestAcknowledgement:
    @pytest.mark.asyncio
    async def test_unhandled_type_acknowledged(self, services, store):
        response = await deliver(services, stripe_event("evt_x", "customer.created", {"id": "cus_1"}))

        assert response.status == 200
        assert store.events == {}

    @pytest.mark.asyncio
    async def test_checkout_completed_applied_then_duplicate(self, services, store, team):
        first = await deliver(services, checkout_completed())
        second = await deliver(services, checkout_completed())

        assert first.status == 200
        assert first.text == "applied"
        assert second.status == 200
        assert second.text == "duplicate"
        assert store.teams["team-1"].subscription_status is SubscriptionStatus.ACTIVE
        assert store.competitions["comp-1"].current_team_count == 1

    @pytest.mark.asyncio
    async def test_out_of_order_invoice_asks_for_redelivery(self, services, store, team):
        early = await deliver(services, invoice_failed())
        assert early.status == 500
        assert "evt_inv" not in store.events

        await deliver(services, checkout_completed())
        redelivered = await deliver(services, invoice_failed())

        assert redelivered.status == 200
        assert store.teams["team-1"].subscription_status is SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_malformed_checkout_acknowledged(self, services, store, team):
        event = checkout_completed()
        event["data"]["object"]["subscription"] = None

        response = await deliver(services, event)
        redelivered = await deliver(services, event)

        assert response.status == 200
        assert response.text == "rejected"
        assert redelivered.text == "duplicate"
        assert not store.teams["team-1"].entry_fee_paid

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_500(self, services, team):
        with patch.object(services.reconciliation, "ingest", side_effect=RuntimeError("db down")):
            response = await deliver(services, checkout_completed())

        assert response.status == 500

    @pytest.mark.asyncio
    async def test_account_updated_enables_payouts(self, services, store, enabled_owner):
        store.accounts[enabled_owner.account_id].payout_status = PayoutStatus.PENDING
        event = stripe_event(
            "evt_acct",
            "account.updated",
            {
                "id": "acct_owner",
                "charges_enabled": True,
                "payouts_enabled": True,
                "details_submitted": True,
                "requirements": {"disabled_reason": None},
            },
        )

        response = await deliver(services, event)

        assert response.status == 200
        assert store.accounts[enabled_owner.account_id].payout_status is PayoutStatus.ENABLED


class TestTranslateEvent:
    @pytest.mark.asyncio
    async def test_account_for_unknown_connected_account(self, store):
        event = stripe_event("evt_1", "account.updated", {"id": "acct_unknown"})

        assert await translate_event(event, store) is None

    @pytest.mark.asyncio
    async def test_unpaid_checkout_skipped(self, store, team):
        event = checkout_completed()
        event["data"]["object"]["payment_status"] = "unpaid"

        assert await translate_event(event, store) is None

    @pytest.mark.asyncio
    async def test_first_invoice_skipped(self, store, team):
        event = stripe_event(
            "evt_1", "invoice.paid", {"subscription": "sub_1", "billing_reason": "subscription_create"}
        )

        assert await translate_event(event, store) is None

    @pytest.mark.asyncio
    async def test_invoice_subscription_from_parent_details(self, store, team):
        event = stripe_event(
            "evt_1",
            "invoice.paid",
            {
                "billing_reason": "subscription_cycle",
                "parent": {
                    "subscription_details": {
                        "subscription": "sub_9",
                        "metadata": {"team_id": "team-1"},
                    }
                },
            },
        )

        translated = await translate_event(event, store)

        assert translated.type is EventType.INVOICE_PAID
        assert translated.subject_id == "team-1"
        assert translated.data["subscription_id"] == "sub_9"
        assert translated.idempotency_key == "evt_1"

    @pytest.mark.asyncio
    async def test_attempt_count_becomes_failure_count(self, store, team):
        translated = await translate_event(invoice_failed(attempt_count=3), store)

        assert translated.type is EventType.INVOICE_FAILED
        assert translated.data["consecutive_failures"] == 3

    @pytest.mark.asyncio
    async def test_subscription_updated_carries_status(self, store, team):
        event = stripe_event(
            "evt_1",
            "customer.subscription.updated",
            {"id": "sub_1", "status": "past_due", "metadata": {"team_id": "team-1"}},
        )

        translated = await translate_event(event, store)

        assert translated.type is EventType.SUBSCRIPTION_UPDATED
        assert translated.data == {"subscription_id": "sub_1", "status": "past_due"}
        assert translated.source_timestamp.timestamp() == CREATED
