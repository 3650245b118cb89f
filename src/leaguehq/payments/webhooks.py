"""Stripe webhook verification and translation into reconciliation events.

Apply-then-acknowledge: the handler only answers 200 once the event's
effects are saved (or it is a duplicate, stale, or of no interest). Any
processing failure answers 500 so Stripe redelivers it.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import stripe
from aiohttp import web

from leaguehq.config.settings import get_config
from leaguehq.db.models import EventType
from leaguehq.payments.base import PaymentStore, ReconciliationEvent
from leaguehq.payments.errors import LeagueError
from leaguehq.payments.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)


def _subscription_of_invoice(invoice: dict) -> Optional[str]:
    # Older API versions put it top-level, newer ones under parent.subscription_details
    subscription_id = invoice.get("subscription")
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


async def _resolve_team_id(
    store: PaymentStore, subscription_id: Optional[str], metadata: Optional[dict]
) -> Optional[str]:
    team_id = (metadata or {}).get("team_id")
    if team_id:
        return team_id
    if subscription_id:
        team = await store.find_team_by_subscription(subscription_id)
        if team is not None:
            return team.team_id
    return None


async def translate_event(event: dict, store: PaymentStore) -> Optional[ReconciliationEvent]:
    """Map a verified Stripe event onto a ReconciliationEvent.

    Returns:
        None for event types we do not track, or when the subject cannot be
        resolved to a local account or team
    """
    event_type = event["type"]
    obj = event["data"]["object"]
    source_timestamp = datetime.fromtimestamp(event["created"], tz=timezone.utc)

    def _event(subject_id: str, kind: EventType, **data) -> ReconciliationEvent:
        return ReconciliationEvent(
            subject_id=subject_id,
            type=kind,
            source_timestamp=source_timestamp,
            idempotency_key=event["id"],
            data=data,
        )

    if event_type == "account.updated":
        account = await store.find_account_by_external_id(obj["id"])
        if account is None:
            logger.warning(f"account.updated for unknown connected account {obj['id']} - skipping")
            return None
        requirements = obj.get("requirements") or {}
        return _event(
            account.account_id,
            EventType.ACCOUNT_STATUS,
            charges_enabled=bool(obj.get("charges_enabled")),
            payouts_enabled=bool(obj.get("payouts_enabled")),
            details_submitted=bool(obj.get("details_submitted")),
            disabled_reason=requirements.get("disabled_reason"),
        )

    if event_type == "checkout.session.completed":
        team_id = (obj.get("metadata") or {}).get("team_id") or obj.get("client_reference_id")
        if not team_id:
            logger.warning("checkout.session.completed missing team_id - skipping")
            return None
        if obj.get("payment_status") == "unpaid":
            logger.info(f"Checkout {obj['id']} completed without payment yet - skipping")
            return None
        return _event(
            team_id,
            EventType.CHECKOUT_COMPLETED,
            subscription_id=obj.get("subscription"),
            customer_id=obj.get("customer"),
            session_id=obj.get("id"),
        )

    if event_type in ("invoice.paid", "invoice.payment_succeeded", "invoice.payment_failed"):
        if obj.get("billing_reason") == "subscription_create":
            # First invoice is covered by checkout.session.completed
            return None
        subscription_id = _subscription_of_invoice(obj)
        metadata = ((obj.get("parent") or {}).get("subscription_details") or {}).get("metadata")
        team_id = await _resolve_team_id(store, subscription_id, metadata)
        if team_id is None:
            logger.warning(f"{event_type}: no team for subscription {subscription_id} - skipping")
            return None
        if event_type == "invoice.payment_failed":
            return _event(
                team_id,
                EventType.INVOICE_FAILED,
                subscription_id=subscription_id,
                consecutive_failures=obj.get("attempt_count") or 1,
            )
        return _event(team_id, EventType.INVOICE_PAID, subscription_id=subscription_id)

    if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        team_id = await _resolve_team_id(store, obj.get("id"), obj.get("metadata"))
        if team_id is None:
            logger.warning(f"{event_type}: no team for subscription {obj.get('id')} - skipping")
            return None
        if event_type == "customer.subscription.deleted":
            return _event(team_id, EventType.SUBSCRIPTION_DELETED, subscription_id=obj.get("id"))
        return _event(
            team_id,
            EventType.SUBSCRIPTION_UPDATED,
            subscription_id=obj.get("id"),
            status=obj.get("status"),
        )

    logger.info(f"Unhandled event type: {event_type}")
    return None


async def handle_webhook(
    payload: bytes,
    sig_header: str,
    reconciler: ReconciliationService,
    webhook_secret: Optional[str] = None,
) -> web.Response:
    """Verify, translate and apply one Stripe webhook delivery.

    Args:
        payload: Raw request body
        sig_header: Stripe-Signature header value
        reconciler: ReconciliationService that applies the event
        webhook_secret: Signing secret; defaults to config.stripe_webhook_secret

    Returns:
        200 when applied or safely ignored, 400 on a bad payload or
        signature, 500 when processing failed and Stripe should retry
    """
    if webhook_secret is None:
        webhook_secret = get_config().stripe_webhook_secret.get_secret_value()

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError:
        logger.error("Invalid webhook payload")
        return web.Response(status=400, text="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("Invalid webhook signature")
        return web.Response(status=400, text="Invalid signature")

    event_type = event["type"]
    logger.info(f"Received webhook: {event_type} ({event['id']})")

    try:
        reconciliation_event = await translate_event(event, reconciler.store)
        if reconciliation_event is None:
            return web.Response(status=200, text="OK")

        outcome = await reconciler.ingest(reconciliation_event)
        logger.info(f"Webhook {event['id']} {event_type}: {outcome.value}")
        return web.Response(status=200, text=outcome.value)

    except LeagueError as e:
        logger.warning(f"Webhook {event['id']} {event_type} not applied, awaiting redelivery: {e}")
        return web.Response(status=500, text="Retry later")
    except Exception as e:
        logger.exception(f"Error processing webhook {event_type}: {e}")
        return web.Response(status=500, text="Internal error")
