"""Reconciliation of processor facts into local payment state.

Two ingestion paths converge on the same state-machine transitions:

- push: processor webhooks, deduplicated by idempotency key and recorded in
  the event ledger only after their effects are saved;
- pull: refresh_account / refresh_team query the processor directly and feed
  the result through the same transitions.

Facts are ordered by source timestamp, not arrival: anything not newer than
the subject's watermark is dropped as stale.
"""

import logging
from leaguehq.db.models import EventType, ReconcileOutcome
from leaguehq.payments.base import (
    Account,
    PaymentProcessor,
    PaymentStore,
    ReconciliationEvent,
    StatusFact,
    Team,
)
from leaguehq.payments.errors import Conflict, StaleEvent, ValidationError
from leaguehq.payments.locks import SubjectLocks
from leaguehq.payments.payouts import PayoutAccountStateMachine
from leaguehq.payments.subscriptions import PROCESSOR_STATUS_MAP, SubscriptionStateMachine

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Single decision surface for push and pull reconciliation."""

    def __init__(
        self,
        store: PaymentStore,
        processor: PaymentProcessor,
        payouts: PayoutAccountStateMachine,
        subscriptions: SubscriptionStateMachine,
        locks: SubjectLocks,
    ):
        self.store = store
        self.processor = processor
        self.payouts = payouts
        self.subscriptions = subscriptions
        self.locks = locks

    async def ingest(self, event: ReconciliationEvent) -> ReconcileOutcome:
        """Apply a pushed event at most once.

        Returns:
            APPLIED, DUPLICATE (key seen before), STALE (older than the
            watermark) or REJECTED (invalid transition or malformed event;
            redelivery cannot help)

        Raises:
            Conflict: retryable ordering conflict; the event is not recorded
            NotFound / UpstreamUnavailable / store errors: not recorded, so
                the processor's redelivery applies it later
        """
        async with self.locks.hold(f"event:{event.idempotency_key}"):
            if await self.store.has_event(event.idempotency_key):
                logger.info(f"Duplicate event {event.idempotency_key} ({event.type.value}) dropped")
                return ReconcileOutcome.DUPLICATE

            try:
                await self._dispatch(event)
                outcome = ReconcileOutcome.APPLIED
            except StaleEvent as e:
                logger.info(f"Stale event {event.idempotency_key} dropped: {e}")
                outcome = ReconcileOutcome.STALE
            except Conflict as e:
                if e.retryable:
                    logger.warning(f"Event {event.idempotency_key} deferred: {e}")
                    raise
                logger.warning(f"Event {event.idempotency_key} rejected: {e}")
                outcome = ReconcileOutcome.REJECTED
            except ValidationError as e:
                logger.warning(f"Malformed event {event.idempotency_key} rejected: {e}")
                outcome = ReconcileOutcome.REJECTED

            await self.store.record_event(event, outcome)
            return outcome

    async def _dispatch(self, event: ReconciliationEvent) -> None:
        data = event.data
        ts = event.source_timestamp
        subscription_id = data.get("subscription_id")

        if event.type is EventType.ACCOUNT_STATUS:
            fact = StatusFact(
                charges_enabled=bool(data.get("charges_enabled")),
                payouts_enabled=bool(data.get("payouts_enabled")),
                details_submitted=bool(data.get("details_submitted")),
                disabled_reason=data.get("disabled_reason"),
                source_timestamp=ts,
            )
            await self.payouts.apply_status_fact(event.subject_id, fact)
        elif event.type is EventType.CHECKOUT_COMPLETED:
            if not subscription_id:
                raise ValidationError(f"Checkout event {event.idempotency_key} has no subscription")
            await self.subscriptions.apply_checkout_completed(
                event.subject_id,
                subscription_id,
                ts,
                customer_id=data.get("customer_id"),
                external_session_id=data.get("session_id"),
            )
        elif event.type is EventType.INVOICE_FAILED:
            await self.subscriptions.apply_invoice_failed(
                event.subject_id,
                ts,
                int(data.get("consecutive_failures") or 1),
                subscription_id=subscription_id,
            )
        elif event.type is EventType.INVOICE_PAID:
            await self.subscriptions.apply_invoice_paid(
                event.subject_id, ts, subscription_id=subscription_id
            )
        elif event.type is EventType.SUBSCRIPTION_DELETED:
            await self.subscriptions.apply_subscription_deleted(
                event.subject_id, ts, subscription_id=subscription_id
            )
        elif event.type is EventType.SUBSCRIPTION_UPDATED:
            status = PROCESSOR_STATUS_MAP.get(data.get("status"))
            if status is None:
                raise StaleEvent(f"Untracked subscription status {data.get('status')!r}")
            await self.subscriptions.apply_subscription_updated(
                event.subject_id, status, ts, subscription_id=subscription_id
            )
        else:
            raise ValidationError(f"Unsupported event type {event.type}")

    async def refresh_account(self, account_id: str) -> Account:
        """Pull path for an owner account.

        Raises:
            NotFound: Unknown account
            UpstreamUnavailable: Processor call failed (retryable by the caller)
        """
        account = await self.store.get_account(account_id)
        if account.external_account_id is None:
            logger.warning(f"Account {account_id} has no connected account yet; nothing to refresh")
            return account

        fact = await self.processor.retrieve_account_status(account.external_account_id)
        try:
            return await self.payouts.apply_status_fact(account_id, fact)
        except StaleEvent as e:
            logger.info(f"Refresh of account {account_id} superseded: {e}")
            return await self.store.get_account(account_id)

    async def refresh_team(self, team_id: str) -> Team:
        """Pull path for a team's subscription."""
        team = await self.store.get_team(team_id)
        if team.subscription_id is None:
            return team

        raw_status = await self.processor.retrieve_subscription_status(team.subscription_id)
        status = PROCESSOR_STATUS_MAP.get(raw_status)
        if status is None:
            logger.info(f"Team {team_id}: untracked subscription status {raw_status!r}")
            return team

        try:
            return await self.subscriptions.apply_subscription_updated(
                team_id,
                status,
                self.subscriptions.clock(),
                subscription_id=team.subscription_id,
            )
        except (StaleEvent, Conflict) as e:
            logger.info(f"Refresh of team {team_id} not applied: {e}")
            return await self.store.get_team(team_id)
