"""Competition owner payout-enablement lifecycle.

NONE -> PENDING -> {ENABLED, BLOCKED}. ENABLED regresses to BLOCKED when the
processor reports a compliance issue; BLOCKED only clears once the processor
reports the issue resolved (manual resolution on its side).
"""

import logging
from datetime import timedelta

from leaguehq.config.settings import AppConfig, get_config
from leaguehq.db.models import ConnectStatus, PayoutStatus, SessionPurpose
from leaguehq.payments.base import (
    Account,
    PaymentProcessor,
    PaymentSession,
    PaymentStore,
    StatusFact,
)
from leaguehq.payments.errors import Conflict, StaleEvent
from leaguehq.payments.locks import SubjectLocks, account_key
from leaguehq.payments.sessions import Clock, SessionBroker, utcnow

logger = logging.getLogger(__name__)

# Stripe requirements.disabled_reason values that need manual resolution.
# "requirements.past_due" only disqualifies once details were submitted;
# during onboarding it means "keep going".
DISQUALIFYING_REASONS = ("rejected.", "listed", "platform_paused", "under_review")


def is_disqualifying(fact: StatusFact) -> bool:
    reason = fact.disabled_reason
    if not reason:
        return False
    if reason.startswith(DISQUALIFYING_REASONS):
        return True
    return fact.details_submitted and reason == "requirements.past_due"


def next_payout_state(fact: StatusFact) -> tuple[PayoutStatus, ConnectStatus]:
    """Target (payout, connect) status implied by a fact.

    Depends on the fact alone, so the newest fact decides the state whatever
    order facts arrive in.
    """
    if is_disqualifying(fact):
        return PayoutStatus.BLOCKED, ConnectStatus.BLOCKED
    if fact.charges_enabled and fact.payouts_enabled:
        return PayoutStatus.ENABLED, ConnectStatus.VERIFIED
    return PayoutStatus.PENDING, ConnectStatus.INCOMPLETE


class PayoutAccountStateMachine:
    """Drives Account.payout_status from onboarding requests and status facts."""

    def __init__(
        self,
        store: PaymentStore,
        broker: SessionBroker,
        processor: PaymentProcessor,
        locks: SubjectLocks,
        config: AppConfig | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.broker = broker
        self.processor = processor
        self.locks = locks
        self.config = config or get_config()
        self.clock = clock

    async def request_onboarding(self, account_id: str) -> PaymentSession:
        """Issue (or re-issue) the owner's onboarding link.

        Args:
            account_id: Owner account

        Returns:
            The open onboarding session; the same one while it is unexpired

        Raises:
            NotFound: Unknown account
            Conflict: Payouts already enabled
            UpstreamUnavailable: Processor call failed
        """
        async with self.locks.hold(account_key(account_id)):
            account = await self.store.get_account(account_id)
            if account.payout_status is PayoutStatus.ENABLED:
                raise Conflict(f"Payouts already enabled for account {account_id}")

            if account.external_account_id is None:
                account.external_account_id = await self.processor.create_connected_account(account)
                account.connect_status = ConnectStatus.INCOMPLETE
                await self.store.save_account(account)

            external_id = account.external_account_id

            async def _create(expires_at):
                return await self.processor.create_onboarding_link(external_id)

            session = await self.broker.request(
                SessionPurpose.ONBOARDING,
                account_id,
                timedelta(minutes=self.config.onboarding_session_ttl_minutes),
                _create,
            )

            if account.payout_status is PayoutStatus.NONE:
                account.payout_status = PayoutStatus.PENDING
                await self.store.save_account(account)
                logger.info(f"Account {account_id}: NONE -> PENDING")

            return session

    async def apply_status_fact(self, account_id: str, fact: StatusFact) -> Account:
        """Apply a capability snapshot, shared by the webhook and poll paths.

        Raises:
            StaleEvent: fact.source_timestamp <= account.last_synced_at
            NotFound: Unknown account
        """
        async with self.locks.hold(account_key(account_id)):
            account = await self.store.get_account(account_id)

            if account.last_synced_at is not None and fact.source_timestamp <= account.last_synced_at:
                raise StaleEvent(
                    f"Account {account_id}: fact at {fact.source_timestamp.isoformat()} "
                    f"not newer than {account.last_synced_at.isoformat()}"
                )

            previous = account.payout_status
            account.payout_status, account.connect_status = next_payout_state(fact)
            account.last_synced_at = fact.source_timestamp

            if account.payout_status is PayoutStatus.ENABLED:
                if account.onboarded_at is None:
                    account.onboarded_at = fact.source_timestamp
                await self.broker.consume_open(SessionPurpose.ONBOARDING, account_id)

            await self.store.save_account(account)

        if account.payout_status is not previous:
            logger.info(f"Account {account_id}: {previous.value} -> {account.payout_status.value}")
        else:
            logger.debug(f"Account {account_id}: status fact confirmed {previous.value}")
        return account
