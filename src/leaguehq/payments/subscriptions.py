"""Team entry-fee and recurring subscription lifecycle.

PRE_PAYMENT (subscription_status None) -> ACTIVE -> {PAST_DUE -> UNPAID, CANCELED}.
PAST_DUE returns to ACTIVE when a retried invoice is paid. CANCELED and
UNPAID are terminal for that subscription; a new checkout re-joins.

Eligibility is derived (Team.is_eligible) and revoked as soon as the
subscription leaves ACTIVE. The roster lock is asserted on every transition
when the competition's deadline has passed or the owner locked rosters, and
is never cleared here.
"""

import logging
from datetime import datetime
from typing import Callable

from leaguehq.config.settings import AppConfig, get_config
from leaguehq.db.models import SessionPurpose, SubscriptionStatus
from leaguehq.payments import eligibility
from leaguehq.payments.base import PaymentStore, Team
from leaguehq.payments.errors import Conflict, StaleEvent
from leaguehq.payments.locks import SubjectLocks, team_key
from leaguehq.payments.sessions import Clock, SessionBroker, utcnow

logger = logging.getLogger(__name__)

# Stripe subscription.status -> local status; None means "not a billing fact we track"
PROCESSOR_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


class SubscriptionStateMachine:
    """Applies checkout, invoice and subscription facts to a Team."""

    def __init__(
        self,
        store: PaymentStore,
        broker: SessionBroker,
        locks: SubjectLocks,
        config: AppConfig | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.broker = broker
        self.locks = locks
        self.config = config or get_config()
        self.clock = clock

    async def apply_checkout_completed(
        self,
        team_id: str,
        subscription_id: str,
        source_timestamp: datetime,
        customer_id: str | None = None,
        external_session_id: str | None = None,
    ) -> Team:
        """Record the entry fee as paid and start the subscription in ACTIVE.

        Redelivery for the subscription already on the team is a no-op. The
        first payment is saved together with the competition's team count,
        so the count is bumped exactly once per team.

        Raises:
            Conflict: Team already has a live, different subscription
            StaleEvent: Older than the team's watermark
        """
        async with self.locks.hold(team_key(team_id)):
            team = await self.store.get_team(team_id)

            if team.subscription_id == subscription_id:
                logger.info(f"Team {team_id}: checkout for {subscription_id} already applied")
                return team

            if team.subscription_status is not None and not team.subscription_status.is_terminal:
                raise Conflict(
                    f"Team {team_id} already has live subscription {team.subscription_id}"
                )
            self._check_watermark(team, source_timestamp)

            first_payment = not team.entry_fee_paid
            team.entry_fee_paid = True
            if first_payment:
                team.entry_fee_paid_at = source_timestamp
            team.subscription_id = subscription_id
            team.subscription_status = SubscriptionStatus.ACTIVE
            team.customer_id = customer_id or team.customer_id
            team.consecutive_failures = 0
            team.last_synced_at = source_timestamp
            await self._assert_roster_lock(team)

            if first_payment:
                count = await self.store.record_first_payment(team)
                logger.info(f"Competition {team.competition_id}: {count} registered team(s)")
            else:
                await self.store.save_team(team)

            if external_session_id:
                await self.broker.consume_external(external_session_id)
            else:
                await self.broker.consume_open(SessionPurpose.CHECKOUT, team_id)

        logger.info(
            f"Team {team_id}: checkout completed, subscription {subscription_id} ACTIVE "
            f"(eligible={team.is_eligible})"
        )
        return team

    async def apply_invoice_failed(
        self,
        team_id: str,
        source_timestamp: datetime,
        consecutive_failures: int,
        subscription_id: str | None = None,
    ) -> Team:
        """PAST_DUE on a failed renewal; UNPAID once failures exceed the grace threshold."""
        grace = self.config.invoice_failure_grace

        def _mutate(team: Team) -> None:
            team.consecutive_failures = max(consecutive_failures, 1)
            if team.consecutive_failures > grace:
                team.subscription_status = SubscriptionStatus.UNPAID
            else:
                team.subscription_status = SubscriptionStatus.PAST_DUE

        return await self._transition(team_id, source_timestamp, subscription_id, _mutate)

    async def apply_invoice_paid(
        self,
        team_id: str,
        source_timestamp: datetime,
        subscription_id: str | None = None,
    ) -> Team:
        """A renewal (or retried) invoice succeeded: back to ACTIVE."""

        def _mutate(team: Team) -> None:
            team.consecutive_failures = 0
            team.subscription_status = SubscriptionStatus.ACTIVE

        return await self._transition(team_id, source_timestamp, subscription_id, _mutate)

    async def apply_subscription_deleted(
        self,
        team_id: str,
        source_timestamp: datetime,
        subscription_id: str | None = None,
    ) -> Team:
        def _mutate(team: Team) -> None:
            team.subscription_status = SubscriptionStatus.CANCELED

        return await self._transition(team_id, source_timestamp, subscription_id, _mutate)

    async def apply_subscription_updated(
        self,
        team_id: str,
        status: SubscriptionStatus,
        source_timestamp: datetime,
        subscription_id: str | None = None,
    ) -> Team:
        """Mirror a processor-side status change."""

        def _mutate(team: Team) -> None:
            if status is SubscriptionStatus.ACTIVE:
                team.consecutive_failures = 0
            team.subscription_status = status

        return await self._transition(team_id, source_timestamp, subscription_id, _mutate)

    async def _transition(
        self,
        team_id: str,
        source_timestamp: datetime,
        subscription_id: str | None,
        mutate: Callable[[Team], None],
    ) -> Team:
        async with self.locks.hold(team_key(team_id)):
            team = await self.store.get_team(team_id)

            if team.subscription_status is None:
                # Delivered ahead of its checkout completion; the processor retries
                raise Conflict(f"Team {team_id} has no subscription yet", retryable=True)
            if subscription_id is not None and subscription_id != team.subscription_id:
                raise StaleEvent(
                    f"Team {team_id}: fact for {subscription_id}, current is {team.subscription_id}"
                )
            self._check_watermark(team, source_timestamp)
            if team.subscription_status.is_terminal:
                raise Conflict(
                    f"Team {team_id} subscription is {team.subscription_status.value}"
                )

            previous = team.subscription_status
            mutate(team)
            team.last_synced_at = source_timestamp
            await self._assert_roster_lock(team)
            await self.store.save_team(team)

        if team.subscription_status is not previous:
            logger.info(
                f"Team {team_id}: {previous.value} -> {team.subscription_status.value} "
                f"(eligible={team.is_eligible}, roster_locked={team.roster_locked})"
            )
        return team

    def _check_watermark(self, team: Team, source_timestamp: datetime) -> None:
        if team.last_synced_at is not None and source_timestamp <= team.last_synced_at:
            raise StaleEvent(
                f"Team {team.team_id}: fact at {source_timestamp.isoformat()} "
                f"not newer than {team.last_synced_at.isoformat()}"
            )

    async def _assert_roster_lock(self, team: Team) -> None:
        if team.roster_locked:
            return
        competition = await self.store.get_competition(team.competition_id)
        now = self.clock()
        if competition.roster_locked or eligibility.registration_deadline_passed(competition, now):
            team.lock_roster(now)
            logger.info(f"Team {team.team_id}: roster locked")
