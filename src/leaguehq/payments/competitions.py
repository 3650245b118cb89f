"""Competition and team flows that sit on top of the eligibility gate.

Publishing, team registration, the billing-portal hand-off and roster
locking. Each flow consults EligibilityGate and raises Conflict when it
refuses; none of them recomputes a predicate inline.
"""

import logging
import uuid
from datetime import timedelta

from leaguehq.config.settings import AppConfig, get_config
from leaguehq.db.models import CompetitionStatus, SessionPurpose
from leaguehq.payments import eligibility
from leaguehq.payments.base import (
    Account,
    Competition,
    PaymentProcessor,
    PaymentSession,
    PaymentStore,
    Team,
)
from leaguehq.payments.errors import Conflict, Forbidden, ValidationError
from leaguehq.payments.locks import SubjectLocks, competition_key, team_key
from leaguehq.payments.sessions import Clock, SessionBroker, utcnow

logger = logging.getLogger(__name__)

MAX_TEAM_NAME_LENGTH = 100


class CompetitionService:
    """Owner and coach operations gated on payment state."""

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

    async def _owned_competition(self, competition_id: str, account_id: str) -> Competition:
        competition = await self.store.get_competition(competition_id)
        if competition.account_id != account_id:
            raise Forbidden(f"Competition {competition_id} is not owned by {account_id}")
        return competition

    async def publish(self, competition_id: str, account_id: str) -> Competition:
        """DRAFT -> PUBLISHED, only once the owner's payouts are enabled.

        Raises:
            Forbidden: Caller does not own the competition
            Conflict: can_publish is false
        """
        async with self.locks.hold(competition_key(competition_id)):
            competition = await self._owned_competition(competition_id, account_id)
            account = await self.store.get_account(competition.account_id)

            if not eligibility.can_publish(competition, account):
                if eligibility.needs_payout_onboarding(competition, account):
                    action = eligibility.onboarding_action(account)
                    raise Conflict(
                        "Cannot publish competition: payout onboarding required "
                        f"({action.value})"
                    )
                raise Conflict(f"Cannot publish a {competition.status.value} competition")

            competition.status = CompetitionStatus.PUBLISHED
            competition.published_at = self.clock()
            await self.store.save_competition(competition)

        logger.info(f"Competition {competition_id} published by {account_id}")
        return competition

    async def advance_status(
        self, competition_id: str, account_id: str, target: CompetitionStatus
    ) -> Competition:
        """Forward-only lifecycle moves after publishing, plus cancellation."""
        if target is CompetitionStatus.PUBLISHED:
            return await self.publish(competition_id, account_id)

        async with self.locks.hold(competition_key(competition_id)):
            competition = await self._owned_competition(competition_id, account_id)
            if not competition.status.can_transition_to(target):
                raise Conflict(
                    f"Competition {competition_id} cannot move "
                    f"{competition.status.value} -> {target.value}"
                )
            previous = competition.status
            competition.status = target
            await self.store.save_competition(competition)

        logger.info(f"Competition {competition_id}: {previous.value} -> {target.value}")
        return competition

    async def register_team(
        self, competition_id: str, coach_id: str, team_name: str
    ) -> tuple[Team, PaymentSession]:
        """Create a team and open its checkout session.

        The team only persists once its checkout session exists, so a failed
        attempt can be retried with the same name.

        Raises:
            ValidationError: Empty or overlong team name
            Conflict: Registration closed, owner cannot take payments, or
                team name taken
            UpstreamUnavailable: Checkout session could not be created
        """
        team_name = (team_name or "").strip()
        if not team_name:
            raise ValidationError("Team name is required")
        if len(team_name) > MAX_TEAM_NAME_LENGTH:
            raise ValidationError(f"Team name exceeds {MAX_TEAM_NAME_LENGTH} characters")

        async with self.locks.hold(competition_key(competition_id)):
            competition = await self.store.get_competition(competition_id)
            refusal = eligibility.registration_refusal(competition, self.clock())
            if refusal:
                raise Conflict(refusal)
            owner = await self._payable_owner(competition)
            if await self.store.team_name_taken(competition_id, team_name):
                raise Conflict(f"Team name {team_name!r} already exists in this competition")

            team = Team(
                team_id=str(uuid.uuid4()),
                competition_id=competition_id,
                coach_id=coach_id,
                name=team_name,
            )
            await self.store.save_team(team)

        try:
            session = await self._checkout_session(team, competition, owner)
        except Exception as e:
            async with self.locks.hold(competition_key(competition_id)):
                await self.store.delete_team(team.team_id)
            logger.warning(f"Team {team_name!r} in {competition_id} rolled back, checkout failed: {e}")
            raise

        logger.info(f"Team {team.team_id} ({team_name}) registered in {competition_id} by {coach_id}")
        return team, session

    async def checkout(self, team_id: str, coach_id: str) -> PaymentSession:
        """(Re)open checkout for an unpaid team, or to re-join after a terminal subscription."""
        team = await self._coached_team(team_id, coach_id)
        if team.subscription_status is not None and not team.subscription_status.is_terminal:
            raise Conflict(f"Team {team_id} already has a live subscription")
        competition = await self.store.get_competition(team.competition_id)
        if not team.entry_fee_paid:
            refusal = eligibility.registration_refusal(competition, self.clock())
            if refusal:
                raise Conflict(refusal)
        owner = await self._payable_owner(competition)
        return await self._checkout_session(team, competition, owner)

    async def _payable_owner(self, competition: Competition) -> Account:
        owner = await self.store.get_account(competition.account_id)
        if not eligibility.can_accept_payments(owner):
            raise Conflict("Competition owner cannot accept payments")
        return owner

    async def _checkout_session(
        self, team: Team, competition: Competition, owner: Account
    ) -> PaymentSession:
        async def _create(expires_at):
            return await self.processor.create_checkout_session(team, competition, owner, expires_at)

        return await self.broker.request(
            SessionPurpose.CHECKOUT,
            team.team_id,
            timedelta(minutes=self.config.checkout_session_ttl_minutes),
            _create,
        )

    async def update_payment(self, team_id: str, coach_id: str) -> PaymentSession:
        """Billing-portal session so the coach can fix a failing payment method."""
        team = await self._coached_team(team_id, coach_id)
        if not team.customer_id:
            raise Conflict(f"No payment method on file for team {team_id}")
        customer_id = team.customer_id

        async def _create(expires_at):
            return await self.processor.create_portal_session(customer_id)

        return await self.broker.request(
            SessionPurpose.PORTAL,
            team_id,
            timedelta(minutes=self.config.portal_session_ttl_minutes),
            _create,
        )

    async def _coached_team(self, team_id: str, coach_id: str) -> Team:
        team = await self.store.get_team(team_id)
        if team.coach_id != coach_id:
            raise Forbidden(f"Team {team_id} is not coached by {coach_id}")
        return team

    async def get_team(self, team_id: str, user_id: str) -> Team:
        """Team as seen by its coach or the competition owner."""
        team = await self.store.get_team(team_id)
        if team.coach_id != user_id:
            competition = await self.store.get_competition(team.competition_id)
            if competition.account_id != user_id:
                raise Forbidden(f"Team {team_id} is not visible to {user_id}")
        return team

    async def complete_session(self, session_id: str, user_id: str) -> PaymentSession:
        """Explicit completion callback from the user the session was issued to.

        Onboarding sessions belong to the owner account; checkout and portal
        sessions to the team's coach.

        Raises:
            NotFound: Unknown session
            Forbidden: Session was issued to someone else
        """
        session = await self.store.get_session(session_id)
        if session.purpose is SessionPurpose.ONBOARDING:
            issued_to = session.subject_id
        else:
            issued_to = (await self.store.get_team(session.subject_id)).coach_id
        if issued_to != user_id:
            raise Forbidden(f"Session {session_id} was not issued to {user_id}")
        return await self.broker.consume(session_id)

    async def lock_roster(self, team_id: str, account_id: str) -> Team:
        """Owner freezes one team's roster. Irreversible."""
        async with self.locks.hold(team_key(team_id)):
            team = await self.store.get_team(team_id)
            await self._owned_competition(team.competition_id, account_id)
            if team.lock_roster(self.clock()):
                await self.store.save_team(team)
                logger.info(f"Team {team_id}: roster locked by owner {account_id}")
        return team

    async def lock_competition_rosters(self, competition_id: str, account_id: str) -> int:
        """Owner freezes every roster in the competition. Returns teams newly locked."""
        async with self.locks.hold(competition_key(competition_id)):
            competition = await self._owned_competition(competition_id, account_id)
            competition.roster_locked = True
            await self.store.save_competition(competition)

        locked = 0
        for team in await self.store.list_teams(competition_id):
            async with self.locks.hold(team_key(team.team_id)):
                current = await self.store.get_team(team.team_id)
                if current.lock_roster(self.clock()):
                    await self.store.save_team(current)
                    locked += 1

        logger.info(f"Competition {competition_id}: rosters locked ({locked} newly)")
        return locked
