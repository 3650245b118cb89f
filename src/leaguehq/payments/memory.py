"""In-memory PaymentStore for local development and tests."""

import copy
from datetime import datetime
from typing import Optional

from leaguehq.db.models import ReconcileOutcome, SessionPurpose
from leaguehq.payments.base import (
    Account,
    Competition,
    PaymentSession,
    PaymentStore,
    ReconciliationEvent,
    Team,
)
from leaguehq.payments.errors import NotFound


class MemoryStore(PaymentStore):
    """Dict-backed store. Records are copied in and out like rows."""

    def __init__(self):
        self.accounts: dict[str, Account] = {}
        self.competitions: dict[str, Competition] = {}
        self.teams: dict[str, Team] = {}
        self.sessions: dict[str, PaymentSession] = {}
        self.events: dict[str, tuple[ReconciliationEvent, ReconcileOutcome]] = {}

    async def get_account(self, account_id: str) -> Account:
        if account_id not in self.accounts:
            raise NotFound(f"Account {account_id} not found")
        return copy.copy(self.accounts[account_id])

    async def find_account_by_external_id(self, external_account_id: str) -> Optional[Account]:
        for account in self.accounts.values():
            if account.external_account_id == external_account_id:
                return copy.copy(account)
        return None

    async def save_account(self, account: Account) -> None:
        self.accounts[account.account_id] = copy.copy(account)

    async def get_competition(self, competition_id: str) -> Competition:
        if competition_id not in self.competitions:
            raise NotFound(f"Competition {competition_id} not found")
        return copy.copy(self.competitions[competition_id])

    async def save_competition(self, competition: Competition) -> None:
        self.competitions[competition.competition_id] = copy.copy(competition)

    async def get_team(self, team_id: str) -> Team:
        if team_id not in self.teams:
            raise NotFound(f"Team {team_id} not found")
        return copy.copy(self.teams[team_id])

    async def find_team_by_subscription(self, subscription_id: str) -> Optional[Team]:
        for team in self.teams.values():
            if team.subscription_id == subscription_id:
                return copy.copy(team)
        return None

    async def team_name_taken(self, competition_id: str, name: str) -> bool:
        return any(
            t.competition_id == competition_id and t.name == name
            for t in self.teams.values()
        )

    async def list_teams(self, competition_id: str) -> list[Team]:
        return [
            copy.copy(t) for t in self.teams.values() if t.competition_id == competition_id
        ]

    async def save_team(self, team: Team) -> None:
        self.teams[team.team_id] = copy.copy(team)

    async def record_first_payment(self, team: Team) -> int:
        if team.competition_id not in self.competitions:
            raise NotFound(f"Competition {team.competition_id} not found")
        competition = self.competitions[team.competition_id]
        self.teams[team.team_id] = copy.copy(team)
        competition.current_team_count += 1
        return competition.current_team_count

    async def delete_team(self, team_id: str) -> None:
        team = self.teams.get(team_id)
        if team is not None and not team.entry_fee_paid:
            del self.teams[team_id]

    async def find_open_session(
        self, purpose: SessionPurpose, subject_id: str, now: datetime
    ) -> Optional[PaymentSession]:
        for session in self.sessions.values():
            if (
                session.purpose is purpose
                and session.subject_id == subject_id
                and session.is_open(now)
            ):
                return copy.copy(session)
        return None

    async def discard_expired_sessions(
        self, purpose: SessionPurpose, subject_id: str, now: datetime
    ) -> int:
        expired = [
            s.session_id
            for s in self.sessions.values()
            if s.purpose is purpose
            and s.subject_id == subject_id
            and not s.consumed
            and now >= s.expires_at
        ]
        for session_id in expired:
            del self.sessions[session_id]
        return len(expired)

    async def get_session(self, session_id: str) -> PaymentSession:
        if session_id not in self.sessions:
            raise NotFound(f"Session {session_id} not found")
        return copy.copy(self.sessions[session_id])

    async def find_session_by_external_id(self, external_id: str) -> Optional[PaymentSession]:
        for session in self.sessions.values():
            if session.external_id == external_id:
                return copy.copy(session)
        return None

    async def save_session(self, session: PaymentSession) -> None:
        self.sessions[session.session_id] = copy.copy(session)

    async def has_event(self, idempotency_key: str) -> bool:
        return idempotency_key in self.events

    async def record_event(self, event: ReconciliationEvent, outcome: ReconcileOutcome) -> None:
        self.events.setdefault(event.idempotency_key, (event, outcome))
