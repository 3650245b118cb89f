"""PostgreSQL PaymentStore backed by the asyncpg pool.

Account and team writes carry an optimistic guard on ``last_synced_at``: a
save whose watermark is older than the stored one updates nothing and is
reported as a retryable Conflict, so a second process racing on the same
subject cannot regress it.
"""

import logging
from datetime import datetime
from typing import Optional

import asyncpg

from leaguehq.db.models import (
    CompetitionStatus,
    ConnectStatus,
    PayoutStatus,
    ReconcileOutcome,
    SessionPurpose,
    SubscriptionStatus,
    Table,
)
from leaguehq.payments.base import (
    Account,
    Competition,
    PaymentSession,
    PaymentStore,
    ReconciliationEvent,
    Team,
)
from leaguehq.payments.errors import Conflict, NotFound

logger = logging.getLogger(__name__)


def _rows_affected(status: str) -> int:
    """Parse asyncpg's command status tag, e.g. 'INSERT 0 1' or 'UPDATE 0'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _account_from_row(row) -> Account:
    return Account(
        account_id=row["account_id"],
        payout_status=PayoutStatus(row["payout_status"]),
        connect_status=ConnectStatus(row["connect_status"]),
        external_account_id=row["external_account_id"],
        email=row["email"],
        last_synced_at=row["last_synced_at"],
        onboarded_at=row["onboarded_at"],
    )


def _competition_from_row(row) -> Competition:
    return Competition(
        competition_id=row["competition_id"],
        account_id=row["account_id"],
        name=row["name"],
        max_teams=row["max_teams"],
        status=CompetitionStatus(row["status"]),
        current_team_count=row["current_team_count"],
        registration_deadline=row["registration_deadline"],
        entry_fee_cents=row["entry_fee_cents"],
        platform_fee_percentage=float(row["platform_fee_percentage"]),
        roster_locked=row["roster_locked"],
        published_at=row["published_at"],
    )


def _team_from_row(row) -> Team:
    status = row["subscription_status"]
    return Team(
        team_id=row["team_id"],
        competition_id=row["competition_id"],
        coach_id=row["coach_id"],
        name=row["name"],
        entry_fee_paid=row["entry_fee_paid"],
        entry_fee_paid_at=row["entry_fee_paid_at"],
        subscription_id=row["subscription_id"],
        subscription_status=SubscriptionStatus(status) if status else None,
        customer_id=row["customer_id"],
        consecutive_failures=row["consecutive_failures"],
        roster_locked=row["roster_locked"],
        roster_locked_at=row["roster_locked_at"],
        last_synced_at=row["last_synced_at"],
    )


def _session_from_row(row) -> PaymentSession:
    return PaymentSession(
        session_id=row["session_id"],
        purpose=SessionPurpose(row["purpose"]),
        subject_id=row["subject_id"],
        url=row["url"],
        external_id=row["external_id"],
        expires_at=row["expires_at"],
        consumed=row["consumed"],
        created_at=row["created_at"],
    )


class PostgresStore(PaymentStore):
    """PaymentStore over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def _fetchrow(self, query: str, *args):
        async with self._pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def _execute(self, query: str, *args) -> str:
        async with self._pool.acquire() as conn:
            return await conn.execute(query, *args)

    # Accounts

    async def get_account(self, account_id: str) -> Account:
        row = await self._fetchrow(
            f"SELECT * FROM {Table.ACCOUNTS} WHERE account_id = $1", account_id
        )
        if row is None:
            raise NotFound(f"Account {account_id} not found")
        return _account_from_row(row)

    async def find_account_by_external_id(self, external_account_id: str) -> Optional[Account]:
        row = await self._fetchrow(
            f"SELECT * FROM {Table.ACCOUNTS} WHERE external_account_id = $1",
            external_account_id,
        )
        return _account_from_row(row) if row else None

    async def save_account(self, account: Account) -> None:
        status = await self._execute(
            f"""
            INSERT INTO {Table.ACCOUNTS}
                (account_id, payout_status, connect_status, external_account_id,
                 email, last_synced_at, onboarded_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (account_id) DO UPDATE SET
                payout_status = EXCLUDED.payout_status,
                connect_status = EXCLUDED.connect_status,
                external_account_id = EXCLUDED.external_account_id,
                email = EXCLUDED.email,
                last_synced_at = EXCLUDED.last_synced_at,
                onboarded_at = EXCLUDED.onboarded_at,
                updated_at = now()
            WHERE {Table.ACCOUNTS}.last_synced_at IS NULL
               OR {Table.ACCOUNTS}.last_synced_at <= EXCLUDED.last_synced_at
            """,
            account.account_id,
            account.payout_status.value,
            account.connect_status.value,
            account.external_account_id,
            account.email,
            account.last_synced_at,
            account.onboarded_at,
        )
        if _rows_affected(status) == 0:
            logger.warning(f"Account {account.account_id} watermark moved; save rejected")
            raise Conflict(f"Account {account.account_id} was updated concurrently", retryable=True)

    # Competitions

    async def get_competition(self, competition_id: str) -> Competition:
        row = await self._fetchrow(
            f"SELECT * FROM {Table.COMPETITIONS} WHERE competition_id = $1", competition_id
        )
        if row is None:
            raise NotFound(f"Competition {competition_id} not found")
        return _competition_from_row(row)

    async def save_competition(self, competition: Competition) -> None:
        # current_team_count is owned by record_first_payment
        await self._execute(
            f"""
            INSERT INTO {Table.COMPETITIONS}
                (competition_id, account_id, name, status, max_teams, current_team_count,
                 registration_deadline, entry_fee_cents, platform_fee_percentage,
                 roster_locked, published_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (competition_id) DO UPDATE SET
                name = EXCLUDED.name,
                status = EXCLUDED.status,
                max_teams = EXCLUDED.max_teams,
                registration_deadline = EXCLUDED.registration_deadline,
                entry_fee_cents = EXCLUDED.entry_fee_cents,
                platform_fee_percentage = EXCLUDED.platform_fee_percentage,
                roster_locked = {Table.COMPETITIONS}.roster_locked OR EXCLUDED.roster_locked,
                published_at = EXCLUDED.published_at,
                updated_at = now()
            """,
            competition.competition_id,
            competition.account_id,
            competition.name,
            competition.status.value,
            competition.max_teams,
            competition.current_team_count,
            competition.registration_deadline,
            competition.entry_fee_cents,
            competition.platform_fee_percentage,
            competition.roster_locked,
            competition.published_at,
        )

    # Teams

    async def get_team(self, team_id: str) -> Team:
        row = await self._fetchrow(f"SELECT * FROM {Table.TEAMS} WHERE team_id = $1", team_id)
        if row is None:
            raise NotFound(f"Team {team_id} not found")
        return _team_from_row(row)

    async def find_team_by_subscription(self, subscription_id: str) -> Optional[Team]:
        row = await self._fetchrow(
            f"SELECT * FROM {Table.TEAMS} WHERE subscription_id = $1", subscription_id
        )
        return _team_from_row(row) if row else None

    async def team_name_taken(self, competition_id: str, name: str) -> bool:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(
                f"SELECT EXISTS(SELECT 1 FROM {Table.TEAMS} WHERE competition_id = $1 AND name = $2)",
                competition_id,
                name,
            )

    async def list_teams(self, competition_id: str) -> list[Team]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM {Table.TEAMS} WHERE competition_id = $1 ORDER BY registered_at DESC",
                competition_id,
            )
        return [_team_from_row(row) for row in rows]

    async def _upsert_team(self, conn, team: Team) -> None:
        # roster_locked is OR-ed so a stale writer can never clear it
        status = await conn.execute(
            f"""
            INSERT INTO {Table.TEAMS}
                (team_id, competition_id, coach_id, name, entry_fee_paid, entry_fee_paid_at,
                 subscription_id, subscription_status, customer_id, consecutive_failures,
                 roster_locked, roster_locked_at, last_synced_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            ON CONFLICT (team_id) DO UPDATE SET
                entry_fee_paid = EXCLUDED.entry_fee_paid,
                entry_fee_paid_at = EXCLUDED.entry_fee_paid_at,
                subscription_id = EXCLUDED.subscription_id,
                subscription_status = EXCLUDED.subscription_status,
                customer_id = EXCLUDED.customer_id,
                consecutive_failures = EXCLUDED.consecutive_failures,
                roster_locked = {Table.TEAMS}.roster_locked OR EXCLUDED.roster_locked,
                roster_locked_at = COALESCE({Table.TEAMS}.roster_locked_at, EXCLUDED.roster_locked_at),
                last_synced_at = EXCLUDED.last_synced_at,
                updated_at = now()
            WHERE {Table.TEAMS}.last_synced_at IS NULL
               OR {Table.TEAMS}.last_synced_at <= EXCLUDED.last_synced_at
            """,
            team.team_id,
            team.competition_id,
            team.coach_id,
            team.name,
            team.entry_fee_paid,
            team.entry_fee_paid_at,
            team.subscription_id,
            team.subscription_status.value if team.subscription_status else None,
            team.customer_id,
            team.consecutive_failures,
            team.roster_locked,
            team.roster_locked_at,
            team.last_synced_at,
        )
        if _rows_affected(status) == 0:
            logger.warning(f"Team {team.team_id} watermark moved; save rejected")
            raise Conflict(f"Team {team.team_id} was updated concurrently", retryable=True)

    async def save_team(self, team: Team) -> None:
        async with self._pool.acquire() as conn:
            await self._upsert_team(conn, team)

    async def record_first_payment(self, team: Team) -> int:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._upsert_team(conn, team)
                row = await conn.fetchrow(
                    f"""
                    UPDATE {Table.COMPETITIONS}
                    SET current_team_count = current_team_count + 1, updated_at = now()
                    WHERE competition_id = $1
                    RETURNING current_team_count
                    """,
                    team.competition_id,
                )
                if row is None:
                    raise NotFound(f"Competition {team.competition_id} not found")
        return row["current_team_count"]

    async def delete_team(self, team_id: str) -> None:
        await self._execute(
            f"DELETE FROM {Table.TEAMS} WHERE team_id = $1 AND NOT entry_fee_paid", team_id
        )

    # Sessions

    async def find_open_session(
        self, purpose: SessionPurpose, subject_id: str, now: datetime
    ) -> Optional[PaymentSession]:
        row = await self._fetchrow(
            f"""
            SELECT * FROM {Table.PAYMENT_SESSIONS}
            WHERE purpose = $1 AND subject_id = $2 AND NOT consumed AND expires_at > $3
            ORDER BY created_at DESC
            LIMIT 1
            """,
            purpose.value,
            subject_id,
            now,
        )
        return _session_from_row(row) if row else None

    async def discard_expired_sessions(
        self, purpose: SessionPurpose, subject_id: str, now: datetime
    ) -> int:
        status = await self._execute(
            f"""
            DELETE FROM {Table.PAYMENT_SESSIONS}
            WHERE purpose = $1 AND subject_id = $2 AND NOT consumed AND expires_at <= $3
            """,
            purpose.value,
            subject_id,
            now,
        )
        return _rows_affected(status)

    async def get_session(self, session_id: str) -> PaymentSession:
        row = await self._fetchrow(
            f"SELECT * FROM {Table.PAYMENT_SESSIONS} WHERE session_id = $1", session_id
        )
        if row is None:
            raise NotFound(f"Session {session_id} not found")
        return _session_from_row(row)

    async def find_session_by_external_id(self, external_id: str) -> Optional[PaymentSession]:
        row = await self._fetchrow(
            f"SELECT * FROM {Table.PAYMENT_SESSIONS} WHERE external_id = $1", external_id
        )
        return _session_from_row(row) if row else None

    async def save_session(self, session: PaymentSession) -> None:
        try:
            await self._execute(
                f"""
                INSERT INTO {Table.PAYMENT_SESSIONS}
                    (session_id, purpose, subject_id, url, external_id, expires_at, consumed)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (session_id) DO UPDATE SET
                    consumed = {Table.PAYMENT_SESSIONS}.consumed OR EXCLUDED.consumed
                """,
                session.session_id,
                session.purpose.value,
                session.subject_id,
                session.url,
                session.external_id,
                session.expires_at,
                session.consumed,
            )
        except asyncpg.UniqueViolationError as e:
            # uq_payment_sessions_open: another process opened one first
            raise Conflict(
                f"Open {session.purpose.value} session already exists for {session.subject_id}"
            ) from e

    # Reconciliation ledger

    async def has_event(self, idempotency_key: str) -> bool:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(
                f"SELECT EXISTS(SELECT 1 FROM {Table.RECONCILIATION_EVENTS} WHERE idempotency_key = $1)",
                idempotency_key,
            )

    async def record_event(self, event: ReconciliationEvent, outcome: ReconcileOutcome) -> None:
        await self._execute(
            f"""
            INSERT INTO {Table.RECONCILIATION_EVENTS}
                (idempotency_key, subject_id, event_type, source_timestamp, outcome)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (idempotency_key) DO NOTHING
            """,
            event.idempotency_key,
            event.subject_id,
            event.type.value,
            event.source_timestamp,
            outcome.value,
        )
