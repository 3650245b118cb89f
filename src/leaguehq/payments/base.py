"""Abstract base classes and canonical record schemas for payment state."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from leaguehq.db.models import (
    CompetitionStatus,
    ConnectStatus,
    EventType,
    PayoutStatus,
    ReconcileOutcome,
    SessionPurpose,
    SubscriptionStatus,
)


# Canonical record schemas
@dataclass
class Account:
    """Competition owner's payout account."""

    account_id: str
    payout_status: PayoutStatus = PayoutStatus.NONE
    connect_status: ConnectStatus = ConnectStatus.NOT_STARTED
    external_account_id: str | None = None
    email: str | None = None
    last_synced_at: datetime | None = None  # watermark, never regresses
    onboarded_at: datetime | None = None


@dataclass
class Competition:
    """Competition owned by exactly one account."""

    competition_id: str
    account_id: str
    name: str
    max_teams: int
    status: CompetitionStatus = CompetitionStatus.DRAFT
    current_team_count: int = 0
    registration_deadline: datetime | None = None
    entry_fee_cents: int = 0
    platform_fee_percentage: float = 8.0
    roster_locked: bool = False  # owner's explicit lock for every team
    published_at: datetime | None = None


@dataclass
class Team:
    """Team registered by a coach in one competition."""

    team_id: str
    competition_id: str
    coach_id: str
    name: str
    entry_fee_paid: bool = False
    entry_fee_paid_at: datetime | None = None
    subscription_id: str | None = None
    subscription_status: SubscriptionStatus | None = None  # None = pre-payment
    customer_id: str | None = None
    consecutive_failures: int = 0
    roster_locked: bool = False  # monotonic
    roster_locked_at: datetime | None = None
    last_synced_at: datetime | None = None

    @property
    def is_eligible(self) -> bool:
        return self.entry_fee_paid and self.subscription_status is SubscriptionStatus.ACTIVE

    def lock_roster(self, now: datetime) -> bool:
        """Freeze the roster. Returns True if this call changed it."""
        if self.roster_locked:
            return False
        self.roster_locked = True
        self.roster_locked_at = now
        return True


@dataclass
class PaymentSession:
    """Single-use external redirect (onboarding link, checkout, billing portal)."""

    session_id: str
    purpose: SessionPurpose
    subject_id: str
    url: str
    expires_at: datetime
    external_id: str | None = None
    consumed: bool = False
    created_at: datetime | None = None

    def is_open(self, now: datetime) -> bool:
        return not self.consumed and now < self.expires_at


@dataclass
class ExternalSession:
    """Session as returned by the processor, before it is persisted."""

    url: str
    expires_at: datetime | None = None
    external_id: str | None = None


@dataclass
class StatusFact:
    """Connected-account capability snapshot, from a webhook or a poll."""

    charges_enabled: bool
    payouts_enabled: bool
    source_timestamp: datetime
    details_submitted: bool = False
    disabled_reason: str | None = None


@dataclass
class ReconciliationEvent:
    """Processor-delivered or poll-derived fact about one subject."""

    subject_id: str
    type: EventType
    source_timestamp: datetime
    idempotency_key: str
    data: dict[str, Any] = field(default_factory=dict)


# Abstract base classes
class PaymentStore(ABC):
    """Persistence for accounts, competitions, teams, sessions and the event ledger.

    Getters raise NotFound for unknown ids; finders return None.
    """

    @abstractmethod
    async def get_account(self, account_id: str) -> Account:
        pass

    @abstractmethod
    async def find_account_by_external_id(self, external_account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def save_account(self, account: Account) -> None:
        pass

    @abstractmethod
    async def get_competition(self, competition_id: str) -> Competition:
        pass

    @abstractmethod
    async def save_competition(self, competition: Competition) -> None:
        pass

    @abstractmethod
    async def get_team(self, team_id: str) -> Team:
        pass

    @abstractmethod
    async def find_team_by_subscription(self, subscription_id: str) -> Optional[Team]:
        pass

    @abstractmethod
    async def team_name_taken(self, competition_id: str, name: str) -> bool:
        pass

    @abstractmethod
    async def list_teams(self, competition_id: str) -> list[Team]:
        pass

    @abstractmethod
    async def save_team(self, team: Team) -> None:
        pass

    @abstractmethod
    async def record_first_payment(self, team: Team) -> int:
        """Save a newly paid team and bump its competition's current_team_count.

        Both writes land together or not at all. Returns the new count.
        """
        pass

    @abstractmethod
    async def delete_team(self, team_id: str) -> None:
        """Remove a team that never reached checkout."""
        pass

    @abstractmethod
    async def find_open_session(
        self, purpose: SessionPurpose, subject_id: str, now: datetime
    ) -> Optional[PaymentSession]:
        pass

    @abstractmethod
    async def discard_expired_sessions(
        self, purpose: SessionPurpose, subject_id: str, now: datetime
    ) -> int:
        """Delete expired, unconsumed sessions. Returns the number removed."""
        pass

    @abstractmethod
    async def get_session(self, session_id: str) -> PaymentSession:
        pass

    @abstractmethod
    async def find_session_by_external_id(self, external_id: str) -> Optional[PaymentSession]:
        pass

    @abstractmethod
    async def save_session(self, session: PaymentSession) -> None:
        pass

    @abstractmethod
    async def has_event(self, idempotency_key: str) -> bool:
        pass

    @abstractmethod
    async def record_event(self, event: ReconciliationEvent, outcome: ReconcileOutcome) -> None:
        pass


class PaymentProcessor(ABC):
    """External payment processor interface.

    Implementations raise UpstreamUnavailable on transport or API errors.
    """

    @abstractmethod
    async def create_connected_account(self, account: Account) -> str:
        """Create the owner's connected account. Returns its external id."""
        pass

    @abstractmethod
    async def create_onboarding_link(self, external_account_id: str) -> ExternalSession:
        pass

    @abstractmethod
    async def retrieve_account_status(self, external_account_id: str) -> StatusFact:
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        team: Team,
        competition: Competition,
        owner: Account,
        expires_at: datetime,
    ) -> ExternalSession:
        pass

    @abstractmethod
    async def create_portal_session(self, customer_id: str) -> ExternalSession:
        pass

    @abstractmethod
    async def retrieve_subscription_status(self, subscription_id: str) -> str:
        """Current processor-side status string (e.g. 'active', 'past_due')."""
        pass
