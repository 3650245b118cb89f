"""Lightweight table-name constants and status enums."""

from enum import Enum


# Table name constants
class Table:
    """Database table names."""

    ACCOUNTS = "accounts"
    COMPETITIONS = "competitions"
    TEAMS = "teams"
    PAYMENT_SESSIONS = "payment_sessions"
    RECONCILIATION_EVENTS = "reconciliation_events"
    SCHEMA_MIGRATIONS = "schema_migrations"


class PayoutStatus(str, Enum):
    """Competition owner payout enablement."""

    NONE = "NONE"
    PENDING = "PENDING"
    ENABLED = "ENABLED"
    BLOCKED = "BLOCKED"


class ConnectStatus(str, Enum):
    """Processor-side verification of the owner's connected account."""

    NOT_STARTED = "NOT_STARTED"
    INCOMPLETE = "INCOMPLETE"
    VERIFIED = "VERIFIED"
    BLOCKED = "BLOCKED"


class CompetitionStatus(str, Enum):
    """Competition lifecycle."""

    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (CompetitionStatus.COMPLETED, CompetitionStatus.CANCELLED)

    def can_transition_to(self, target: "CompetitionStatus") -> bool:
        """Forward-only, one step at a time; CANCELLED from any non-terminal state."""
        if self.is_terminal:
            return False
        if target is CompetitionStatus.CANCELLED:
            return True
        return _COMPETITION_NEXT.get(self) is target


_COMPETITION_NEXT = {
    CompetitionStatus.DRAFT: CompetitionStatus.PUBLISHED,
    CompetitionStatus.PUBLISHED: CompetitionStatus.ACTIVE,
    CompetitionStatus.ACTIVE: CompetitionStatus.COMPLETED,
}


class SubscriptionStatus(str, Enum):
    """Team subscription status (None on the team until the first payment)."""

    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID)


class SessionPurpose(str, Enum):
    """External redirect session kinds."""

    ONBOARDING = "ONBOARDING"
    CHECKOUT = "CHECKOUT"
    PORTAL = "PORTAL"


class EventType(str, Enum):
    """Reconciliation fact kinds."""

    ACCOUNT_STATUS = "ACCOUNT_STATUS"
    CHECKOUT_COMPLETED = "CHECKOUT_COMPLETED"
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_FAILED = "INVOICE_FAILED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_DELETED = "SUBSCRIPTION_DELETED"


class ReconcileOutcome(str, Enum):
    """Result of ingesting one reconciliation event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    REJECTED = "rejected"
