"""Eligibility gate: pure predicates over payment state.

Every authorization and display decision about publishing, registering and
roster editing goes through these functions; callers never recompute them
inline. No I/O, no mutation, safe to call repeatedly.
"""

from datetime import datetime
from enum import Enum

from leaguehq.db.models import CompetitionStatus, PayoutStatus
from leaguehq.payments.base import Account, Competition, Team


class OnboardingAction(str, Enum):
    """Remediation offered to an owner whose payouts are not enabled."""

    NONE = "none"
    START = "start"
    RESUME = "resume"


def can_accept_payments(account: Account) -> bool:
    """Owner's connected account can take charges and receive payouts."""
    return account.payout_status is PayoutStatus.ENABLED


def can_publish(competition: Competition, account: Account) -> bool:
    """Draft competition whose owner can receive payouts."""
    return competition.status is CompetitionStatus.DRAFT and can_accept_payments(account)


def registration_deadline_passed(competition: Competition, now: datetime) -> bool:
    return competition.registration_deadline is not None and now >= competition.registration_deadline


def registration_refusal(competition: Competition, now: datetime) -> str | None:
    """Human-readable reason registration is closed, or None when open.

    A competition without a deadline stays open until it is full.
    """
    if competition.status is not CompetitionStatus.PUBLISHED:
        return "Competition is not open for registration"
    if registration_deadline_passed(competition, now):
        return "Registration deadline has passed"
    if competition.current_team_count >= competition.max_teams:
        return "Competition is full"
    return None


def is_registration_open(competition: Competition, now: datetime) -> bool:
    """Published, before the deadline and not full."""
    return registration_refusal(competition, now) is None


def is_roster_editable(team: Team) -> bool:
    return not team.roster_locked and team.is_eligible


def needs_payout_onboarding(competition: Competition, account: Account) -> bool:
    return (
        competition.status is CompetitionStatus.DRAFT
        and not can_accept_payments(account)
    )


def onboarding_action(account: Account) -> OnboardingAction:
    """Resume an in-flight onboarding, start a new one, or nothing to do."""
    if account.payout_status is PayoutStatus.ENABLED:
        return OnboardingAction.NONE
    if account.payout_status is PayoutStatus.PENDING:
        return OnboardingAction.RESUME
    return OnboardingAction.START
