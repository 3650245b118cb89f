"""Shared fixtures: in-memory store, fake processor, fixed clock and wired services."""

from datetime import datetime, timedelta, timezone

import pytest

from leaguehq.config.settings import AppConfig
from leaguehq.db.models import CompetitionStatus, PayoutStatus
from leaguehq.payments.base import (
    Account,
    Competition,
    ExternalSession,
    PaymentProcessor,
    StatusFact,
    Team,
)
from leaguehq.payments.memory import MemoryStore
from leaguehq.payments.services import build_services

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProcessor(PaymentProcessor):
    """Records calls and returns deterministic sessions."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: list[str] = []
        self.account_flags = {"charges_enabled": False, "payouts_enabled": False}
        self.subscription_status = "active"
        self.fail_with: Exception | None = None
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    async def create_connected_account(self, account):
        self._record("create_connected_account")
        return self._next_id("acct")

    async def create_onboarding_link(self, external_account_id):
        self._record("create_onboarding_link")
        return ExternalSession(url=f"https://connect.example/{self._next_id('link')}")

    async def retrieve_account_status(self, external_account_id):
        self._record("retrieve_account_status")
        return StatusFact(source_timestamp=self.clock(), **self.account_flags)

    async def create_checkout_session(self, team, competition, owner, expires_at):
        self._record("create_checkout_session")
        external_id = self._next_id("cs")
        return ExternalSession(url=f"https://checkout.example/{external_id}", external_id=external_id)

    async def create_portal_session(self, customer_id):
        self._record("create_portal_session")
        external_id = self._next_id("bps")
        return ExternalSession(url=f"https://billing.example/{external_id}", external_id=external_id)

    async def retrieve_subscription_status(self, subscription_id):
        self._record("retrieve_subscription_status")
        return self.subscription_status


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        _env_file=None,
        env="dev",
        store_backend="memory",
        stripe_secret="sk_test_123",
        stripe_webhook_secret="whsec_test",
        stripe_monthly_dues_price_id="price_dues",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def processor(clock) -> FakeProcessor:
    return FakeProcessor(clock)


@pytest.fixture
def services(store, processor, config, clock):
    return build_services(store, processor, config, clock)


@pytest.fixture
def owner(store) -> Account:
    account = Account(account_id="owner-1", email="owner@example.com")
    store.accounts[account.account_id] = account
    return account


@pytest.fixture
def enabled_owner(owner) -> Account:
    owner.payout_status = PayoutStatus.ENABLED
    owner.external_account_id = "acct_owner"
    return owner


@pytest.fixture
def competition(store, owner) -> Competition:
    competition = Competition(
        competition_id="comp-1",
        account_id=owner.account_id,
        name="Spring League",
        max_teams=4,
        status=CompetitionStatus.PUBLISHED,
        registration_deadline=T0 + timedelta(days=7),
        entry_fee_cents=5000,
    )
    store.competitions[competition.competition_id] = competition
    return competition


@pytest.fixture
def team(store, competition) -> Team:
    team = Team(
        team_id="team-1",
        competition_id=competition.competition_id,
        coach_id="coach-1",
        name="Tigers",
    )
    store.teams[team.team_id] = team
    return team
