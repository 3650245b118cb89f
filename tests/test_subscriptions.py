"""Tests for the team subscription state machine."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from leaguehq.db.models import SubscriptionStatus
from leaguehq.payments.errors import Conflict, StaleEvent

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


@pytest.fixture
def machine(services):
    return services.subscriptions


async def _paid(machine, team, minutes=1, subscription_id="sub_1"):
    return await machine.apply_checkout_completed(
        team.team_id, subscription_id, at(minutes), customer_id="cus_1"
    )


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_first_payment_activates_team(self, services, machine, store, enabled_owner, team):
        session = await services.competitions.checkout(team.team_id, team.coach_id)

        paid = await machine.apply_checkout_completed(
            team.team_id, "sub_1", at(1), customer_id="cus_1", external_session_id=session.external_id
        )

        assert paid.entry_fee_paid
        assert paid.entry_fee_paid_at == at(1)
        assert paid.subscription_status is SubscriptionStatus.ACTIVE
        assert paid.customer_id == "cus_1"
        assert paid.is_eligible
        assert store.competitions[team.competition_id].current_team_count == 1
        assert store.sessions[session.session_id].consumed

    @pytest.mark.asyncio
    async def test_redelivery_counts_team_once(self, machine, store, team):
        await _paid(machine, team)
        await _paid(machine, team, minutes=2)

        assert store.competitions[team.competition_id].current_team_count == 1
        assert store.teams[team.team_id].last_synced_at == at(1)

    @pytest.mark.asyncio
    async def test_failed_first_payment_write_completes_on_redelivery(self, machine, store, team):
        record_first_payment = store.record_first_payment
        store.record_first_payment = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(RuntimeError):
            await _paid(machine, team)
        assert not store.teams[team.team_id].entry_fee_paid
        assert store.competitions[team.competition_id].current_team_count == 0

        store.record_first_payment = record_first_payment
        paid = await _paid(machine, team)

        assert paid.entry_fee_paid
        assert store.teams[team.team_id].subscription_id == "sub_1"
        assert store.competitions[team.competition_id].current_team_count == 1

    @pytest.mark.asyncio
    async def test_second_live_subscription_is_refused(self, machine, team):
        await _paid(machine, team)

        with pytest.raises(Conflict) as exc_info:
            await _paid(machine, team, minutes=2, subscription_id="sub_2")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_rejoin_after_cancellation(self, machine, store, team):
        await _paid(machine, team)
        await machine.apply_subscription_deleted(team.team_id, at(2), subscription_id="sub_1")

        rejoined = await _paid(machine, team, minutes=3, subscription_id="sub_2")

        assert rejoined.subscription_status is SubscriptionStatus.ACTIVE
        assert rejoined.subscription_id == "sub_2"
        assert rejoined.entry_fee_paid_at == at(1)
        assert store.competitions[team.competition_id].current_team_count == 1


class TestRenewals:
    @pytest.mark.asyncio
    async def test_failed_invoice_revokes_eligibility(self, machine, team):
        await _paid(machine, team)

        failed = await machine.apply_invoice_failed(team.team_id, at(2), 1, subscription_id="sub_1")

        assert failed.subscription_status is SubscriptionStatus.PAST_DUE
        assert failed.consecutive_failures == 1
        assert not failed.is_eligible

    @pytest.mark.asyncio
    async def test_failures_within_grace_stay_past_due(self, machine, team):
        await _paid(machine, team)

        failed = await machine.apply_invoice_failed(team.team_id, at(2), 2)

        assert failed.subscription_status is SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_failures_beyond_grace_become_unpaid(self, machine, team):
        await _paid(machine, team)
        await machine.apply_invoice_failed(team.team_id, at(2), 1)

        unpaid = await machine.apply_invoice_failed(team.team_id, at(3), 3)

        assert unpaid.subscription_status is SubscriptionStatus.UNPAID
        assert unpaid.subscription_status.is_terminal

    @pytest.mark.asyncio
    async def test_three_consecutive_failures(self, machine, team):
        await _paid(machine, team)

        statuses = []
        for attempt in (1, 2, 3):
            failed = await machine.apply_invoice_failed(team.team_id, at(1 + attempt), attempt)
            statuses.append(failed.subscription_status)

        assert statuses == [
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.UNPAID,
        ]
        assert not failed.is_eligible
        assert not failed.roster_locked

    @pytest.mark.asyncio
    async def test_retried_invoice_restores_active(self, machine, team):
        await _paid(machine, team)
        await machine.apply_invoice_failed(team.team_id, at(2), 1)

        recovered = await machine.apply_invoice_paid(team.team_id, at(3), subscription_id="sub_1")

        assert recovered.subscription_status is SubscriptionStatus.ACTIVE
        assert recovered.consecutive_failures == 0
        assert recovered.is_eligible

    @pytest.mark.asyncio
    async def test_invoice_before_checkout_is_retryable(self, machine, team):
        with pytest.raises(Conflict) as exc_info:
            await machine.apply_invoice_paid(team.team_id, at(1))

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_terminal_subscription_refuses_transitions(self, machine, team):
        await _paid(machine, team)
        await machine.apply_subscription_deleted(team.team_id, at(2))

        with pytest.raises(Conflict) as exc_info:
            await machine.apply_invoice_paid(team.team_id, at(3))
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_fact_for_previous_subscription_is_stale(self, machine, team):
        await _paid(machine, team)

        with pytest.raises(StaleEvent):
            await machine.apply_invoice_failed(team.team_id, at(2), 1, subscription_id="sub_old")

    @pytest.mark.asyncio
    async def test_older_fact_is_stale(self, machine, store, team):
        await _paid(machine, team, minutes=5)

        with pytest.raises(StaleEvent):
            await machine.apply_invoice_failed(team.team_id, at(4), 1)
        assert store.teams[team.team_id].subscription_status is SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_subscription_updated_mirrors_status(self, machine, team):
        await _paid(machine, team)

        updated = await machine.apply_subscription_updated(
            team.team_id, SubscriptionStatus.PAST_DUE, at(2)
        )

        assert updated.subscription_status is SubscriptionStatus.PAST_DUE


class TestRosterLock:
    @pytest.mark.asyncio
    async def test_transition_after_deadline_locks_roster(self, machine, clock, team):
        await _paid(machine, team)
        assert not (await machine.store.get_team(team.team_id)).roster_locked

        clock.advance(days=8)
        renewed = await machine.apply_invoice_paid(team.team_id, at(2))

        assert renewed.roster_locked
        assert renewed.roster_locked_at == clock()

    @pytest.mark.asyncio
    async def test_roster_lock_survives_every_later_transition(self, machine, clock, team):
        await _paid(machine, team)
        clock.advance(days=8)
        await machine.apply_invoice_paid(team.team_id, at(2))
        locked_at = clock()

        clock.advance(days=30)
        await machine.apply_invoice_failed(team.team_id, at(3), 1)
        await machine.apply_invoice_paid(team.team_id, at(4))
        final = await machine.apply_subscription_deleted(team.team_id, at(5))

        assert final.roster_locked
        assert final.roster_locked_at == locked_at

    @pytest.mark.asyncio
    async def test_owner_lock_applies_on_next_transition(self, machine, store, team):
        store.competitions[team.competition_id].roster_locked = True

        paid = await _paid(machine, team)

        assert paid.roster_locked
