"""Stripe adapter for the PaymentProcessor interface.

Stripe's Python SDK is synchronous; calls run in a worker thread so the
event loop keeps serving webhooks while a session is being created.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial

import stripe

from leaguehq.config.settings import AppConfig, get_config
from leaguehq.payments.base import (
    Account,
    Competition,
    ExternalSession,
    PaymentProcessor,
    StatusFact,
    Team,
)
from leaguehq.payments.errors import UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)


def _from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def status_fact_from_account(account, source_timestamp: datetime) -> StatusFact:
    """Build a StatusFact from a Stripe Account object (or its webhook dict form)."""
    requirements = account.get("requirements") or {}
    return StatusFact(
        charges_enabled=bool(account.get("charges_enabled")),
        payouts_enabled=bool(account.get("payouts_enabled")),
        details_submitted=bool(account.get("details_submitted")),
        disabled_reason=requirements.get("disabled_reason"),
        source_timestamp=source_timestamp,
    )


class StripeProcessor(PaymentProcessor):
    """PaymentProcessor backed by Stripe Connect, Checkout and Billing Portal."""

    def __init__(self, config: AppConfig | None = None):
        self.config = config or get_config()
        if not self.config.stripe_secret.get_secret_value():
            raise ValueError("stripe_secret not configured")
        stripe.api_key = self.config.stripe_secret.get_secret_value()

    async def _call(self, description: str, fn, **kwargs):
        try:
            return await asyncio.to_thread(partial(fn, **kwargs))
        except stripe.StripeError as e:
            logger.error(f"Stripe error during {description}: {e}")
            raise UpstreamUnavailable(f"Payment processor unavailable: {description}") from e

    async def create_connected_account(self, account: Account) -> str:
        created = await self._call(
            "account create",
            stripe.Account.create,
            type="standard",
            email=account.email,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            metadata={"account_id": account.account_id},
        )
        logger.info(f"Created connected account {created.id} for account {account.account_id}")
        return created.id

    async def create_onboarding_link(self, external_account_id: str) -> ExternalSession:
        link = await self._call(
            "account link create",
            stripe.AccountLink.create,
            account=external_account_id,
            refresh_url=f"{self.config.frontend_url}/dashboard/stripe/refresh",
            return_url=f"{self.config.frontend_url}/dashboard/stripe/return",
            type="account_onboarding",
        )
        return ExternalSession(url=link.url, expires_at=_from_epoch(link.expires_at))

    async def retrieve_account_status(self, external_account_id: str) -> StatusFact:
        account = await self._call(
            "account retrieve", stripe.Account.retrieve, id=external_account_id
        )
        # The pull path observes the processor as of now
        return status_fact_from_account(account, datetime.now(timezone.utc))

    async def create_checkout_session(
        self,
        team: Team,
        competition: Competition,
        owner: Account,
        expires_at: datetime,
    ) -> ExternalSession:
        if not self.config.stripe_monthly_dues_price_id:
            raise ValueError("stripe_monthly_dues_price_id not configured")

        metadata = {
            "team_id": team.team_id,
            "competition_id": competition.competition_id,
            "team_name": team.name,
        }
        line_items = []
        if competition.entry_fee_cents > 0:
            # One-time entry fee charged on the first invoice
            line_items.append(
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": {
                            "name": f"{competition.name} - Entry Fee",
                            "description": f"One-time entry fee for {team.name}",
                        },
                        "unit_amount": competition.entry_fee_cents,
                    },
                    "quantity": 1,
                }
            )
        line_items.append({"price": self.config.stripe_monthly_dues_price_id, "quantity": 1})

        subscription_data = {"metadata": metadata}
        if owner.external_account_id:
            subscription_data["application_fee_percent"] = competition.platform_fee_percentage
            subscription_data["transfer_data"] = {"destination": owner.external_account_id}

        session = await self._call(
            "checkout session create",
            stripe.checkout.Session.create,
            mode="subscription",
            client_reference_id=team.team_id,
            line_items=line_items,
            metadata=metadata,
            subscription_data=subscription_data,
            expires_at=int(expires_at.timestamp()),
            success_url=(
                f"{self.config.frontend_url}/teams/registration/success"
                "?session_id={CHECKOUT_SESSION_ID}"
            ),
            cancel_url=f"{self.config.frontend_url}/competitions/{competition.competition_id}",
        )
        logger.info(f"Created checkout session {session.id} for team {team.team_id}")
        return ExternalSession(
            url=session.url,
            expires_at=_from_epoch(session.expires_at),
            external_id=session.id,
        )

    async def create_portal_session(self, customer_id: str) -> ExternalSession:
        if not customer_id:
            raise ValidationError("No payment method on file for this team")
        session = await self._call(
            "billing portal session create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=f"{self.config.frontend_url}/my-teams",
        )
        return ExternalSession(url=session.url, external_id=session.id)

    async def retrieve_subscription_status(self, subscription_id: str) -> str:
        subscription = await self._call(
            "subscription retrieve", stripe.Subscription.retrieve, id=subscription_id
        )
        return subscription["status"]
