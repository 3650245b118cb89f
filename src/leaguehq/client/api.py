"""HTTP client for the payment API.

Every call carries the caller's SessionContext. A 401 answer invalidates the
whole context before Unauthorized is raised, so no stale token or cached
account survives an expired session.
"""

import asyncio
import logging
from typing import Any, Optional

import aiohttp

from leaguehq.client.context import SessionContext
from leaguehq.client.polling import PayoutStatusPoller, PollPolicy, Sleep
from leaguehq.db.models import CompetitionStatus, PayoutStatus
from leaguehq.payments.errors import (
    Conflict,
    Forbidden,
    LeagueError,
    NotFound,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_ERRORS: dict[int, type[LeagueError]] = {
    400: ValidationError,
    403: Forbidden,
    404: NotFound,
    409: Conflict,
}


class LeagueClient:
    """Thin async wrapper over the REST surface."""

    def __init__(
        self,
        base_url: str,
        context: SessionContext,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.context = context
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def __aenter__(self) -> "LeagueClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def request(
        self, method: str, path: str, json: Optional[dict[str, Any]] = None
    ) -> Optional[dict[str, Any]]:
        """Send one request and decode the JSON body.

        Returns:
            The decoded body, or None for 204 responses

        Raises:
            Unauthorized: No session, or the server rejected it (context is invalidated)
            LeagueError: The subclass matching the response status
            UpstreamUnavailable: The API could not be reached
        """
        if not self.context.is_authenticated:
            raise Unauthorized("Not signed in")

        url = f"{self.base_url}{path}"
        try:
            async with self._http().request(
                method, url, json=json, headers=self.context.headers()
            ) as resp:
                if resp.status == 204:
                    return None
                if resp.status == 401:
                    self.context.invalidate()
                    raise Unauthorized("Session expired")
                if resp.status >= 400:
                    raise await self._error_for(resp)
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise UpstreamUnavailable(f"API unreachable: {e}") from e

    @staticmethod
    async def _error_for(resp: aiohttp.ClientResponse) -> LeagueError:
        try:
            body = await resp.json()
            message = body.get("message") or resp.reason
        except (aiohttp.ContentTypeError, ValueError):
            message = resp.reason or f"HTTP {resp.status}"
        if resp.status >= 500:
            # Includes gateway errors from a proxy in front of the API
            return UpstreamUnavailable(message)
        error_cls = _STATUS_ERRORS.get(resp.status, LeagueError)
        return error_cls(message)

    # Accounts

    async def request_onboarding(self, account_id: str) -> dict[str, Any]:
        """Returns ``{"url", "expiresAt"}`` for the processor onboarding redirect."""
        return await self.request("POST", f"/accounts/{account_id}/payout-onboarding")

    async def refresh_payout_status(self, account_id: str) -> None:
        await self.request("POST", f"/accounts/{account_id}/payout-status/refresh")

    async def get_account(self, account_id: str) -> dict[str, Any]:
        account = await self.request("GET", f"/accounts/{account_id}")
        self.context.cache_account(account)
        return account

    async def payout_status(self, account_id: str) -> PayoutStatus:
        account = await self.get_account(account_id)
        return PayoutStatus(account["payoutStatus"])

    def payout_poller(
        self,
        account_id: str,
        policy: Optional[PollPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> PayoutStatusPoller:
        """Poller for the owner's return from onboarding."""
        return PayoutStatusPoller(
            refresh=lambda: self.refresh_payout_status(account_id),
            fetch_status=lambda: self.payout_status(account_id),
            policy=policy or PollPolicy(),
            sleep=sleep,
        )

    # Competitions

    async def publish(self, competition_id: str) -> dict[str, Any]:
        return await self.request("POST", f"/competitions/{competition_id}/publish")

    async def advance_status(self, competition_id: str, status: CompetitionStatus) -> dict[str, Any]:
        return await self.request(
            "POST", f"/competitions/{competition_id}/status", json={"status": status.value}
        )

    async def lock_competition_rosters(self, competition_id: str) -> int:
        body = await self.request("POST", f"/competitions/{competition_id}/lock-rosters")
        return body["lockedTeams"]

    # Teams

    async def register_team(self, competition_id: str, team_name: str) -> dict[str, Any]:
        """Returns the new team id plus its checkout session."""
        return await self.request(
            "POST", "/teams", json={"competitionId": competition_id, "teamName": team_name}
        )

    async def get_team(self, team_id: str) -> dict[str, Any]:
        return await self.request("GET", f"/teams/{team_id}")

    async def checkout(self, team_id: str) -> dict[str, Any]:
        return await self.request("POST", f"/teams/{team_id}/checkout")

    async def update_payment(self, team_id: str) -> dict[str, Any]:
        return await self.request("POST", f"/teams/{team_id}/update-payment")

    async def lock_roster(self, team_id: str) -> dict[str, Any]:
        return await self.request("POST", f"/teams/{team_id}/lock-roster")

    async def complete_session(self, session_id: str) -> None:
        await self.request("POST", f"/sessions/{session_id}/complete")
