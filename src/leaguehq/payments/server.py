"""aiohttp REST surface and webhook endpoint for the payment core."""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from leaguehq.db.models import CompetitionStatus
from leaguehq.payments import eligibility
from leaguehq.payments.base import Account, Competition, PaymentSession, Team
from leaguehq.payments.errors import Forbidden, LeagueError, Unauthorized, ValidationError
from leaguehq.payments.services import PaymentServices
from leaguehq.payments.webhooks import handle_webhook

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/payment-processor"

# Set by the upstream auth layer after it validates the caller's token
PRINCIPAL_HEADER = "X-User-Id"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def account_json(account: Account) -> dict:
    return {
        "id": account.account_id,
        "payoutStatus": account.payout_status.value,
        "connectStatus": account.connect_status.value,
        "onboardingAction": eligibility.onboarding_action(account).value,
        "lastSyncedAt": _iso(account.last_synced_at),
    }


def competition_json(competition: Competition) -> dict:
    return {
        "id": competition.competition_id,
        "name": competition.name,
        "status": competition.status.value,
        "maxTeams": competition.max_teams,
        "currentTeamCount": competition.current_team_count,
        "registrationDeadline": _iso(competition.registration_deadline),
        "publishedAt": _iso(competition.published_at),
    }


def team_json(team: Team) -> dict:
    return {
        "id": team.team_id,
        "competitionId": team.competition_id,
        "name": team.name,
        "entryFeePaid": team.entry_fee_paid,
        "subscriptionStatus": team.subscription_status.value if team.subscription_status else None,
        "isEligible": team.is_eligible,
        "rosterLocked": team.roster_locked,
        "rosterEditable": eligibility.is_roster_editable(team),
    }


def session_json(session: PaymentSession) -> dict:
    return {
        "sessionId": session.session_id,
        "sessionUrl": session.url,
        "url": session.url,
        "expiresAt": session.expires_at.isoformat(),
    }


def _services(request: web.Request) -> PaymentServices:
    return request.app["services"]


def _principal(request: web.Request) -> str:
    user_id = request.headers.get(PRINCIPAL_HEADER)
    if not user_id:
        raise Unauthorized("Authentication required")
    return user_id


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map the error taxonomy onto HTTP status codes."""
    try:
        return await handler(request)
    except LeagueError as e:
        if e.http_status >= 500:
            logger.warning(f"{request.method} {request.path}: {e}")
        return web.json_response(
            {"error": type(e).__name__, "message": str(e)},
            status=e.http_status,
        )


async def request_onboarding(request: web.Request) -> web.Response:
    account_id = request.match_info["account_id"]
    if _principal(request) != account_id:
        raise Forbidden("Cannot onboard another owner's account")
    session = await _services(request).payouts.request_onboarding(account_id)
    return web.json_response({"url": session.url, "expiresAt": session.expires_at.isoformat()})


async def refresh_payout_status(request: web.Request) -> web.Response:
    account_id = request.match_info["account_id"]
    if _principal(request) != account_id:
        raise Forbidden("Cannot refresh another owner's account")
    await _services(request).reconciliation.refresh_account(account_id)
    return web.Response(status=204)


async def get_account(request: web.Request) -> web.Response:
    account_id = request.match_info["account_id"]
    if _principal(request) != account_id:
        raise Forbidden("Cannot read another owner's account")
    account = await _services(request).store.get_account(account_id)
    return web.json_response(account_json(account))


async def publish_competition(request: web.Request) -> web.Response:
    competition = await _services(request).competitions.publish(
        request.match_info["competition_id"], _principal(request)
    )
    return web.json_response(competition_json(competition))


async def advance_competition(request: web.Request) -> web.Response:
    body = await _json_body(request)
    try:
        target = CompetitionStatus(body.get("status"))
    except ValueError as e:
        raise ValidationError(f"Unknown competition status {body.get('status')!r}") from e
    competition = await _services(request).competitions.advance_status(
        request.match_info["competition_id"], _principal(request), target
    )
    return web.json_response(competition_json(competition))


async def lock_competition_rosters(request: web.Request) -> web.Response:
    locked = await _services(request).competitions.lock_competition_rosters(
        request.match_info["competition_id"], _principal(request)
    )
    return web.json_response({"lockedTeams": locked})


async def register_team(request: web.Request) -> web.Response:
    coach_id = _principal(request)
    body = await _json_body(request)
    competition_id = body.get("competitionId")
    if not competition_id:
        raise ValidationError("competitionId is required")
    team, session = await _services(request).competitions.register_team(
        competition_id, coach_id, body.get("teamName", "")
    )
    return web.json_response({"teamId": team.team_id, **session_json(session)}, status=201)


async def get_team(request: web.Request) -> web.Response:
    team = await _services(request).competitions.get_team(
        request.match_info["team_id"], _principal(request)
    )
    return web.json_response(team_json(team))


async def team_checkout(request: web.Request) -> web.Response:
    session = await _services(request).competitions.checkout(
        request.match_info["team_id"], _principal(request)
    )
    return web.json_response(session_json(session))


async def update_payment(request: web.Request) -> web.Response:
    session = await _services(request).competitions.update_payment(
        request.match_info["team_id"], _principal(request)
    )
    return web.json_response(session_json(session))


async def lock_team_roster(request: web.Request) -> web.Response:
    team = await _services(request).competitions.lock_roster(
        request.match_info["team_id"], _principal(request)
    )
    return web.json_response(team_json(team))


async def complete_session(request: web.Request) -> web.Response:
    await _services(request).competitions.complete_session(
        request.match_info["session_id"], _principal(request)
    )
    return web.Response(status=204)


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/payment-processor."""
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return web.Response(status=400, text="Missing signature")

    payload = await request.read()
    services = _services(request)
    return await handle_webhook(
        payload,
        sig_header,
        services.reconciliation,
        services.config.stripe_webhook_secret.get_secret_value(),
    )


def create_app(services: PaymentServices) -> web.Application:
    """Create the aiohttp application with every route of the REST surface."""
    app = web.Application(middlewares=[error_middleware])
    app["services"] = services

    app.router.add_post("/accounts/{account_id}/payout-onboarding", request_onboarding)
    app.router.add_post("/accounts/{account_id}/payout-status/refresh", refresh_payout_status)
    app.router.add_get("/accounts/{account_id}", get_account)
    app.router.add_post("/competitions/{competition_id}/publish", publish_competition)
    app.router.add_post("/competitions/{competition_id}/status", advance_competition)
    app.router.add_post("/competitions/{competition_id}/lock-rosters", lock_competition_rosters)
    app.router.add_post("/teams", register_team)
    app.router.add_get("/teams/{team_id}", get_team)
    app.router.add_post("/teams/{team_id}/checkout", team_checkout)
    app.router.add_post("/teams/{team_id}/update-payment", update_payment)
    app.router.add_post("/teams/{team_id}/lock-roster", lock_team_roster)
    app.router.add_post("/sessions/{session_id}/complete", complete_session)
    app.router.add_post(WEBHOOK_PATH, webhook_endpoint)
    return app


async def run_server(
    services: PaymentServices,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve until the shutdown event is set (or forever)."""
    app = create_app(services)
    runner = web.AppRunner(app)
    await runner.setup()

    port = services.config.server_port
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    logger.info(f"Payment API listening on port {port}")

    try:
        await (shutdown_event or asyncio.Event()).wait()
    finally:
        logger.info("Shutting down payment API...")
        await runner.cleanup()
