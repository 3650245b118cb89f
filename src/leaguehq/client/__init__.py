"""Client-side access to the payment API: session context, HTTP client, polling."""

from leaguehq.client.api import LeagueClient
from leaguehq.client.context import SessionContext
from leaguehq.client.polling import (
    PayoutStatusPoller,
    PollOutcome,
    PollPolicy,
    PollRegistry,
    PollResult,
)

__all__ = [
    "LeagueClient",
    "PayoutStatusPoller",
    "PollOutcome",
    "PollPolicy",
    "PollRegistry",
    "PollResult",
    "SessionContext",
]
