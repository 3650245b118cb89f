"""Error taxonomy shared by the state machines, REST surface and client."""


class LeagueError(Exception):
    """Base class for expected, classified failures."""

    http_status = 500


class ValidationError(LeagueError):
    """Malformed input. Local and never retried."""

    http_status = 400


class Unauthorized(LeagueError):
    """Missing or rejected credentials."""

    http_status = 401


class Forbidden(LeagueError):
    """Authenticated caller does not own the subject."""

    http_status = 403


class NotFound(LeagueError):
    """Referenced subject does not exist."""

    http_status = 404


class Conflict(LeagueError):
    """Invalid state transition or duplicate open session.

    ``retryable`` marks conflicts caused by delivery order (e.g. an invoice
    fact arriving before the checkout completion it depends on). Webhooks
    that hit one are not acknowledged so the processor redelivers them.
    """

    http_status = 409

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class UpstreamUnavailable(LeagueError):
    """Payment processor call failed or timed out. Retryable by the pull path."""

    http_status = 503


class PollTimeout(LeagueError):
    """Target state not observed within the poll bound.

    Not a failure: the state may still converge through the push path.
    """


class StaleEvent(LeagueError):
    """Fact older than the subject's watermark. Dropped and logged, never surfaced."""
