"""Explicit per-user session context.

Replaces ambient global storage of the auth token and cached profile: the
context is passed through every client call, and is invalidated as a whole
when the server answers 401.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """Credentials plus the cached account snapshot of one signed-in user."""

    token: Optional[str] = None
    user_id: Optional[str] = None
    role: Optional[str] = None
    account: Optional[dict[str, Any]] = None
    _listeners: list[Callable[["SessionContext"], None]] = field(default_factory=list, repr=False)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token and self.user_id)

    def headers(self) -> dict[str, str]:
        """Request headers for the API.

        The auth gateway validates the bearer token and rewrites X-User-Id;
        sending it here lets the API run without a gateway in development.
        """
        if not self.is_authenticated:
            return {}
        return {"Authorization": f"Bearer {self.token}", "X-User-Id": self.user_id}

    def cache_account(self, account: dict[str, Any]) -> None:
        self.account = account

    def on_invalidate(self, listener: Callable[["SessionContext"], None]) -> None:
        self._listeners.append(listener)

    def invalidate(self) -> None:
        """Drop credentials and cached data, then notify listeners."""
        if not self.is_authenticated and self.account is None:
            return
        logger.info(f"Session for user {self.user_id} invalidated")
        self.token = None
        self.user_id = None
        self.role = None
        self.account = None
        for listener in list(self._listeners):
            listener(self)
