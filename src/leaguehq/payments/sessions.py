"""Idempotent issuance of single-use external payment sessions.

Check-then-act under a (purpose, subject) lock: an unexpired, unconsumed
session is returned verbatim, so a double-click never opens a second live
payment flow. Expired unconsumed sessions are discarded before the check.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from leaguehq.db.models import SessionPurpose
from leaguehq.payments.base import ExternalSession, PaymentSession, PaymentStore
from leaguehq.payments.locks import SubjectLocks

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionBroker:
    """Issues and consumes onboarding, checkout and billing-portal sessions."""

    def __init__(
        self,
        store: PaymentStore,
        locks: SubjectLocks | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.locks = locks or SubjectLocks()
        self.clock = clock

    async def request(
        self,
        purpose: SessionPurpose,
        subject_id: str,
        ttl: timedelta,
        create: Callable[[datetime], Awaitable[ExternalSession]],
    ) -> PaymentSession:
        """Return the open session for (purpose, subject), creating one if needed.

        Args:
            purpose: Session kind
            subject_id: Account id (onboarding) or team id (checkout, portal)
            ttl: Local lifetime; capped by the processor's own expiry
            create: Coroutine factory called with the intended expiry; only
                invoked when no open session exists

        Returns:
            The existing open session, or the newly created one
        """
        async with self.locks.hold(f"session:{purpose.value}:{subject_id}"):
            now = self.clock()

            discarded = await self.store.discard_expired_sessions(purpose, subject_id, now)
            if discarded:
                logger.info(f"Discarded {discarded} expired {purpose.value} session(s) for {subject_id}")

            existing = await self.store.find_open_session(purpose, subject_id, now)
            if existing is not None:
                logger.info(
                    f"Reusing {purpose.value} session {existing.session_id} for {subject_id}"
                )
                return existing

            expires_at = now + ttl
            external = await create(expires_at)
            if external.expires_at is not None and external.expires_at < expires_at:
                expires_at = external.expires_at

            session = PaymentSession(
                session_id=str(uuid.uuid4()),
                purpose=purpose,
                subject_id=subject_id,
                url=external.url,
                external_id=external.external_id,
                expires_at=expires_at,
                created_at=now,
            )
            await self.store.save_session(session)
            logger.info(
                f"Issued {purpose.value} session {session.session_id} for {subject_id} "
                f"(expires {expires_at.isoformat()})"
            )
            return session

    async def consume(self, session_id: str) -> PaymentSession:
        """Mark a session consumed (explicit completion callback). Idempotent."""
        session = await self.store.get_session(session_id)
        return await self._consume(session)

    async def consume_external(self, external_id: str) -> PaymentSession | None:
        """Mark the session with this processor id consumed, if we issued one."""
        session = await self.store.find_session_by_external_id(external_id)
        if session is None:
            logger.warning(f"No local session for external id {external_id}")
            return None
        return await self._consume(session)

    async def consume_open(self, purpose: SessionPurpose, subject_id: str) -> PaymentSession | None:
        """Consume whatever session is open for (purpose, subject)."""
        session = await self.store.find_open_session(purpose, subject_id, self.clock())
        if session is None:
            return None
        return await self._consume(session)

    async def _consume(self, session: PaymentSession) -> PaymentSession:
        if session.consumed:
            return session
        session.consumed = True
        await self.store.save_session(session)
        logger.info(f"Consumed {session.purpose.value} session {session.session_id}")
        return session
