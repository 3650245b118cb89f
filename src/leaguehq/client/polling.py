"""Bounded, cancellable payout-status polling after an onboarding redirect.

Right after the owner returns from the processor there is no webhook
delivery confirmation yet, so the client polls. Attempt 0 and every
``refresh_every``-th attempt trigger a full processor refresh; the others
only read the cached backend state. The loop stops the instant the target
status is seen and otherwise ends with a TIMEOUT outcome, which is not a
failure: the push path may still converge later.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Coroutine, Optional

from leaguehq.config.settings import AppConfig
from leaguehq.db.models import PayoutStatus
from leaguehq.payments.errors import PollTimeout, UpstreamUnavailable

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollPolicy:
    """Bounded fixed-interval retry policy."""

    max_attempts: int = 10
    interval_seconds: float = 2.0
    refresh_every: int = 3

    @classmethod
    def from_config(cls, config: AppConfig) -> "PollPolicy":
        return cls(
            max_attempts=config.poll_max_attempts,
            interval_seconds=config.poll_interval_seconds,
            refresh_every=config.poll_refresh_every,
        )

    def should_refresh(self, attempt: int) -> bool:
        return attempt == 0 or attempt % self.refresh_every == 0


class PollOutcome(str, Enum):
    CONVERGED = "converged"
    TIMEOUT = "timeout"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int  # attempts actually made
    status: Optional[PayoutStatus] = None  # last status observed

    @property
    def timed_out(self) -> bool:
        return self.outcome is PollOutcome.TIMEOUT

    def raise_for_timeout(self) -> None:
        if self.timed_out:
            raise PollTimeout(
                f"Status not confirmed after {self.attempts} attempts; "
                "it may still complete in the background"
            )


class PayoutStatusPoller:
    """One poll run. ``run()`` is the cooperative task body."""

    def __init__(
        self,
        refresh: Callable[[], Awaitable[None]],
        fetch_status: Callable[[], Awaitable[PayoutStatus]],
        policy: PollPolicy = PollPolicy(),
        sleep: Sleep = asyncio.sleep,
        target: PayoutStatus = PayoutStatus.ENABLED,
    ):
        self.refresh = refresh
        self.fetch_status = fetch_status
        self.policy = policy
        self.sleep = sleep
        self.target = target

    async def run(self) -> PollResult:
        status = None
        for attempt in range(self.policy.max_attempts):
            try:
                if self.policy.should_refresh(attempt):
                    await self.refresh()
                status = await self.fetch_status()
            except UpstreamUnavailable as e:
                logger.info(f"Poll attempt {attempt} failed, will retry: {e}")
            else:
                if status is self.target:
                    logger.info(f"Payout status {status.value} observed at attempt {attempt}")
                    return PollResult(PollOutcome.CONVERGED, attempt + 1, status)

            if attempt + 1 < self.policy.max_attempts:
                await self.sleep(self.policy.interval_seconds)

        logger.info(f"Payout status not {self.target.value} after {self.policy.max_attempts} attempts")
        return PollResult(PollOutcome.TIMEOUT, self.policy.max_attempts, status)


class PollRegistry:
    """At most one running poll task per subject; cancellation is awaited."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def is_running(self, subject_id: str) -> bool:
        task = self._tasks.get(subject_id)
        return task is not None and not task.done()

    def start(
        self,
        subject_id: str,
        factory: Callable[[], Coroutine[None, None, PollResult]],
    ) -> asyncio.Task:
        """Start a poll for the subject, or return the one already running."""
        task = self._tasks.get(subject_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(factory(), name=f"poll:{subject_id}")
        self._tasks[subject_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._tasks.get(subject_id) is done:
                del self._tasks[subject_id]

        task.add_done_callback(_forget)
        return task

    async def cancel(self, subject_id: str) -> bool:
        """Cancel the subject's poll and wait for it to unwind."""
        task = self._tasks.pop(subject_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Poll for {subject_id} cancelled")
        return True

    async def cancel_all(self) -> None:
        for subject_id in list(self._tasks):
            await self.cancel(subject_id)
