"""
Retry and backoff policy.

Decides whether a failed attempt is rescheduled or dead-lettered. The policy
is pure apart from its random source, which can be injected for tests.
"""

import random
from datetime import UTC, datetime, timedelta

from jobqueue.config import Settings
from jobqueue.types.job import RetryDecision


class RetryPolicy:
    """
    Exponential backoff with jitter.

    backoff(n) = min(max_delay, base * 2 ** (n - 1)) is the deterministic
    envelope: non-decreasing in n and capped at max_delay. The delay actually
    scheduled subtracts a random fraction of up to ``jitter`` from it, so it
    never exceeds the cap and two jobs failing at the same attempt count
    spread out instead of re-claiming together.
    """

    def __init__(
        self,
        base_seconds: float = 1.0,
        max_seconds: float = 300.0,
        jitter: float = 0.25,
        rng: random.Random | None = None,
    ):
        if base_seconds <= 0:
            raise ValueError("base_seconds must be > 0")
        if max_seconds < base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_seconds=settings.retry_backoff_base_seconds,
            max_seconds=settings.retry_backoff_max_seconds,
            jitter=settings.retry_backoff_jitter,
        )

    def backoff(self, attempts: int) -> float:
        """Capped exponential delay in seconds for the given attempt count."""
        exponent = max(attempts, 1) - 1
        # 2 ** 1100 overflows float; the cap is reached long before that
        if exponent >= 64:
            return self.max_seconds
        return min(self.max_seconds, self.base_seconds * (2 ** exponent))

    def jittered_delay(self, attempts: int) -> float:
        """Backoff with a random fraction removed, in (0, backoff]."""
        envelope = self.backoff(attempts)
        return envelope * (1 - self.jitter * self._rng.random())

    def decide(
        self,
        attempts: int,
        max_attempts: int,
        *,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> RetryDecision:
        """
        Decide the fate of a failed attempt.

        Args:
            attempts: Attempts consumed so far, including the failed one.
            max_attempts: Ceiling before dead-lettering.
            permanent: Handler signalled a non-retryable failure.
            now: Clock override.

        Returns:
            RetryDecision with dead=True, or the time to retry at.
        """
        if permanent or attempts >= max_attempts:
            return RetryDecision(dead=True)

        delay = self.jittered_delay(attempts)
        now = now or datetime.now(UTC)
        return RetryDecision(
            dead=False,
            retry_at=now + timedelta(seconds=delay),
            delay_seconds=delay,
        )
