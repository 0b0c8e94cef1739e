"""
Retry policy - exponential backoff with jitter.

The executor drives its own retry loops (it must write a ledger entry for
every failed attempt before deciding to retry), so this module only
computes delays and exposes a small helper for callers outside the
executor, such as credential acquisition.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from infrachestra.errors import ConfigError, TransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff with jitter.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        base_delay_s: Delay before the second attempt
        multiplier: Growth factor per attempt
        max_delay_s: Upper bound on any single delay
        jitter: Fraction of the delay that is randomized (0 disables jitter)
    """
    max_attempts: int = 3
    base_delay_s: float = 1.0
    multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter: float = 0.5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be >= 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0:
            raise ConfigError("retry delays must be >= 0")
        if self.multiplier < 1:
            raise ConfigError("retry.multiplier must be >= 1")
        if not 0 <= self.jitter <= 1:
            raise ConfigError("retry.jitter must be between 0 and 1")

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """
        Delay to wait after the given (1-indexed) failed attempt.

        The nominal delay is min(max_delay_s, base_delay_s * multiplier ** (attempt - 1)),
        scaled by a random factor in [1 - jitter, 1].
        """
        nominal = min(self.max_delay_s, self.base_delay_s * (self.multiplier ** (attempt - 1)))
        if not self.jitter:
            return nominal
        rng = rng or random
        return nominal * (1 - self.jitter * rng.random())

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_s": self.base_delay_s,
            "multiplier": self.multiplier,
            "max_delay_s": self.max_delay_s,
            "jitter": self.jitter,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            base_delay_s=float(data.get("base_delay_s", 1.0)),
            multiplier=float(data.get("multiplier", 2.0)),
            max_delay_s=float(data.get("max_delay_s", 30.0)),
            jitter=float(data.get("jitter", 0.5)),
        )


def retry_transient(
    func: Callable[[], Any],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
    description: str = "operation",
) -> Any:
    """
    Call func, retrying on TransientError according to policy.

    Any other exception propagates immediately.

    Raises:
        TransientError: If all attempts are exhausted
    """
    attempt = 1
    while True:
        try:
            return func()
        except TransientError as e:
            if attempt >= policy.max_attempts:
                logger.error(f"{description}: all {policy.max_attempts} attempts failed: {e}")
                raise
            wait_time = policy.delay_for(attempt, rng)
            logger.warning(f"{description}: attempt {attempt} failed: {e}. Retrying in {wait_time:.1f}s...")
            sleep(wait_time)
            attempt += 1
