import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from app.core.config import get_section

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Backoff eksponensial: base_delay * 2^attempt, dibatasi max_delay."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


def retry_policy_from_config(config: Optional[Dict[str, Any]], name: str) -> RetryPolicy:
    cfg = get_section(config, "retry").get(name) or {}
    return RetryPolicy(
        max_retries=int(cfg.get("max_retries", 3)),
        base_delay=float(cfg.get("base_delay", 1.0)),
        max_delay=float(cfg.get("max_delay", 10.0)),
    )


def retry_with_backoff(
    fn: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """
    Jalankan fn dengan retry + exponential backoff.

    - max_retries = jumlah percobaan total; 0 berarti satu kali coba tanpa retry
    - should_retry(error) False → error langsung dilempar
    - semua percobaan habis → error terakhir dilempar apa adanya
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_retries)

    for attempt in range(attempts):
        try:
            return fn()
        except Exception as e:
            last_attempt = attempt == attempts - 1
            if last_attempt or (should_retry is not None and not should_retry(e)):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt + 1, attempts, e, delay,
            )
            sleep(delay)

    raise RuntimeError("unreachable")
