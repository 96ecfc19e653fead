import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from app.core.config import get_section


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter(Protocol):
    def check_and_consume(self, identity: str) -> RateLimitDecision:
        ...


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """
    Fixed window per identitas klien, disimpan di memori proses.

    Cek + increment dilakukan di bawah satu lock (atomik dalam satu proses).
    Tidak aman untuk deployment multi-proses / multi-instance: tiap proses
    punya counter sendiri, butuh store eksternal yang atomik.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

    def check_and_consume(self, identity: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            window = self._windows.get(identity)

            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + self.window_seconds)
                self._windows[identity] = window

            if window.count >= self.max_requests:
                return RateLimitDecision(allowed=False, remaining=0, reset_at=window.reset_at)

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_requests - window.count,
                reset_at=window.reset_at,
            )

    def reset(self, identity: Optional[str] = None) -> None:
        with self._lock:
            if identity is None:
                self._windows.clear()
            else:
                self._windows.pop(identity, None)


def rate_limiter_from_config(config: Optional[Dict[str, Any]]) -> InMemoryRateLimiter:
    cfg = get_section(config, "rate_limit")
    return InMemoryRateLimiter(
        max_requests=int(cfg.get("max_requests", 100)),
        window_seconds=float(cfg.get("window_seconds", 60.0)),
    )
