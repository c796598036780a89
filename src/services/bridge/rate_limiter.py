"""
Rate limiter for TopicGate

Fixed-window, per-user quotas guarding the expensive forum-side actions
(commands and media downloads).
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple


COMMANDS_BUCKET = "commands"
DOWNLOADS_BUCKET = "downloads"


@dataclass
class BucketPolicy:
    """Quota for one bucket: points per window of duration seconds"""
    points: int
    duration: float


@dataclass
class RateLimitResult:
    """Outcome of a consume attempt"""
    allowed: bool
    retry_after_ms: int = 0
    remaining: int = 0


@dataclass
class _Window:
    resets_at: float
    consumed: int = 0


DEFAULT_POLICIES = {
    COMMANDS_BUCKET: BucketPolicy(points=10, duration=60),
    DOWNLOADS_BUCKET: BucketPolicy(points=5, duration=3600),
}


def format_wait_hint(retry_after_ms: int) -> str:
    """Human-readable wait, e.g. 42s, 3m 5s or 1h 2m"""
    seconds = max(1, math.ceil(retry_after_ms / 1000))
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s" if seconds else f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


class RateLimiter:
    """
    Per-user fixed-window rate limiter.

    Each (bucket, user) pair owns a window that opens on its first consume.
    Once the window has elapsed it is reset lazily by the next consume;
    cleanup_stale() drops elapsed windows so idle users do not accumulate.
    """

    def __init__(
        self,
        policies: Optional[Dict[str, BucketPolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize rate limiter.

        Args:
            policies: Bucket name -> quota; defaults to commands and downloads
            clock: Monotonic time source in seconds
            logger: Logger instance for rate limiter operations
        """
        self.policies = dict(policies or DEFAULT_POLICIES)
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._windows: Dict[Tuple[str, str], _Window] = {}

        self._stats = {
            'allowed': 0,
            'denied': 0,
            'windows_cleaned': 0,
        }

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs) -> "RateLimiter":
        """Build from the bridge.rate_limits configuration section"""
        policies = dict(DEFAULT_POLICIES)
        for name, settings in (config or {}).items():
            if isinstance(settings, dict) and 'points' in settings and 'duration' in settings:
                policies[name] = BucketPolicy(points=int(settings['points']),
                                              duration=float(settings['duration']))
        return cls(policies=policies, **kwargs)

    def try_consume(self, user_id: str, bucket: str) -> RateLimitResult:
        """
        Consume one point from a user's bucket.

        Args:
            user_id: Forum user the quota belongs to
            bucket: Bucket name (commands, downloads)

        Returns:
            RateLimitResult; when denied, retry_after_ms is the time until the
            window resets
        """
        policy = self.policies.get(bucket)
        if policy is None:
            raise ValueError(f"Unknown rate limit bucket: {bucket}")

        now = self.clock()
        key = (bucket, str(user_id))
        window = self._windows.get(key)

        if window is None or now >= window.resets_at:
            window = _Window(resets_at=now + policy.duration)
            self._windows[key] = window

        if window.consumed < policy.points:
            window.consumed += 1
            self._stats['allowed'] += 1
            return RateLimitResult(allowed=True, remaining=policy.points - window.consumed)

        retry_after_ms = max(1, math.ceil(round((window.resets_at - now) * 1000, 6)))
        self._stats['denied'] += 1
        self.logger.debug(
            f"Rate limit reached - bucket={bucket}, user={user_id}, "
            f"points={policy.points}, retry_after_ms={retry_after_ms}"
        )
        return RateLimitResult(allowed=False, retry_after_ms=retry_after_ms)

    def cleanup_stale(self) -> int:
        """Drop windows that have already elapsed; returns the number removed"""
        now = self.clock()
        stale = [
            key for key, window in self._windows.items()
            if now >= window.resets_at
        ]
        for key in stale:
            del self._windows[key]

        if stale:
            self._stats['windows_cleaned'] += len(stale)
            self.logger.debug(f"Removed {len(stale)} stale rate limit windows")
        return len(stale)

    def reset(self, user_id: Optional[str] = None) -> None:
        """Forget quotas for one user, or for everyone"""
        if user_id is None:
            self._windows.clear()
            return
        for key in [key for key in self._windows if key[1] == str(user_id)]:
            del self._windows[key]

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'active_windows': len(self._windows),
            'buckets': {name: {'points': p.points, 'duration': p.duration}
                        for name, p in self.policies.items()},
            **self._stats,
        }
