"""
Call notification de-duplication for TopicGate

The source network repeats call events while a call rings. Only the first
event per call key inside the suppression window produces a notification.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from .models import PendingCallEvent


class CallDeduplicator:
    """Suppresses repeated call notifications within a time window"""

    def __init__(self, window: float = 30.0, clock: Callable[[], float] = time.monotonic,
                 logger: Optional[logging.Logger] = None):
        self.window = window
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._pending: Dict[str, PendingCallEvent] = {}
        self._stats = {'notified': 0, 'suppressed': 0, 'expired': 0}

    def should_notify(self, call_key: str) -> bool:
        """
        Decide whether a call event deserves a notification.

        Returns:
            True for the first event of a key in the current window
        """
        now = self.clock()
        pending = self._pending.get(call_key)

        if pending is not None and pending.expires_at > now:
            self._stats['suppressed'] += 1
            self.logger.debug(f"Skipping duplicate call notification: {call_key}")
            return False

        self._pending[call_key] = PendingCallEvent(call_key=call_key, expires_at=now + self.window)
        self._stats['notified'] += 1
        return True

    def cleanup_expired(self) -> int:
        """Drop expired entries; returns the number removed"""
        now = self.clock()
        expired = [key for key, pending in self._pending.items() if pending.expires_at <= now]
        for key in expired:
            del self._pending[key]
        self._stats['expired'] += len(expired)
        return len(expired)

    def __len__(self) -> int:
        return len(self._pending)

    def get_statistics(self) -> Dict[str, Any]:
        return {'pending': len(self._pending), 'window': self.window, **self._stats}
