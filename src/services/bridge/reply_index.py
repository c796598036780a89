"""
Reply index for TopicGate

Remembers which forum message mirrors which broadcast post, so a reply in the
status thread can be routed back to the person who posted the status.
"""

import logging
import time
from collections import OrderedDict
from typing import Callable, Optional

from src.models.message import SourceMessageKey
from .models import ReplyIndexEntry


class ReplyIndex:
    """Append-only forum message -> source key index, pruned by age"""

    def __init__(self, max_age: float = 86400.0, clock: Callable[[], float] = time.monotonic,
                 logger: Optional[logging.Logger] = None):
        self.max_age = max_age
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._entries: "OrderedDict[int, ReplyIndexEntry]" = OrderedDict()

    def add(self, forum_message_id: int, source_key: SourceMessageKey) -> None:
        self._entries.pop(forum_message_id, None)
        self._entries[forum_message_id] = ReplyIndexEntry(
            forum_message_id=forum_message_id,
            source_key=source_key,
            created_at=self.clock()
        )

    def lookup(self, forum_message_id: int) -> Optional[ReplyIndexEntry]:
        entry = self._entries.get(forum_message_id)
        if entry is None or self.clock() - entry.created_at > self.max_age:
            return None
        return entry

    def prune(self) -> int:
        """Drop entries older than max_age; insertion order is age order"""
        cutoff = self.clock() - self.max_age
        removed = 0
        while self._entries:
            forum_message_id, entry = next(iter(self._entries.items()))
            if entry.created_at >= cutoff:
                break
            del self._entries[forum_message_id]
            removed += 1
        if removed:
            self.logger.debug(f"Pruned {removed} reply index entries")
        return removed

    def __len__(self) -> int:
        return len(self._entries)
