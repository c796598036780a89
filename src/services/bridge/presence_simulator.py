"""
Presence Simulator for TopicGate

Makes the bridge look like an attentive user on the source network: it shows
"typing" or "online" while forum replies are relayed and reverts the state
after a quiet period. Each conversation holds at most one pending reversion.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from src.models.message import PresenceState
from .interfaces import SourceClient


class PresenceSimulator:
    """Per-conversation presence leases"""

    def __init__(self, source_client: SourceClient, revert_after: float = 10.0,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize the simulator.

        Args:
            source_client: Client receiving presence updates
            revert_after: Seconds before a signalled state is reverted
            logger: Logger instance for presence operations
        """
        self.source_client = source_client
        self.revert_after = revert_after
        self.logger = logger or logging.getLogger(__name__)

        self._leases: Dict[str, asyncio.Task] = {}
        self._stats = {'signals': 0, 'reversions': 0, 'failures': 0}

    async def signal_activity(self, conversation_id: str, composing: bool = False) -> None:
        """
        Publish COMPOSING (or AVAILABLE) and schedule the reversion.

        A composing signal reverts to PAUSED, an availability signal to
        UNAVAILABLE. Any earlier reversion for the conversation is cancelled.
        """
        state = PresenceState.COMPOSING if composing else PresenceState.AVAILABLE
        revert_to = PresenceState.PAUSED if composing else PresenceState.UNAVAILABLE

        self._cancel_lease(conversation_id)
        await self._publish(conversation_id, state)
        self._stats['signals'] += 1

        # Re-check: another signal may have leased this conversation while we awaited
        self._cancel_lease(conversation_id)
        self._leases[conversation_id] = asyncio.create_task(
            self._revert_later(conversation_id, revert_to)
        )

    async def _revert_later(self, conversation_id: str, state: PresenceState) -> None:
        try:
            await asyncio.sleep(self.revert_after)
            await self._publish(conversation_id, state)
            self._stats['reversions'] += 1
        finally:
            if self._leases.get(conversation_id) is asyncio.current_task():
                del self._leases[conversation_id]

    async def _publish(self, conversation_id: str, state: PresenceState) -> None:
        try:
            await self.source_client.set_presence(conversation_id, state)
        except Exception as e:
            self._stats['failures'] += 1
            self.logger.debug(f"Failed to send presence {state.value} to {conversation_id}: {e}")

    def _cancel_lease(self, conversation_id: str) -> None:
        lease = self._leases.pop(conversation_id, None)
        if lease is not None and not lease.done():
            lease.cancel()

    async def cancel_all(self) -> None:
        """Cancel every pending reversion"""
        leases = list(self._leases.values())
        self._leases.clear()
        for lease in leases:
            lease.cancel()
        if leases:
            await asyncio.gather(*leases, return_exceptions=True)

    @property
    def active_leases(self) -> int:
        return len(self._leases)

    def get_statistics(self) -> Dict[str, Any]:
        return {'active_leases': self.active_leases, 'revert_after': self.revert_after, **self._stats}
