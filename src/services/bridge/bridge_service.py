"""
Bridge Service for TopicGate

Composition root of the bridge: builds every component from the bridge
configuration section, pumps both client event streams into the dispatcher,
runs the periodic housekeeping timers and exposes status and operator
primitives to the application.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from src.core.database import DatabaseManager
from . import formatter
from .call_deduplicator import CallDeduplicator
from .database import BridgeDatabase
from .dispatcher import BridgeDispatcher, CommandHandler
from .interfaces import ForumClient, SourceClient
from .mapping_store import MappingStore
from .media_relay import MediaRelay
from .models import BridgeConfigurationError
from .presence_simulator import PresenceSimulator
from .rate_limiter import RateLimiter
from .reconnect_supervisor import ReconnectSupervisor
from .reply_index import ReplyIndex
from .topic_resolver import TopicResolver


STREAM_RESTART_DELAY = 1.0


class BridgeService:
    """
    Bidirectional source <-> forum bridge.

    The service is inert until start() succeeds; configuration errors leave it
    stopped with the reason logged.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        source_client: SourceClient,
        forum_client: ForumClient,
        database: Optional[DatabaseManager] = None,
        command_handler: Optional[CommandHandler] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the bridge service.

        Args:
            config: The "bridge" configuration section
            source_client: Source network client
            forum_client: Forum network client
            database: Database manager for durable state; None keeps state in memory
            command_handler: Optional handler for private-chat commands
            logger: Logger instance for service operations
        """
        self.config = config or {}
        self.source_client = source_client
        self.forum_client = forum_client
        self.db_manager = database
        self.command_handler = command_handler
        self.logger = logger or logging.getLogger(__name__)

        self.is_running = False
        self.started_at: Optional[datetime] = None

        self.store: Optional[MappingStore] = None
        self.media_relay: Optional[MediaRelay] = None
        self.resolver: Optional[TopicResolver] = None
        self.rate_limiter: Optional[RateLimiter] = None
        self.supervisor: Optional[ReconnectSupervisor] = None
        self.deduplicator: Optional[CallDeduplicator] = None
        self.presence: Optional[PresenceSimulator] = None
        self.reply_index: Optional[ReplyIndex] = None
        self.dispatcher: Optional[BridgeDispatcher] = None

        self._tasks: List[asyncio.Task] = []

    # Configuration

    def _validate_config(self) -> int:
        """Return the forum container id or raise BridgeConfigurationError"""
        container_id = (self.config.get('forum') or {}).get('container_id')
        if container_id in (None, ""):
            raise BridgeConfigurationError("bridge.forum.container_id is not configured")
        try:
            container_id = int(container_id)
        except (TypeError, ValueError):
            raise BridgeConfigurationError(f"Invalid bridge.forum.container_id: {container_id}")

        if self.source_client is None or self.forum_client is None:
            raise BridgeConfigurationError("Both a source client and a forum client are required")

        return container_id

    def _build(self, container_id: int) -> None:
        """Create the bridge components"""
        sync = self.config.get('sync', {}) or {}
        media = self.config.get('media', {}) or {}
        reconnect = self.config.get('reconnect', {}) or {}
        presence = self.config.get('presence', {}) or {}
        calls = self.config.get('calls', {}) or {}
        reply_index = self.config.get('reply_index', {}) or {}

        bridge_db = BridgeDatabase(self.db_manager) if self.db_manager is not None else None
        self.store = MappingStore(bridge_db)
        self.media_relay = MediaRelay(
            self.source_client,
            self.forum_client,
            container_id,
            staging_dir=media.get('staging_dir', 'data/staging'),
            max_file_size=media.get('max_file_size', 50 * 1024 * 1024),
            timeout=media.get('timeout', 30)
        )
        self.resolver = TopicResolver(self.store, self.source_client, self.forum_client,
                                      container_id, media_relay=self.media_relay)
        self.rate_limiter = RateLimiter.from_config(self.config.get('rate_limits', {}))
        self.supervisor = ReconnectSupervisor(
            self.source_client.connect,
            delay=reconnect.get('delay', 5),
            multiplier=reconnect.get('multiplier', 1.0),
            max_delay=reconnect.get('max_delay', 60),
            alert_callback=self.notify_operator,
            connected_callback=self._announce_connected
        )
        self.deduplicator = CallDeduplicator(window=calls.get('suppression_window', 30))
        self.presence = PresenceSimulator(self.source_client,
                                          revert_after=presence.get('revert_after', 10))
        self.reply_index = ReplyIndex(max_age=reply_index.get('max_age', 86400))
        self.dispatcher = BridgeDispatcher(
            store=self.store,
            resolver=self.resolver,
            media_relay=self.media_relay,
            rate_limiter=self.rate_limiter,
            supervisor=self.supervisor,
            deduplicator=self.deduplicator,
            presence=self.presence,
            reply_index=self.reply_index,
            source_client=self.source_client,
            forum_client=self.forum_client,
            container_id=container_id,
            include_self_messages=sync.get('include_self_messages', False),
            ignored_conversations=sync.get('ignored_conversations', []),
            command_prefix=sync.get('command_prefix', '/'),
            command_handler=self.command_handler,
            operator_alert=self.notify_operator,
            mark_read_delay=self.config.get('mark_read_delay', 1.0)
        )

    # Lifecycle

    async def start(self) -> bool:
        """
        Start the bridge.

        Returns:
            True if the bridge is running; False if disabled or misconfigured
        """
        if self.is_running:
            return True

        if not self.config.get('enabled', True):
            self.logger.info("Bridge is disabled in configuration")
            return False

        try:
            container_id = self._validate_config()
            self._build(container_id)
        except BridgeConfigurationError as e:
            self.logger.error(f"Bridge configuration error, bridge stays inactive: {e}")
            return False

        await self.store.load()
        await self.supervisor.start()

        rate_limits = self.config.get('rate_limits', {}) or {}
        calls = self.config.get('calls', {}) or {}
        self._tasks = [
            asyncio.create_task(self._pump("source", self.source_client.events,
                                           self.dispatcher.submit_source)),
            asyncio.create_task(self._pump("forum", self.forum_client.events,
                                           self.dispatcher.submit_forum)),
            asyncio.create_task(self._run_periodic("rate limit cleanup",
                                                   rate_limits.get('cleanup_interval', 300),
                                                   self.rate_limiter.cleanup_stale)),
            asyncio.create_task(self._run_periodic("call cleanup",
                                                   calls.get('cleanup_interval', 60),
                                                   self.deduplicator.cleanup_expired)),
            asyncio.create_task(self._run_periodic("reply index prune", 3600,
                                                   self.reply_index.prune)),
        ]

        self.is_running = True
        self.started_at = datetime.utcnow()
        self.logger.info(f"Bridge started with {self.store.mapping_count} mapped conversations")
        return True

    async def stop(self) -> None:
        """Stop the bridge and release every timer and connection"""
        if self.supervisor is not None:
            await self.supervisor.request_shutdown()

        if not self.is_running:
            return

        self.logger.info("Stopping bridge...")
        self.is_running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.dispatcher.stop()
        await self.presence.cancel_all()
        await self.media_relay.close()

        for name, close in (("source", self.source_client.disconnect), ("forum", self.forum_client.close)):
            try:
                await close()
            except Exception as e:
                self.logger.warning(f"Error closing {name} client: {e}")

        self.logger.info("Bridge stopped")

    async def _pump(self, name: str, stream_factory: Callable[[], AsyncIterator[Any]],
                    submit: Callable[[Any], Any]) -> None:
        """Feed a client's event stream into the dispatcher"""
        while True:
            try:
                async for event in stream_factory():
                    submit(event)
                self.logger.info(f"{name} event stream ended")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error in {name} event stream: {e}", exc_info=True)
                await asyncio.sleep(STREAM_RESTART_DELAY)

    async def _run_periodic(self, name: str, interval: float, action: Callable[[], Any]) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                action()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in {name}: {e}")

    # Event entry points

    async def on_inbound_from_source(self, event) -> bool:
        if self.dispatcher is None:
            return False
        return await self.dispatcher.on_inbound_from_source(event)

    async def on_inbound_from_forum(self, event) -> bool:
        if self.dispatcher is None:
            return False
        return await self.dispatcher.on_inbound_from_forum(event)

    # Operator primitives

    async def delete_mapping(self, conversation_id: str) -> bool:
        """Forget a conversation's thread; the next event creates a new one"""
        if self.store is None:
            return False
        deleted = await self.store.delete(conversation_id)
        if deleted:
            self._record_event('mapping_deleted', conversation_id)
        return deleted

    async def reconnect(self) -> bool:
        """Reconnect the source client immediately"""
        if self.supervisor is None:
            return False
        return await self.supervisor.reconnect_now()

    async def resync_mappings(self) -> int:
        """Reload mappings, profiles and contact names from storage"""
        if self.store is None:
            return 0
        return await self.store.load()

    async def notify_operator(self, title: str, text: str) -> bool:
        """
        Post a notice to the operator log container.

        Returns:
            True if the notice was delivered
        """
        self._record_event('operator_notice', title, text)

        log_container_id = (self.config.get('forum') or {}).get('log_container_id')
        if not log_container_id:
            self.logger.info(f"Operator notice: {title} - {text}")
            return False

        try:
            await self.forum_client.send_text(int(log_container_id), None,
                                              formatter.operator_notice(title, text))
            return True
        except Exception as e:
            self.logger.error(f"Failed to deliver operator notice '{title}': {e}")
            return False

    async def _announce_connected(self) -> None:
        await self.notify_operator(
            "🤖 Source Connected",
            formatter.connected_notice(self.store.mapping_count, self.store.contact_count)
        )

    def _record_event(self, event_type: str, source: str, data: str = "") -> None:
        if self.db_manager is None:
            return
        try:
            self.db_manager.record_system_event(event_type, source, data)
        except Exception as e:
            self.logger.error(f"Failed to store system event {event_type}: {e}")

    # Status

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of bridge health for status commands and the main loop"""
        status = {
            'running': self.is_running,
            'connected': bool(self.supervisor and self.supervisor.is_connected),
            'mapping_count': self.store.mapping_count if self.store else 0,
            'participant_count': self.store.participant_count if self.store else 0,
            'uptime_seconds': (
                (datetime.utcnow() - self.started_at).total_seconds()
                if self.is_running and self.started_at else 0
            ),
        }

        if self.supervisor is not None:
            status['connection'] = self.supervisor.get_stats()
        if self.dispatcher is not None:
            status['dispatcher'] = self.dispatcher.get_statistics()
        if self.media_relay is not None:
            status['media'] = self.media_relay.get_statistics()
        if self.rate_limiter is not None:
            status['rate_limiter'] = self.rate_limiter.get_statistics()
        if self.deduplicator is not None:
            status['calls'] = self.deduplicator.get_statistics()
        if self.presence is not None:
            status['presence'] = self.presence.get_statistics()
        if self.reply_index is not None:
            status['reply_index_size'] = len(self.reply_index)

        return status
