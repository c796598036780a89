"""
Topic Resolver for TopicGate

Finds or lazily creates the forum thread that mirrors a source conversation.
Concurrent first events for the same conversation share one in-flight
creation, so a conversation never ends up with two threads.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from src.models.message import ConversationClass, classify_conversation, numeric_handle
from . import formatter
from .interfaces import ForumClient, SourceClient
from .mapping_store import MappingStore
from .media_relay import MediaRelay


class TopicResolver:
    """Conversation -> thread resolution with single-flight creation"""

    def __init__(
        self,
        store: MappingStore,
        source_client: SourceClient,
        forum_client: ForumClient,
        container_id: int,
        media_relay: Optional[MediaRelay] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the resolver.

        Args:
            store: Mapping store recording created threads
            source_client: Used for group metadata and profile photos
            forum_client: Used to create threads and post opening messages
            container_id: Forum container holding the bridged threads
            media_relay: Delivers profile photos; None disables avatars
            logger: Logger instance for resolver operations
        """
        self.store = store
        self.source_client = source_client
        self.forum_client = forum_client
        self.container_id = container_id
        self.media_relay = media_relay
        self.logger = logger or logging.getLogger(__name__)

        self._pending: Dict[str, asyncio.Future] = {}

        self._stats = {
            'threads_created': 0,
            'creation_failures': 0,
            'shared_waits': 0,
        }

    async def get_or_create(self, conversation_id: str, hint: Optional[str] = None) -> Optional[int]:
        """
        Return the thread for a conversation, creating it on first use.

        Args:
            conversation_id: Source conversation address
            hint: Sender name observed on the triggering event

        Returns:
            Thread id, or None if creation failed
        """
        thread_id = self.store.resolve(conversation_id)
        if thread_id is not None:
            return thread_id

        pending = self._pending.get(conversation_id)
        if pending is not None:
            self._stats['shared_waits'] += 1
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._pending[conversation_id] = future
        try:
            thread_id = await self._create_thread(conversation_id, hint)
            future.set_result(thread_id)
            return thread_id
        except Exception as e:
            self._stats['creation_failures'] += 1
            self.logger.error(f"Failed to create thread for {conversation_id}: {e}", exc_info=True)
            future.set_result(None)
            return None
        finally:
            if not future.done():
                future.set_result(None)
            self._pending.pop(conversation_id, None)

    async def _create_thread(self, conversation_id: str, hint: Optional[str]) -> int:
        conversation_class = classify_conversation(conversation_id)
        group_metadata = None
        if conversation_class is ConversationClass.GROUP:
            group_metadata = await self._fetch_group_metadata(conversation_id)

        title, color = self.thread_style(conversation_id, conversation_class, hint, group_metadata)

        thread_id = await self.forum_client.create_thread(self.container_id, title, color)
        await self.store.record(conversation_id, thread_id)
        self._stats['threads_created'] += 1
        self.logger.info(f"Created thread '{title}' ({thread_id}) for {conversation_id}")

        await self._post_opening(conversation_id, conversation_class, thread_id, title, hint,
                                 group_metadata)

        if not conversation_class.is_system:
            await self.send_avatar(conversation_id, thread_id)

        return thread_id

    def thread_style(self, conversation_id: str, conversation_class: ConversationClass,
                     hint: Optional[str] = None,
                     group_metadata: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
        """Title and accent colour for a new thread"""
        if conversation_class in formatter.SYSTEM_THREADS:
            return formatter.SYSTEM_THREADS[conversation_class]

        if conversation_class is ConversationClass.GROUP:
            subject = (group_metadata or {}).get('subject')
            return subject or formatter.DEFAULT_GROUP_TITLE, formatter.GROUP_COLOR

        # Direct chats are titled from the address book, never the sender-chosen name
        name = self.store.contact_name(conversation_id) or f"+{numeric_handle(conversation_id)}"
        return name, formatter.DIRECT_COLOR

    async def _fetch_group_metadata(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.source_client.fetch_group_metadata(conversation_id)
        except Exception as e:
            self.logger.debug(f"Could not fetch group metadata for {conversation_id}: {e}")
            return None

    async def _post_opening(self, conversation_id: str, conversation_class: ConversationClass,
                            thread_id: int, title: str, hint: Optional[str],
                            group_metadata: Optional[Dict[str, Any]]) -> None:
        text = formatter.opening_message(conversation_class, conversation_id, title,
                                         handle_name=hint, group_metadata=group_metadata)
        try:
            message_id = await self.forum_client.send_text(self.container_id, thread_id, text)
            await self.forum_client.pin_message(self.container_id, message_id)
        except Exception as e:
            self.logger.error(f"Failed to post opening message in thread {thread_id}: {e}")

    async def send_avatar(self, conversation_id: str, thread_id: int) -> bool:
        """Best-effort profile photo delivery; failures are logged only"""
        if self.media_relay is None:
            return False

        try:
            url = await self.source_client.fetch_profile_photo_url(conversation_id)
            if not url:
                return False
            await self.media_relay.send_photo_from_url(url, thread_id, formatter.PROFILE_PHOTO_CAPTION)
            return True
        except Exception as e:
            self.logger.debug(f"Could not send profile photo for {conversation_id}: {e}")
            return False

    def get_statistics(self) -> Dict[str, Any]:
        return {'pending_creations': len(self._pending), **self._stats}
