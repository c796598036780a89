"""
Dispatch Pipelines for TopicGate

Routes every inbound event from either network through a handler table keyed
by event kind. Events sharing a conversation (source side) or thread (forum
side) are processed strictly in arrival order by a per-key FIFO worker, while
different conversations proceed concurrently. A failing event is logged and
marked; it never stops the stream.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from src.core.logging import get_structured_logger, log_relay_error
from src.models.message import (
    CALL_LOG_CONVERSATION_ID, CallEvent, ConnectionUpdate, ContactContent, ContactsUpdate,
    ConversationClass, CredentialsUpdate, ForumEventKind, ForumMessage, LocationContent,
    MediaContent, SendReceipt, SourceEventKind, SourceMessage, SourceMessageKey, TextContent,
    classify_conversation
)
from . import formatter
from .call_deduplicator import CallDeduplicator
from .interfaces import ForumClient, SourceClient
from .mapping_store import MappingStore
from .media_relay import MediaRelay
from .models import BridgeConfigurationError, MediaRelayError
from .presence_simulator import PresenceSimulator
from .rate_limiter import COMMANDS_BUCKET, DOWNLOADS_BUCKET, RateLimiter, format_wait_hint
from .reconnect_supervisor import ReconnectSupervisor
from .reply_index import ReplyIndex
from .topic_resolver import TopicResolver


CommandHandler = Callable[[ForumMessage], Awaitable[Optional[str]]]
OperatorAlert = Callable[[str, str], Awaitable[Any]]

_QueueItem = Tuple[Callable[[Any], Awaitable[bool]], Any, asyncio.Future]


class BridgeDispatcher:
    """
    Typed event dispatcher for both relay directions.

    Features:
    - Handler table checked for exhaustiveness at construction
    - Per-conversation FIFO ordering with cross-conversation concurrency
    - Reactions on forum messages reporting relay success or failure
    - Structured audit log of relayed traffic
    """

    def __init__(
        self,
        store: MappingStore,
        resolver: TopicResolver,
        media_relay: MediaRelay,
        rate_limiter: RateLimiter,
        supervisor: ReconnectSupervisor,
        deduplicator: CallDeduplicator,
        presence: PresenceSimulator,
        reply_index: ReplyIndex,
        source_client: SourceClient,
        forum_client: ForumClient,
        container_id: int,
        include_self_messages: bool = False,
        ignored_conversations: Iterable[str] = (),
        command_prefix: str = "/",
        command_handler: Optional[CommandHandler] = None,
        operator_alert: Optional[OperatorAlert] = None,
        mark_read_delay: float = 1.0,
        logger: Optional[logging.Logger] = None
    ):
        self.store = store
        self.resolver = resolver
        self.media_relay = media_relay
        self.rate_limiter = rate_limiter
        self.supervisor = supervisor
        self.deduplicator = deduplicator
        self.presence = presence
        self.reply_index = reply_index
        self.source_client = source_client
        self.forum_client = forum_client
        self.container_id = container_id
        self.include_self_messages = include_self_messages
        self.ignored_conversations = set(ignored_conversations or ())
        self.command_prefix = command_prefix
        self.command_handler = command_handler
        self.operator_alert = operator_alert
        self.mark_read_delay = mark_read_delay
        self.logger = logger or logging.getLogger(__name__)
        self.audit = get_structured_logger('bridge.audit')

        self._source_handlers: Dict[SourceEventKind, Callable[[Any], Awaitable[bool]]] = {
            SourceEventKind.MESSAGE: self._handle_source_message,
            SourceEventKind.CONNECTION: self._handle_connection_update,
            SourceEventKind.CALL: self._handle_call,
            SourceEventKind.CREDENTIALS: self._handle_credentials,
            SourceEventKind.CONTACTS: self._handle_contacts,
        }
        self._forum_handlers: Dict[ForumEventKind, Callable[[Any], Awaitable[bool]]] = {
            ForumEventKind.THREAD_MESSAGE: self._handle_forum_message,
        }
        self._check_handler_tables()

        self._queues: Dict[str, Deque[_QueueItem]] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

        self.stats = {
            'source_events': 0,
            'forum_events': 0,
            'relayed_to_forum': 0,
            'relayed_to_source': 0,
            'dropped': 0,
            'failures': 0,
        }

    def _check_handler_tables(self) -> None:
        missing = [kind.value for kind in SourceEventKind if kind not in self._source_handlers]
        missing += [kind.value for kind in ForumEventKind if kind not in self._forum_handlers]
        if missing:
            raise BridgeConfigurationError(f"No dispatch handler for event kinds: {', '.join(missing)}")

    # Entry points

    def submit_source(self, event) -> asyncio.Future:
        """Queue a source event behind earlier events of the same conversation"""
        self.stats['source_events'] += 1
        handler = self._source_handlers[event.kind]
        return self._submit(self._source_key(event), handler, event)

    def submit_forum(self, event: ForumMessage) -> asyncio.Future:
        """Queue a forum event behind earlier events of the same thread"""
        self.stats['forum_events'] += 1
        handler = self._forum_handlers[event.kind]
        return self._submit(self._forum_key(event), handler, event)

    async def on_inbound_from_source(self, event) -> bool:
        """Process a source event; returns True if it was relayed or applied"""
        return await self.submit_source(event)

    async def on_inbound_from_forum(self, event: ForumMessage) -> bool:
        """Process a forum event; returns True if it was relayed"""
        return await self.submit_forum(event)

    def _source_key(self, event) -> str:
        if isinstance(event, SourceMessage):
            return f"source:{event.conversation_id}"
        if isinstance(event, CallEvent):
            return f"source:{CALL_LOG_CONVERSATION_ID}"
        return f"source:{event.kind.value}"

    def _forum_key(self, event: ForumMessage) -> str:
        if event.is_private or event.thread_id is None:
            return f"forum:chat:{event.chat_id}"
        return f"forum:thread:{event.chat_id}:{event.thread_id}"

    # Keyed FIFO execution

    def _submit(self, key: str, handler: Callable[[Any], Awaitable[bool]], event) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        queue = self._queues.setdefault(key, deque())
        queue.append((handler, event, future))
        if key not in self._workers:
            self._workers[key] = asyncio.create_task(self._drain(key, queue))
        return future

    async def _drain(self, key: str, queue: Deque[_QueueItem]) -> None:
        current: Optional[asyncio.Future] = None
        try:
            while queue:
                handler, event, current = queue.popleft()
                try:
                    result = await handler(event)
                except Exception as e:
                    self.stats['failures'] += 1
                    self.logger.error(f"Unhandled error processing {event.kind.value} event: {e}",
                                      exc_info=True)
                    result = False
                if not current.done():
                    current.set_result(bool(result))
                current = None
        except asyncio.CancelledError:
            for future in [current] + [item[2] for item in queue]:
                if future is not None and not future.done():
                    future.cancel()
            queue.clear()
            raise
        finally:
            self._workers.pop(key, None)
            if self._queues.get(key) is queue and not queue:
                del self._queues[key]

    async def wait_idle(self) -> None:
        """Wait until every queued event has been processed"""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel queued work and pending mark-read timers"""
        tasks = list(self._workers.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    # Source -> forum

    async def _handle_source_message(self, message: SourceMessage) -> bool:
        conversation_id = message.conversation_id

        if message.key.from_me and not self.include_self_messages:
            self.stats['dropped'] += 1
            return False
        if conversation_id in self.ignored_conversations:
            self.stats['dropped'] += 1
            self.logger.debug(f"Ignoring message from {conversation_id}")
            return False

        participant_id = message.participant_id
        await self.store.upsert_profile(participant_id, message.push_name)

        thread_id = await self.resolver.get_or_create(conversation_id, message.push_name)
        if thread_id is None:
            self.stats['failures'] += 1
            self.logger.error(f"No thread available for {conversation_id}, dropping message")
            return False

        conversation_class = classify_conversation(conversation_id)
        sender = self.store.display_name_for(participant_id, message.push_name)
        content = message.content

        try:
            if isinstance(content, TextContent):
                await self._relay_text_to_forum(message, conversation_class, thread_id, sender, content)
            elif isinstance(content, MediaContent):
                await self._relay_media_to_forum(message, conversation_class, thread_id, sender, content)
            elif isinstance(content, LocationContent):
                if conversation_class is ConversationClass.GROUP:
                    await self.forum_client.send_text(
                        self.container_id, thread_id, formatter.location_attribution(sender, content.name)
                    )
                await self.forum_client.send_location(self.container_id, thread_id,
                                                      content.latitude, content.longitude)
            elif isinstance(content, ContactContent):
                shared_by = sender if conversation_class is ConversationClass.GROUP else None
                await self.forum_client.send_text(
                    self.container_id, thread_id,
                    formatter.contact_card(content.display_name, content.phone_number, shared_by)
                )
            else:
                self.logger.warning(f"Unsupported content from {conversation_id}: {type(content).__name__}")
                self.stats['dropped'] += 1
                return False
        except MediaRelayError as e:
            self.stats['failures'] += 1
            self.logger.warning(f"Could not relay media from {conversation_id}: {e}")
            await self._post_notice(thread_id, f"⚠️ Could not relay {content.kind.value}: {e}")
            return False
        except Exception as e:
            self.stats['failures'] += 1
            log_relay_error(self.logger, "source->forum", type(e).__name__, str(e),
                            {'conversation_id': conversation_id, 'thread_id': thread_id})
            return False

        self.stats['relayed_to_forum'] += 1
        self.audit.info("relayed", direction="source->forum", conversation_id=conversation_id,
                        thread_id=thread_id, content=type(content).__name__)
        return True

    async def _relay_text_to_forum(self, message: SourceMessage, conversation_class: ConversationClass,
                                   thread_id: int, sender: str, content: TextContent) -> None:
        text = content.text
        if conversation_class is ConversationClass.BROADCAST:
            forum_message_id = await self.forum_client.send_text(
                self.container_id, thread_id, formatter.status_text(sender, text)
            )
            self.reply_index.add(forum_message_id, message.key)
            return

        if conversation_class is ConversationClass.GROUP:
            text = formatter.attribute(sender, text)
        await self.forum_client.send_text(self.container_id, thread_id, text)

    async def _relay_media_to_forum(self, message: SourceMessage, conversation_class: ConversationClass,
                                    thread_id: int, sender: str, content: MediaContent) -> None:
        caption = content.caption
        if conversation_class is ConversationClass.GROUP:
            caption = formatter.attribute(sender, caption)
        elif conversation_class is ConversationClass.BROADCAST:
            caption = formatter.status_text(sender, caption)

        forum_message_id = await self.media_relay.relay_inbound(content, thread_id, caption)
        if conversation_class is ConversationClass.BROADCAST:
            self.reply_index.add(forum_message_id, message.key)

    async def _handle_call(self, call: CallEvent) -> bool:
        if not self.deduplicator.should_notify(call.call_key):
            return False

        thread_id = await self.resolver.get_or_create(CALL_LOG_CONVERSATION_ID)
        if thread_id is None:
            self.logger.error("Could not create or retrieve the call log thread")
            await self._alert_operator("❌ Call Notification Failed",
                                       "Failed to create or retrieve call topic.")
            return False

        caller_name = self.store.display_name_for(call.caller_id)
        await self.forum_client.send_text(self.container_id, thread_id,
                                          formatter.call_notification(call, caller_name))
        self.stats['relayed_to_forum'] += 1
        self.audit.info("call_notified", caller_id=call.caller_id, call_id=call.call_id)
        return True

    async def _handle_connection_update(self, update: ConnectionUpdate) -> bool:
        await self.supervisor.handle_update(update)
        return True

    async def _handle_credentials(self, update: CredentialsUpdate) -> bool:
        # Persisting credentials is the source client's job
        self.logger.debug("Source credentials updated")
        return True

    async def _handle_contacts(self, update: ContactsUpdate) -> bool:
        synced = 0
        renamed = 0
        failed = 0
        for entry in update.contacts:
            if not await self.store.set_contact_name(entry.contact_id, entry.name):
                continue
            synced += 1

            thread_id = self.store.resolve(entry.contact_id)
            if thread_id is None or classify_conversation(entry.contact_id) is not ConversationClass.DIRECT:
                continue

            try:
                await self.forum_client.edit_thread(self.container_id, thread_id, entry.name)
                renamed += 1
            except Exception as e:
                failed += 1
                self.logger.warning(f"Failed to rename thread {thread_id} to '{entry.name}': {e}")

        if not synced:
            return True

        self.logger.info(f"Synced {synced} contact name(s), renamed {renamed} thread(s)")
        await self._alert_operator(
            "✅ Contact Sync Complete",
            f"Synced {synced} new/updated contacts. Total: {self.store.contact_count}"
        )
        if renamed or failed:
            text = f"Updated {renamed} topic names."
            if failed:
                text += f" {failed} rename(s) failed."
            await self._alert_operator("✅ Topic Names Updated", text)
        return True

    # Forum -> source

    async def _handle_forum_message(self, message: ForumMessage) -> bool:
        if message.is_private:
            return await self._handle_private_message(message)

        if message.chat_id != self.container_id:
            # thread ids are only unique within one chat
            self.stats['dropped'] += 1
            self.logger.warning(f"Ignoring message from chat {message.chat_id} outside the bridge container")
            return False

        if message.thread_id is None:
            self.stats['dropped'] += 1
            return False

        conversation_id = self.store.reverse_resolve(message.thread_id)
        if conversation_id is None:
            self.stats['dropped'] += 1
            self.logger.warning(f"Could not find source conversation for thread {message.thread_id}")
            return False

        conversation_class = classify_conversation(conversation_id)
        if conversation_class is ConversationClass.BROADCAST:
            return await self._handle_status_reply(message)
        if conversation_class is ConversationClass.CALL_LOG:
            self.stats['dropped'] += 1
            return False

        try:
            await self.presence.signal_activity(conversation_id, composing=False)
            receipt = await self._send_to_source(message, conversation_id)
        except Exception as e:
            self.stats['failures'] += 1
            log_relay_error(self.logger, "forum->source", type(e).__name__, str(e),
                            {'conversation_id': conversation_id, 'thread_id': message.thread_id})
            await self._react(message, formatter.REACTION_FAILURE)
            return False

        if receipt is None:
            self.stats['failures'] += 1
            await self._react(message, formatter.REACTION_FAILURE)
            return False

        self.stats['relayed_to_source'] += 1
        self.audit.info("relayed", direction="forum->source", conversation_id=conversation_id,
                        thread_id=message.thread_id, content=type(message.content).__name__)
        await self._react(message, formatter.REACTION_SUCCESS)
        self._schedule_mark_read(conversation_id, [receipt.key])
        return True

    async def _send_to_source(self, message: ForumMessage, conversation_id: str) -> Optional[SendReceipt]:
        content = message.content

        if isinstance(content, TextContent):
            await self.presence.signal_activity(conversation_id, composing=True)
            text = formatter.spoiler(content.text) if content.has_spoiler else content.text
            return await self.source_client.send(conversation_id, TextContent(text=text))

        if isinstance(content, MediaContent):
            limit = self.rate_limiter.try_consume(message.sender_id, DOWNLOADS_BUCKET)
            if not limit.allowed:
                await self._post_notice(message.thread_id,
                                        formatter.rate_limit_notice(format_wait_hint(limit.retry_after_ms)),
                                        container_id=message.chat_id)
                return None
            return await self.media_relay.relay_outbound(content, conversation_id, content.caption)

        if isinstance(content, LocationContent):
            return await self.source_client.send(conversation_id, content)

        if isinstance(content, ContactContent):
            vcard = content.vcard or formatter.build_vcard(content.display_name, content.phone_number)
            display_name = content.display_name.strip() or content.phone_number
            return await self.source_client.send(
                conversation_id,
                ContactContent(display_name=display_name, phone_number=content.phone_number, vcard=vcard)
            )

        self.logger.warning(f"Unsupported forum content: {type(content).__name__}")
        return None

    async def _handle_status_reply(self, message: ForumMessage) -> bool:
        entry = None
        if message.reply_to_message_id is not None:
            entry = self.reply_index.lookup(message.reply_to_message_id)

        if entry is None or not isinstance(message.content, TextContent):
            await self._post_notice(message.thread_id, formatter.MISSING_STATUS_TEXT,
                                    container_id=message.chat_id)
            return False

        try:
            receipt = await self.source_client.send(entry.original_poster,
                                                    TextContent(text=message.content.text))
        except Exception as e:
            self.stats['failures'] += 1
            self.logger.error(f"Failed to send status reply to {entry.original_poster}: {e}")
            receipt = None

        if receipt is None:
            await self._react(message, formatter.REACTION_FAILURE)
            return False

        self.stats['relayed_to_source'] += 1
        await self._react(message, formatter.REACTION_STATUS_REPLY)
        return True

    async def _handle_private_message(self, message: ForumMessage) -> bool:
        content = message.content
        if not isinstance(content, TextContent) or not content.text.startswith(self.command_prefix):
            return False

        limit = self.rate_limiter.try_consume(message.sender_id, COMMANDS_BUCKET)
        if not limit.allowed:
            await self._post_notice(None, formatter.rate_limit_notice(format_wait_hint(limit.retry_after_ms)),
                                    container_id=message.chat_id)
            return False

        if self.command_handler is None:
            self.logger.debug(f"No command handler registered for: {content.text.split()[0]}")
            return False

        reply = await self.command_handler(message)
        if reply:
            await self._post_notice(None, reply, container_id=message.chat_id)
        return True

    # Helpers

    async def _react(self, message: ForumMessage, emoji: str) -> None:
        try:
            await self.forum_client.set_reaction(message.chat_id, message.message_id, emoji)
        except Exception as e:
            self.logger.debug(f"Could not set reaction {emoji}: {e}")

    async def _post_notice(self, thread_id: Optional[int], text: str,
                           container_id: Optional[int] = None) -> None:
        try:
            await self.forum_client.send_text(container_id or self.container_id, thread_id, text)
        except Exception as e:
            self.logger.error(f"Failed to post notice: {e}")

    async def _alert_operator(self, title: str, text: str) -> None:
        if self.operator_alert is None:
            return
        try:
            await self.operator_alert(title, text)
        except Exception as e:
            self.logger.error(f"Operator alert failed: {e}")

    def _schedule_mark_read(self, conversation_id: str, keys: List[SourceMessageKey]) -> None:
        task = asyncio.create_task(self._mark_read_later(conversation_id, keys))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _mark_read_later(self, conversation_id: str, keys: List[SourceMessageKey]) -> None:
        await asyncio.sleep(self.mark_read_delay)
        try:
            await self.source_client.mark_read(conversation_id, keys)
        except Exception as e:
            self.logger.debug(f"Failed to mark messages read in {conversation_id}: {e}")

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'active_workers': len(self._workers),
            'queued_events': sum(len(queue) for queue in self._queues.values()),
            **self.stats,
        }
