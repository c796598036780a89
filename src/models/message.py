"""
Message data models for TopicGate

Defines the content and event structures exchanged with the two network
clients. Client shims decode their wire payloads into these variants once,
at the network boundary, so the bridge never probes optional fields.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


GROUP_SUFFIX = "@g.us"
BROADCAST_CONVERSATION_ID = "status@broadcast"
CALL_LOG_CONVERSATION_ID = "call@broadcast"


class ConversationClass(Enum):
    """Conversation classes on the source network"""
    BROADCAST = "broadcast"
    CALL_LOG = "call_log"
    GROUP = "group"
    DIRECT = "direct"

    @property
    def is_system(self) -> bool:
        return self in (ConversationClass.BROADCAST, ConversationClass.CALL_LOG)


def classify_conversation(conversation_id: str) -> ConversationClass:
    """Classify a source conversation address"""
    if conversation_id == BROADCAST_CONVERSATION_ID:
        return ConversationClass.BROADCAST
    if conversation_id == CALL_LOG_CONVERSATION_ID:
        return ConversationClass.CALL_LOG
    if conversation_id.endswith(GROUP_SUFFIX):
        return ConversationClass.GROUP
    return ConversationClass.DIRECT


def numeric_handle(address: str) -> str:
    """Strip the server part from a source address ("123@s.net" -> "123")"""
    return address.split("@", 1)[0].split(":", 1)[0]


class MediaKind(Enum):
    """Attachment kinds understood by both networks"""
    IMAGE = "image"
    VIDEO = "video"
    VIDEO_NOTE = "video_note"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"


class PresenceState(Enum):
    """Presence states sent toward the source network"""
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    COMPOSING = "composing"
    PAUSED = "paused"


class ConnectionStatus(Enum):
    """Connection status reported by the source client"""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class DisconnectReason(Enum):
    """Why the source connection closed"""
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_REPLACED = "connection_replaced"
    TIMED_OUT = "timed_out"
    RESTART_REQUIRED = "restart_required"
    LOGGED_OUT = "logged_out"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        """Only an explicit remote logout needs manual re-authentication"""
        return self is DisconnectReason.LOGGED_OUT


# Content variants

@dataclass
class TextContent:
    """Plain text message"""
    text: str
    has_spoiler: bool = False


@dataclass
class MediaContent:
    """Attachment reference plus the metadata needed to re-send it"""
    kind: MediaKind
    ref: Any
    caption: str = ""
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    push_to_talk: bool = False
    gif_playback: bool = False
    is_animated: bool = False
    has_spoiler: bool = False
    file_size: Optional[int] = None
    duration: Optional[int] = None
    title: Optional[str] = None


@dataclass
class LocationContent:
    """Shared location"""
    latitude: float
    longitude: float
    name: Optional[str] = None


@dataclass
class ContactContent:
    """Shared contact card"""
    display_name: str
    phone_number: str = ""
    vcard: Optional[str] = None


Content = Union[TextContent, MediaContent, LocationContent, ContactContent]


@dataclass
class MediaPayload:
    """Staged media handed to the source client for sending"""
    kind: MediaKind
    path: str
    caption: str = ""
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    push_to_talk: bool = False
    gif_playback: bool = False
    is_animated: bool = False
    view_once: bool = False


OutboundContent = Union[TextContent, MediaPayload, LocationContent, ContactContent]


@dataclass(frozen=True)
class SourceMessageKey:
    """Identifies one message on the source network"""
    conversation_id: str
    message_id: str
    participant_id: Optional[str] = None
    from_me: bool = False


@dataclass
class SendReceipt:
    """Result of a successful send on the source network"""
    key: SourceMessageKey
    timestamp: datetime = field(default_factory=datetime.utcnow)


# Source network events

class SourceEventKind(Enum):
    """Closed set of events emitted by the source client"""
    MESSAGE = "message"
    CONNECTION = "connection"
    CALL = "call"
    CREDENTIALS = "credentials"
    CONTACTS = "contacts"


@dataclass
class SourceMessage:
    """New message on the source network"""
    key: SourceMessageKey
    content: Content
    push_name: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    kind = SourceEventKind.MESSAGE

    @property
    def conversation_id(self) -> str:
        return self.key.conversation_id

    @property
    def participant_id(self) -> str:
        """Author of the message; the conversation itself for direct chats"""
        return self.key.participant_id or self.key.conversation_id


@dataclass
class ConnectionUpdate:
    """Connection state transition reported by the source client"""
    status: ConnectionStatus
    reason: Optional[DisconnectReason] = None
    detail: str = ""

    kind = SourceEventKind.CONNECTION


@dataclass
class CallEvent:
    """Incoming call notification"""
    caller_id: str
    call_id: str
    status: str = "incoming"
    timestamp: datetime = field(default_factory=datetime.utcnow)
    is_video: bool = False

    kind = SourceEventKind.CALL

    @property
    def call_key(self) -> str:
        return f"{self.caller_id}_{self.call_id}"


@dataclass
class CredentialsUpdate:
    """The source client rotated its credentials"""
    metadata: Dict[str, Any] = field(default_factory=dict)

    kind = SourceEventKind.CREDENTIALS


@dataclass
class ContactEntry:
    """One address-book entry"""
    contact_id: str
    name: str


@dataclass
class ContactsUpdate:
    """Address-book names changed on the source network"""
    contacts: List[ContactEntry] = field(default_factory=list)

    kind = SourceEventKind.CONTACTS


SourceEvent = Union[SourceMessage, ConnectionUpdate, CallEvent, CredentialsUpdate, ContactsUpdate]


# Forum network events

class ForumEventKind(Enum):
    """Closed set of events emitted by the forum client"""
    THREAD_MESSAGE = "thread_message"


@dataclass
class ForumMessage:
    """New message posted on the forum network"""
    chat_id: int
    message_id: int
    sender_id: str
    content: Content
    thread_id: Optional[int] = None
    reply_to_message_id: Optional[int] = None
    is_private: bool = False
    timestamp: datetime = field(default_factory=datetime.utcnow)

    kind = ForumEventKind.THREAD_MESSAGE


ForumEvent = ForumMessage
