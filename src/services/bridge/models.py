"""
Bridge Data Models for TopicGate

Records owned by the bridge core and the exception hierarchy shared by its
components.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from src.models.message import SourceMessageKey, numeric_handle


class BridgeError(Exception):
    """Base class for bridge errors"""
    pass


class BridgeConfigurationError(BridgeError):
    """Bridge configuration is missing or invalid"""
    pass


class MappingConflictError(BridgeError):
    """A thread is already bound to a different conversation"""
    pass


class MediaRelayError(BridgeError):
    """A media item could not be relayed"""
    pass


class MediaDownloadError(MediaRelayError):
    """Attachment bytes could not be fetched"""
    pass


class MediaTooLargeError(MediaRelayError):
    """Attachment exceeds the configured size cap"""
    pass


class MediaTimeoutError(MediaRelayError):
    """Download or upload exceeded the configured wait"""
    pass


class MediaTranscodeError(MediaRelayError):
    """Attachment could not be converted to a format the destination accepts"""
    pass


@dataclass
class ConversationMapping:
    """Association between a source conversation and its forum thread"""
    source_conversation_id: str
    thread_id: int
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_conversation_id': self.source_conversation_id,
            'thread_id': self.thread_id,
            'created_at': self.created_at.isoformat(),
        }


@dataclass
class ParticipantProfile:
    """
    Metadata about a participant seen on the source network.

    The display name follows a first-non-empty-name-wins policy: once set it
    is never replaced by a later observation.
    """
    participant_id: str
    display_name: Optional[str] = None
    numeric_handle: str = ""
    first_seen_at: datetime = field(default_factory=datetime.utcnow)
    message_count: int = 0

    def __post_init__(self):
        if not self.numeric_handle:
            self.numeric_handle = numeric_handle(self.participant_id)

    def observe(self, observed_name: Optional[str]) -> bool:
        """
        Record a sighting.

        Returns:
            True if the display name was filled in by this observation
        """
        self.message_count += 1
        name = (observed_name or "").strip()
        if name and not self.display_name:
            self.display_name = name
            return True
        return False


@dataclass
class PendingCallEvent:
    """A call notification inside its suppression window"""
    call_key: str
    expires_at: float


@dataclass
class ReplyIndexEntry:
    """Forum message that mirrors a broadcast post"""
    forum_message_id: int
    source_key: SourceMessageKey
    created_at: float

    @property
    def original_poster(self) -> str:
        return self.source_key.participant_id or self.source_key.conversation_id
