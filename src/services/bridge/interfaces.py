"""
Network Client Interfaces for TopicGate

The bridge never speaks either network's wire protocol. It consumes the two
narrow client contracts below; concrete shims decode their payloads into the
content variants of src.models.message before handing events over.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

from src.models.message import (
    ForumEvent, OutboundContent, PresenceState, SendReceipt, SourceEvent, SourceMessageKey
)


class SourceClient(ABC):
    """Client for the conversation network the bridge mirrors"""

    @abstractmethod
    async def connect(self) -> None:
        """Open (or re-open) the connection; raises on failure"""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection without logging out"""
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[SourceEvent]:
        """Stream of decoded source events"""
        pass

    @abstractmethod
    async def send(self, conversation_id: str, content: OutboundContent) -> Optional[SendReceipt]:
        """
        Send content to a conversation.

        Returns:
            Receipt for the sent message, or None if the network did not
            acknowledge it
        """
        pass

    @abstractmethod
    def download_attachment(self, ref: Any) -> AsyncIterator[bytes]:
        """Stream the bytes of an attachment referenced by a received message"""
        pass

    @abstractmethod
    async def mark_read(self, conversation_id: str, keys: List[SourceMessageKey]) -> None:
        """Mark messages as read"""
        pass

    @abstractmethod
    async def set_presence(self, conversation_id: str, state: PresenceState) -> None:
        """Publish a presence state to a conversation"""
        pass

    @abstractmethod
    async def fetch_group_metadata(self, conversation_id: str) -> Dict[str, Any]:
        """Group metadata; the bridge reads the "subject" key"""
        pass

    @abstractmethod
    async def fetch_profile_photo_url(self, participant_id: str) -> Optional[str]:
        """URL of a participant's profile photo, or None when hidden"""
        pass


class ForumClient(ABC):
    """Client for the forum network hosting one thread per conversation"""

    @abstractmethod
    async def create_thread(self, container_id: int, title: str, accent_color: int) -> int:
        """Create a thread and return its id"""
        pass

    @abstractmethod
    async def edit_thread(self, container_id: int, thread_id: int, title: str) -> None:
        """Rename a thread"""
        pass

    @abstractmethod
    async def send_text(self, container_id: int, thread_id: Optional[int], text: str) -> int:
        pass

    @abstractmethod
    async def send_photo(self, container_id: int, thread_id: Optional[int], path: str,
                         caption: str = "") -> int:
        pass

    @abstractmethod
    async def send_video(self, container_id: int, thread_id: Optional[int], path: str,
                         caption: str = "") -> int:
        pass

    @abstractmethod
    async def send_audio(self, container_id: int, thread_id: Optional[int], path: str,
                         caption: str = "", voice: bool = False) -> int:
        pass

    @abstractmethod
    async def send_document(self, container_id: int, thread_id: Optional[int], path: str,
                            caption: str = "", file_name: Optional[str] = None) -> int:
        pass

    @abstractmethod
    async def send_sticker(self, container_id: int, thread_id: Optional[int], path: str) -> int:
        pass

    @abstractmethod
    async def send_location(self, container_id: int, thread_id: Optional[int],
                            latitude: float, longitude: float) -> int:
        pass

    @abstractmethod
    async def pin_message(self, container_id: int, message_id: int) -> None:
        pass

    @abstractmethod
    async def set_reaction(self, container_id: int, message_id: int, emoji: str) -> None:
        pass

    @abstractmethod
    async def get_download_link(self, file_id: str) -> str:
        """Resolve a forum file id to a downloadable URL"""
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[ForumEvent]:
        """Stream of decoded forum events"""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources"""
        pass
