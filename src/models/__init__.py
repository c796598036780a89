"""
Data models for TopicGate

Contains the content variants and network events exchanged with the
source and forum clients.
"""

from .message import (
    ConversationClass, MediaKind, PresenceState, ConnectionStatus, DisconnectReason,
    TextContent, MediaContent, LocationContent, ContactContent, MediaPayload,
    SourceMessageKey, SendReceipt, SourceEventKind, SourceMessage, ConnectionUpdate,
    CallEvent, CredentialsUpdate, ContactEntry, ContactsUpdate,
    ForumEventKind, ForumMessage, classify_conversation, numeric_handle
)

__all__ = [
    'ConversationClass', 'MediaKind', 'PresenceState', 'ConnectionStatus', 'DisconnectReason',
    'TextContent', 'MediaContent', 'LocationContent', 'ContactContent', 'MediaPayload',
    'SourceMessageKey', 'SendReceipt', 'SourceEventKind', 'SourceMessage', 'ConnectionUpdate',
    'CallEvent', 'CredentialsUpdate', 'ContactEntry', 'ContactsUpdate',
    'ForumEventKind', 'ForumMessage', 'classify_conversation', 'numeric_handle'
]
