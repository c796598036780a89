"""
Bridge service package for TopicGate

Mirrors source-network conversations into forum threads and relays thread
replies back.
"""

from .bridge_service import BridgeService
from .call_deduplicator import CallDeduplicator
from .dispatcher import BridgeDispatcher
from .interfaces import ForumClient, SourceClient
from .mapping_store import MappingStore
from .media_relay import MediaRelay
from .models import (
    BridgeError, BridgeConfigurationError, MappingConflictError,
    MediaRelayError, MediaDownloadError, MediaTooLargeError, MediaTimeoutError,
    MediaTranscodeError
)
from .presence_simulator import PresenceSimulator
from .rate_limiter import RateLimiter, RateLimitResult, format_wait_hint
from .reconnect_supervisor import ConnectionState, ReconnectSupervisor
from .reply_index import ReplyIndex
from .topic_resolver import TopicResolver

__all__ = [
    'BridgeService', 'BridgeDispatcher', 'CallDeduplicator', 'ForumClient', 'SourceClient',
    'MappingStore', 'MediaRelay', 'PresenceSimulator', 'RateLimiter', 'RateLimitResult',
    'format_wait_hint', 'ConnectionState', 'ReconnectSupervisor', 'ReplyIndex', 'TopicResolver',
    'BridgeError', 'BridgeConfigurationError', 'MappingConflictError',
    'MediaRelayError', 'MediaDownloadError', 'MediaTooLargeError', 'MediaTimeoutError',
    'MediaTranscodeError'
]
