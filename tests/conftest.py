"""
Global pytest configuration and fixtures for TopicGate testing.
"""
import tempfile
from pathlib import Path

import pytest

from src.core.database import DatabaseManager
from src.services.bridge.call_deduplicator import CallDeduplicator
from src.services.bridge.database import BridgeDatabase
from src.services.bridge.dispatcher import BridgeDispatcher
from src.services.bridge.mapping_store import MappingStore
from src.services.bridge.media_relay import MediaRelay
from src.services.bridge.presence_simulator import PresenceSimulator
from src.services.bridge.rate_limiter import RateLimiter
from src.services.bridge.reconnect_supervisor import ReconnectSupervisor
from src.services.bridge.reply_index import ReplyIndex
from src.services.bridge.topic_resolver import TopicResolver
from tests.mocks.network_mocks import (
    CONTAINER_ID, LOG_CONTAINER_ID, FakeClock, MockForumClient, MockSourceClient
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_config(temp_dir):
    """Provide a bridge configuration section."""
    return {
        "enabled": True,
        "forum": {
            "container_id": CONTAINER_ID,
            "log_container_id": LOG_CONTAINER_ID
        },
        "sync": {
            "include_self_messages": False,
            "ignored_conversations": [],
            "command_prefix": "/"
        },
        "media": {
            "staging_dir": str(temp_dir / "staging"),
            "max_file_size": 1024 * 1024,
            "timeout": 5
        },
        "rate_limits": {
            "commands": {"points": 3, "duration": 60},
            "downloads": {"points": 2, "duration": 3600},
            "cleanup_interval": 300
        },
        "reconnect": {"delay": 0.01, "multiplier": 1.0, "max_delay": 0.05},
        "presence": {"revert_after": 0.05},
        "calls": {"suppression_window": 30, "cleanup_interval": 60},
        "reply_index": {"max_age": 86400},
        "mark_read_delay": 0.01
    }


@pytest.fixture
def db_manager(temp_dir):
    """SQLite database with the bridge schema applied."""
    manager = DatabaseManager(str(temp_dir / "test.db"))
    yield manager
    manager.close()


@pytest.fixture
def bridge_db(db_manager):
    return BridgeDatabase(db_manager)


@pytest.fixture
def source_client():
    return MockSourceClient()


@pytest.fixture
def forum_client():
    return MockForumClient()


@pytest.fixture
def store(bridge_db):
    return MappingStore(bridge_db)


@pytest.fixture
def media_relay(source_client, forum_client, temp_dir):
    return MediaRelay(source_client, forum_client, CONTAINER_ID,
                      staging_dir=str(temp_dir / "staging"), max_file_size=1024 * 1024, timeout=2.0)


@pytest.fixture
def resolver(store, source_client, forum_client, media_relay):
    return TopicResolver(store, source_client, forum_client, CONTAINER_ID, media_relay=media_relay)


@pytest.fixture
async def bridge_parts(store, resolver, media_relay, source_client, forum_client, clock):
    """Every dispatcher collaborator, wired to the mock clients."""
    parts = {
        'store': store,
        'resolver': resolver,
        'media_relay': media_relay,
        'rate_limiter': RateLimiter.from_config(
            {"commands": {"points": 3, "duration": 60}, "downloads": {"points": 2, "duration": 3600}},
            clock=clock
        ),
        'supervisor': ReconnectSupervisor(source_client.connect, delay=0.01, max_delay=0.05),
        'deduplicator': CallDeduplicator(window=30, clock=clock),
        'presence': PresenceSimulator(source_client, revert_after=0.05),
        'reply_index': ReplyIndex(max_age=86400, clock=clock),
        'source_client': source_client,
        'forum_client': forum_client,
    }
    yield parts
    await parts['supervisor'].request_shutdown()
    await parts['presence'].cancel_all()


@pytest.fixture
async def make_dispatcher(bridge_parts):
    """Factory for dispatchers over the shared collaborators; all are stopped after the test."""
    created = []

    def factory(**options):
        alerts = []

        async def operator_alert(title, text):
            alerts.append((title, text))

        options.setdefault("operator_alert", operator_alert)
        options.setdefault("mark_read_delay", 0.01)
        instance = BridgeDispatcher(container_id=CONTAINER_ID, **bridge_parts, **options)
        instance.alerts = alerts
        created.append(instance)
        return instance

    yield factory
    for instance in created:
        await instance.stop()


@pytest.fixture
def dispatcher(make_dispatcher):
    """Dispatcher with default options"""
    return make_dispatcher()
