"""
Unit tests for the conversation mapping store.
"""
import asyncio
from unittest.mock import Mock

import pytest

from src.services.bridge.database import BridgeDatabase
from src.services.bridge.mapping_store import MappingStore
from src.services.bridge.models import MappingConflictError


GROUP = "120363000000000001@g.us"
ALICE = "15551230001@s.whatsapp.net"
BOB = "15551230002@s.whatsapp.net"


class TestMappings:
    """Forward and reverse mapping behaviour"""

    @pytest.mark.asyncio
    async def test_record_and_resolve_both_directions(self, store):
        await store.record(GROUP, 42)

        assert store.resolve(GROUP) == 42
        assert store.reverse_resolve(42) == GROUP
        assert store.mapping_count == 1

    @pytest.mark.asyncio
    async def test_unknown_lookups_return_none(self, store):
        assert store.resolve(ALICE) is None
        assert store.reverse_resolve(7) is None

    @pytest.mark.asyncio
    async def test_record_is_idempotent(self, store):
        first = await store.record(ALICE, 10)
        second = await store.record(ALICE, 11)

        assert second is first
        assert store.resolve(ALICE) == 10
        assert store.reverse_resolve(11) is None

    @pytest.mark.asyncio
    async def test_thread_bound_to_other_conversation_conflicts(self, store):
        await store.record(ALICE, 10)

        with pytest.raises(MappingConflictError):
            await store.record(BOB, 10)

        assert store.resolve(BOB) is None
        assert store.reverse_resolve(10) == ALICE

    @pytest.mark.asyncio
    async def test_delete_removes_both_indexes(self, store):
        await store.record(ALICE, 10)

        assert await store.delete(ALICE) is True
        assert store.resolve(ALICE) is None
        assert store.reverse_resolve(10) is None
        assert await store.delete(ALICE) is False

    @pytest.mark.asyncio
    async def test_mappings_survive_reload(self, bridge_db):
        store = MappingStore(bridge_db)
        await store.record(ALICE, 10)
        await store.record(GROUP, 20)

        reloaded = MappingStore(bridge_db)
        assert await reloaded.load() == 2
        assert reloaded.mappings() == {ALICE: 10, GROUP: 20}
        assert reloaded.reverse_resolve(20) == GROUP

    @pytest.mark.asyncio
    async def test_deleted_mapping_is_not_reloaded(self, bridge_db):
        store = MappingStore(bridge_db)
        await store.record(ALICE, 10)
        await store.delete(ALICE)

        reloaded = MappingStore(bridge_db)
        assert await reloaded.load() == 0

    @pytest.mark.asyncio
    async def test_concurrent_records_keep_indexes_consistent(self, store):
        conversations = [f"1555000{i:04d}@s.whatsapp.net" for i in range(50)]

        await asyncio.gather(*(store.record(conv, 500 + i) for i, conv in enumerate(conversations)))

        for conv, thread_id in store.mappings().items():
            assert store.reverse_resolve(thread_id) == conv
        assert store.mapping_count == 50


class TestStorageFailures:
    """Storage errors are logged and never stop relaying"""

    @pytest.mark.asyncio
    async def test_failed_write_keeps_in_memory_mapping(self):
        database = Mock(spec=BridgeDatabase)
        database.upsert_mapping.side_effect = RuntimeError("disk full")
        store = MappingStore(database)

        mapping = await store.record(ALICE, 10)

        assert mapping.thread_id == 10
        assert store.resolve(ALICE) == 10
        assert store.get_statistics()['storage_errors'] == 1

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_memory_and_storage_in_step(self, bridge_db, monkeypatch):
        store = MappingStore(bridge_db)
        await store.record(ALICE, 91)
        monkeypatch.setattr(bridge_db, "delete_mapping", Mock(side_effect=RuntimeError("locked")))

        assert await store.delete(ALICE) is False
        assert store.resolve(ALICE) == 91
        assert store.reverse_resolve(91) == ALICE
        assert store.get_statistics()['mappings_deleted'] == 0

        monkeypatch.undo()
        reloaded = MappingStore(bridge_db)
        await reloaded.load()
        assert reloaded.resolve(ALICE) == 91

        assert await store.delete(ALICE) is True
        await reloaded.load()
        assert reloaded.resolve(ALICE) is None

    @pytest.mark.asyncio
    async def test_failed_load_returns_zero(self):
        database = Mock(spec=BridgeDatabase)
        database.get_all_mappings.side_effect = RuntimeError("locked")
        store = MappingStore(database)

        assert await store.load() == 0
        assert store.mapping_count == 0

    @pytest.mark.asyncio
    async def test_memory_only_store(self):
        store = MappingStore()

        assert await store.load() == 0
        await store.record(ALICE, 10)
        assert store.resolve(ALICE) == 10


class TestProfiles:
    """Participant profiles and display names"""

    @pytest.mark.asyncio
    async def test_first_non_empty_name_wins(self, store):
        await store.upsert_profile(ALICE)
        await store.upsert_profile(ALICE, "  ")
        await store.upsert_profile(ALICE, "Alice")
        profile = await store.upsert_profile(ALICE, "Mallory")

        assert profile.display_name == "Alice"
        assert profile.message_count == 4
        assert profile.numeric_handle == "15551230001"

    @pytest.mark.asyncio
    async def test_profile_name_survives_reload(self, bridge_db):
        store = MappingStore(bridge_db)
        await store.upsert_profile(ALICE, "Alice")

        reloaded = MappingStore(bridge_db)
        await reloaded.load()

        assert reloaded.get_profile(ALICE).display_name == "Alice"
        assert reloaded.participant_count == 1

    @pytest.mark.asyncio
    async def test_display_name_precedence(self, store):
        assert store.display_name_for(ALICE) == "+15551230001"
        assert store.display_name_for(ALICE, "Pushed") == "Pushed"

        await store.upsert_profile(ALICE, "Profile Alice")
        assert store.display_name_for(ALICE, "Pushed") == "Profile Alice"

        await store.set_contact_name(ALICE, "Alice Address Book")
        assert store.display_name_for(ALICE, "Pushed") == "Alice Address Book"


class TestContactNames:
    """Address-book names keyed by numeric handle"""

    @pytest.mark.asyncio
    async def test_set_reports_changes_only(self, store):
        assert await store.set_contact_name(ALICE, "Alice") is True
        assert await store.set_contact_name(ALICE, "Alice") is False
        assert await store.set_contact_name(ALICE, "Alice B") is True
        assert await store.set_contact_name(ALICE, "") is False

    @pytest.mark.asyncio
    async def test_lookup_ignores_device_suffix(self, store):
        await store.set_contact_name("15551230001:12@s.whatsapp.net", "Alice")

        assert store.contact_name(ALICE) == "Alice"

    @pytest.mark.asyncio
    async def test_contact_names_survive_reload(self, bridge_db):
        store = MappingStore(bridge_db)
        await store.set_contact_name(BOB, "Bob")

        reloaded = MappingStore(bridge_db)
        await reloaded.load()

        assert reloaded.contact_name(BOB) == "Bob"
