"""
Mapping Store for TopicGate

Owns the conversation <-> thread mappings, participant profiles and synced
address-book names. Lookups are plain dict reads; every mutation runs under a
single asyncio.Lock so the forward index, the reverse index and the backing
rows never disagree.
"""

import asyncio
import logging
from typing import Dict, Optional

from src.models.message import numeric_handle
from .database import BridgeDatabase
from .models import ConversationMapping, MappingConflictError, ParticipantProfile


class MappingStore:
    """
    Identity registry for the bridge.

    Features:
    - O(1) forward and reverse lookups between conversations and threads
    - Idempotent mapping creation with conflict detection
    - First-non-empty-name-wins participant profiles
    - Last-writer-wins address-book names
    - Write-through persistence; storage failures never stop relaying
    """

    def __init__(self, database: Optional[BridgeDatabase] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize the store.

        Args:
            database: Persistence backend, or None for a memory-only store
            logger: Logger instance for store operations
        """
        self.database = database
        self.logger = logger or logging.getLogger(__name__)

        self._forward: Dict[str, ConversationMapping] = {}
        self._reverse: Dict[int, str] = {}
        self._profiles: Dict[str, ParticipantProfile] = {}
        self._contact_names: Dict[str, str] = {}

        self._lock = asyncio.Lock()

        self._stats = {
            'mappings_created': 0,
            'mappings_deleted': 0,
            'profiles_created': 0,
            'storage_errors': 0,
        }

    async def load(self) -> int:
        """
        Rebuild the in-memory indexes from storage.

        Returns:
            Number of mappings loaded
        """
        if self.database is None:
            return 0

        async with self._lock:
            try:
                mappings = self.database.get_all_mappings()
                profiles = self.database.get_all_profiles()
                contacts = self.database.get_all_contact_names()
            except Exception as e:
                self._stats['storage_errors'] += 1
                self.logger.error(f"Failed to load bridge state from storage: {e}", exc_info=True)
                return 0

            self._forward.clear()
            self._reverse.clear()
            for mapping in mappings:
                if mapping.thread_id in self._reverse:
                    self.logger.warning(
                        f"Skipping duplicate thread {mapping.thread_id} for "
                        f"{mapping.source_conversation_id}"
                    )
                    continue
                self._forward[mapping.source_conversation_id] = mapping
                self._reverse[mapping.thread_id] = mapping.source_conversation_id

            self._profiles = {profile.participant_id: profile for profile in profiles}
            self._contact_names = dict(contacts)

        self.logger.info(
            f"Loaded {len(self._forward)} mappings, {len(self._profiles)} profiles "
            f"and {len(self._contact_names)} contact names"
        )
        return len(self._forward)

    # Mappings

    def resolve(self, conversation_id: str) -> Optional[int]:
        """Thread bound to a conversation, if any"""
        mapping = self._forward.get(conversation_id)
        return mapping.thread_id if mapping else None

    def reverse_resolve(self, thread_id: int) -> Optional[str]:
        """Conversation bound to a thread, if any"""
        return self._reverse.get(thread_id)

    async def record(self, conversation_id: str, thread_id: int) -> ConversationMapping:
        """
        Bind a conversation to a thread.

        Recording a conversation that is already mapped is a no-op and returns
        the existing mapping.

        Raises:
            MappingConflictError: If the thread is bound to another conversation
        """
        async with self._lock:
            existing = self._forward.get(conversation_id)
            if existing is not None:
                return existing

            owner = self._reverse.get(thread_id)
            if owner is not None and owner != conversation_id:
                raise MappingConflictError(
                    f"Thread {thread_id} is already bound to {owner}"
                )

            mapping = ConversationMapping(source_conversation_id=conversation_id, thread_id=thread_id)
            self._forward[conversation_id] = mapping
            self._reverse[thread_id] = conversation_id
            self._stats['mappings_created'] += 1

            if self.database is not None:
                try:
                    self.database.upsert_mapping(mapping)
                except Exception as e:
                    # Keep the in-memory mapping so relaying continues this session
                    self._stats['storage_errors'] += 1
                    self.logger.error(
                        f"Failed to persist mapping {conversation_id} -> {thread_id}: {e}",
                        exc_info=True
                    )

        self.logger.debug(f"Mapped {conversation_id} -> thread {thread_id}")
        return mapping

    async def delete(self, conversation_id: str) -> bool:
        """
        Remove a mapping together with its reverse entry and backing row.

        The stored row goes first; if storage fails the mapping stays in
        memory so a reload cannot resurrect a mapping reported as deleted.

        Returns:
            True if a mapping existed and was removed
        """
        async with self._lock:
            mapping = self._forward.get(conversation_id)
            if mapping is None:
                return False

            if self.database is not None:
                try:
                    self.database.delete_mapping(conversation_id)
                except Exception as e:
                    self._stats['storage_errors'] += 1
                    self.logger.error(f"Failed to delete stored mapping {conversation_id}: {e}",
                                      exc_info=True)
                    return False

            del self._forward[conversation_id]
            if self._reverse.get(mapping.thread_id) == conversation_id:
                del self._reverse[mapping.thread_id]
            self._stats['mappings_deleted'] += 1

        self.logger.info(f"Deleted mapping for {conversation_id} (thread {mapping.thread_id})")
        return True

    def mappings(self) -> Dict[str, int]:
        """Snapshot of conversation -> thread"""
        return {conv: mapping.thread_id for conv, mapping in self._forward.items()}

    @property
    def mapping_count(self) -> int:
        return len(self._forward)

    # Profiles

    async def upsert_profile(self, participant_id: str,
                             observed_name: Optional[str] = None) -> ParticipantProfile:
        """Record a sighting of a participant; an existing name is never replaced"""
        async with self._lock:
            profile = self._profiles.get(participant_id)
            if profile is None:
                profile = ParticipantProfile(participant_id=participant_id)
                self._profiles[participant_id] = profile
                self._stats['profiles_created'] += 1

            if profile.observe(observed_name):
                self.logger.debug(f"Named participant {participant_id}: {profile.display_name}")

            if self.database is not None:
                try:
                    self.database.upsert_profile(profile)
                except Exception as e:
                    self._stats['storage_errors'] += 1
                    self.logger.error(f"Failed to persist profile {participant_id}: {e}")

        return profile

    def get_profile(self, participant_id: str) -> Optional[ParticipantProfile]:
        return self._profiles.get(participant_id)

    @property
    def participant_count(self) -> int:
        return len(self._profiles)

    # Address-book names

    async def set_contact_name(self, participant_id: str, name: str) -> bool:
        """
        Store an address-book name for a participant.

        Returns:
            True if the stored name changed
        """
        handle = numeric_handle(participant_id)
        name = (name or "").strip()
        if not handle or not name:
            return False

        async with self._lock:
            if self._contact_names.get(handle) == name:
                return False
            self._contact_names[handle] = name

            if self.database is not None:
                try:
                    self.database.upsert_contact_name(handle, name)
                except Exception as e:
                    self._stats['storage_errors'] += 1
                    self.logger.error(f"Failed to persist contact name for {handle}: {e}")

        return True

    @property
    def contact_count(self) -> int:
        return len(self._contact_names)

    def contact_name(self, participant_id: str) -> Optional[str]:
        return self._contact_names.get(numeric_handle(participant_id))

    def display_name_for(self, participant_id: str, fallback: Optional[str] = None) -> str:
        """
        Best human-readable name for a participant.

        Address-book name first, then the first observed profile name, then the
        given fallback, then "+<numeric handle>".
        """
        name = self.contact_name(participant_id)
        if name:
            return name

        profile = self._profiles.get(participant_id)
        if profile and profile.display_name:
            return profile.display_name

        if fallback and fallback.strip():
            return fallback.strip()

        return f"+{numeric_handle(participant_id)}"

    def get_statistics(self):
        return {
            'mapping_count': self.mapping_count,
            'participant_count': self.participant_count,
            'contact_count': self.contact_count,
            **self._stats,
        }
