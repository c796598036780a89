"""
Bridge Database Operations for TopicGate

Durable storage for conversation mappings, participant profiles and
address-book names. Every table exposes the same get-all / upsert / delete
contract so the mapping store can be rebuilt after a restart.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from src.core.database import DatabaseManager, get_database
from .models import ConversationMapping, ParticipantProfile


class BridgeDatabase:
    """Bridge state persistence on top of the shared DatabaseManager"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.logger = logging.getLogger(__name__)
        self.db = db or get_database()

    # Conversation mappings

    def get_all_mappings(self) -> List[ConversationMapping]:
        """Load every stored conversation mapping"""
        rows = self.db.execute_query(
            "SELECT source_conversation_id, thread_id, created_at FROM conversation_mappings"
        )
        return [
            ConversationMapping(
                source_conversation_id=row['source_conversation_id'],
                thread_id=int(row['thread_id']),
                created_at=_parse_datetime(row['created_at'])
            )
            for row in rows
        ]

    def upsert_mapping(self, mapping: ConversationMapping) -> None:
        """Insert a mapping, leaving an existing row for the same conversation untouched"""
        self.db.execute_update(
            """
            INSERT INTO conversation_mappings (source_conversation_id, thread_id, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(source_conversation_id) DO NOTHING
            """,
            (mapping.source_conversation_id, mapping.thread_id, mapping.created_at.isoformat())
        )

    def delete_mapping(self, source_conversation_id: str) -> int:
        """Delete a mapping, returning the number of removed rows"""
        return self.db.execute_update(
            "DELETE FROM conversation_mappings WHERE source_conversation_id = ?",
            (source_conversation_id,)
        )

    # Participant profiles

    def get_all_profiles(self) -> List[ParticipantProfile]:
        """Load every stored participant profile"""
        rows = self.db.execute_query(
            """
            SELECT participant_id, display_name, numeric_handle, first_seen_at, message_count
            FROM participant_profiles
            """
        )
        return [
            ParticipantProfile(
                participant_id=row['participant_id'],
                display_name=row['display_name'],
                numeric_handle=row['numeric_handle'],
                first_seen_at=_parse_datetime(row['first_seen_at']),
                message_count=row['message_count'] or 0
            )
            for row in rows
        ]

    def upsert_profile(self, profile: ParticipantProfile) -> None:
        """Insert or update a profile; a stored display name is never replaced"""
        self.db.execute_update(
            """
            INSERT INTO participant_profiles
                (participant_id, display_name, numeric_handle, first_seen_at, message_count, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(participant_id) DO UPDATE SET
                display_name = COALESCE(participant_profiles.display_name, excluded.display_name),
                message_count = excluded.message_count,
                updated_at = excluded.updated_at
            """,
            (
                profile.participant_id,
                profile.display_name,
                profile.numeric_handle,
                profile.first_seen_at.isoformat(),
                profile.message_count,
                datetime.utcnow().isoformat()
            )
        )

    def delete_profile(self, participant_id: str) -> int:
        """Delete a participant profile"""
        return self.db.execute_update(
            "DELETE FROM participant_profiles WHERE participant_id = ?",
            (participant_id,)
        )

    # Address-book names

    def get_all_contact_names(self) -> Dict[str, str]:
        """Load the synced address book as handle -> name"""
        rows = self.db.execute_query("SELECT numeric_handle, name FROM contact_names")
        return {row['numeric_handle']: row['name'] for row in rows}

    def upsert_contact_name(self, handle: str, name: str) -> None:
        """Insert or replace an address-book name"""
        self.db.execute_update(
            """
            INSERT INTO contact_names (numeric_handle, name, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(numeric_handle) DO UPDATE SET
                name = excluded.name,
                updated_at = excluded.updated_at
            """,
            (handle, name, datetime.utcnow().isoformat())
        )

    def delete_contact_name(self, handle: str) -> int:
        """Delete an address-book name"""
        return self.db.execute_update(
            "DELETE FROM contact_names WHERE numeric_handle = ?",
            (handle,)
        )


def _parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        return datetime.utcnow()
