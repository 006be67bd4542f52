"""Persistence contract used by FactStore.

Any object with these coroutines can back a store: SqliteFactRepository for
real use, InMemoryFactRepository for tests and embedded use. Implementations
raise PersistenceError on backend failure and EntityConflictError when an
insert hits the (user_id, entity_type, entity_subtype, name_key(canonical_name))
uniqueness constraint.
"""

from __future__ import annotations

import unicodedata
from datetime import datetime, timezone
from typing import Protocol

from factmem.models import (
    EntityType,
    FactAttribute,
    FactCorrection,
    FactEntity,
    FactRelationship,
    SourceType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def name_key(name: str) -> str:
    """Identity key for names and aliases: NFC, then full Unicode case folding."""
    return unicodedata.normalize("NFC", name).casefold()


class FactBackend(Protocol):
    # --- Entities ---

    async def find_entity(
        self, user_id: str, entity_type: EntityType, entity_subtype: str | None, name: str
    ) -> FactEntity | None:
        """Match by canonical name or alias (case-insensitive), active entities first."""
        ...

    async def get_entity(self, entity_id: int) -> FactEntity | None: ...

    async def insert_entity(
        self,
        user_id: str,
        entity_type: EntityType,
        entity_subtype: str | None,
        canonical_name: str,
        confidence: float,
        source_type: SourceType,
    ) -> FactEntity: ...

    async def update_entity(
        self,
        entity_id: int,
        *,
        confidence: float | None = None,
        source_type: SourceType | None = None,
        is_active: bool | None = None,
    ) -> FactEntity:
        """Apply the given changes and bump updated_at."""
        ...

    async def list_entities(
        self,
        user_id: str,
        entity_type: EntityType | None = None,
        entity_subtype: str | None = None,
        relationship_type: str | None = None,
        active_only: bool = True,
    ) -> list[FactEntity]: ...

    async def add_alias(self, entity_id: int, alias: str) -> None: ...

    # --- Attributes ---

    async def upsert_attribute(
        self, entity_id: int, name: str, value: str, source_message_id: str | None
    ) -> str | None:
        """Last-write-wins. Returns the previous value, if any."""
        ...

    async def get_attributes(self, entity_id: int) -> list[FactAttribute]: ...

    # --- Relationships ---

    async def add_relationship(
        self,
        user_id: str,
        subject_entity_id: int,
        relationship_type: str,
        object_entity_id: int | None = None,
        object_value: str | None = None,
        source_message_id: str | None = None,
    ) -> FactRelationship: ...

    async def list_relationships(
        self,
        user_id: str,
        subject_entity_id: int | None = None,
        relationship_type: str | None = None,
    ) -> list[FactRelationship]: ...

    # --- Audit ---

    async def record_correction(self, correction: FactCorrection) -> None: ...

    async def list_corrections(self, user_id: str) -> list[FactCorrection]: ...

    # --- Cache rows ---

    async def touch_cache_row(self, user_id: str) -> datetime:
        """Upsert the user's cache row and return the stamp written."""
        ...

    async def delete_cache_row(self, user_id: str) -> None: ...

    async def get_cache_row(self, user_id: str) -> datetime | None: ...
