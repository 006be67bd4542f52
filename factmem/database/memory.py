"""Dict-backed FactBackend for tests and embedded use.

Mirrors SqliteFactRepository, including the uniqueness constraint on
(user_id, entity_type, entity_subtype, canonical_name) with case-folded
names. Records are stored as model copies so callers never hold live rows.
"""

from __future__ import annotations

import itertools
from datetime import datetime

from factmem.database.backend import name_key, utcnow
from factmem.facts.exceptions import EntityConflictError, PersistenceError
from factmem.models import (
    EntityType,
    FactAttribute,
    FactCorrection,
    FactEntity,
    FactRelationship,
    SourceType,
)

_IdentityKey = tuple[str, str, str, str]


def _identity(user_id: str, entity_type: str, entity_subtype: str | None, name: str) -> _IdentityKey:
    return (user_id, entity_type, entity_subtype or "", name_key(name))


class InMemoryFactRepository:
    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._entities: dict[int, FactEntity] = {}
        self._identities: dict[_IdentityKey, int] = {}
        self._attributes: dict[int, dict[str, FactAttribute]] = {}
        self._relationships: list[FactRelationship] = []
        self._corrections: list[FactCorrection] = []
        self._cache_rows: dict[str, datetime] = {}

    # --- Entities ---

    async def find_entity(
        self, user_id: str, entity_type: EntityType, entity_subtype: str | None, name: str
    ) -> FactEntity | None:
        entity_id = self._identities.get(_identity(user_id, entity_type, entity_subtype, name))
        if entity_id is not None and self._entities[entity_id].is_active:
            return self._entities[entity_id].model_copy(deep=True)

        wanted = name_key(name)
        by_alias = [
            e
            for e in self._entities.values()
            if e.user_id == user_id
            and e.entity_type == entity_type
            and (e.entity_subtype or "") == (entity_subtype or "")
            and wanted in {name_key(a) for a in e.aliases}
        ]
        by_alias.sort(key=lambda e: (not e.is_active, -e.updated_at.timestamp()))
        if by_alias and (entity_id is None or by_alias[0].is_active):
            return by_alias[0].model_copy(deep=True)
        if entity_id is not None:
            return self._entities[entity_id].model_copy(deep=True)
        return None

    async def get_entity(self, entity_id: int) -> FactEntity | None:
        entity = self._entities.get(entity_id)
        return entity.model_copy(deep=True) if entity else None

    async def insert_entity(
        self,
        user_id: str,
        entity_type: EntityType,
        entity_subtype: str | None,
        canonical_name: str,
        confidence: float,
        source_type: SourceType,
    ) -> FactEntity:
        key = _identity(user_id, entity_type, entity_subtype, canonical_name)
        if key in self._identities:
            raise EntityConflictError(user_id, entity_type, entity_subtype, canonical_name)
        now = utcnow()
        entity = FactEntity(
            entity_id=next(self._ids),
            user_id=user_id,
            entity_type=entity_type,
            entity_subtype=entity_subtype or None,
            canonical_name=canonical_name,
            confidence=confidence,
            source_type=source_type,
            created_at=now,
            updated_at=now,
        )
        self._entities[entity.entity_id] = entity
        self._identities[key] = entity.entity_id
        return entity.model_copy(deep=True)

    async def update_entity(
        self,
        entity_id: int,
        *,
        confidence: float | None = None,
        source_type: SourceType | None = None,
        is_active: bool | None = None,
    ) -> FactEntity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise PersistenceError(f"entity {entity_id} does not exist")
        changes: dict = {"updated_at": utcnow()}
        if confidence is not None:
            changes["confidence"] = confidence
        if source_type is not None:
            changes["source_type"] = source_type
        if is_active is not None:
            changes["is_active"] = is_active
        updated = entity.model_copy(update=changes, deep=True)
        self._entities[entity_id] = updated
        return updated.model_copy(deep=True)

    async def list_entities(
        self,
        user_id: str,
        entity_type: EntityType | None = None,
        entity_subtype: str | None = None,
        relationship_type: str | None = None,
        active_only: bool = True,
    ) -> list[FactEntity]:
        related: set[int] | None = None
        if relationship_type is not None:
            related = {
                r.subject_entity_id
                for r in self._relationships
                if r.user_id == user_id and r.relationship_type == relationship_type
            }
        result = [
            e.model_copy(deep=True)
            for e in self._entities.values()
            if e.user_id == user_id
            and (entity_type is None or e.entity_type == entity_type)
            and (entity_subtype is None or (e.entity_subtype or "") == entity_subtype)
            and (related is None or e.entity_id in related)
            and (e.is_active or not active_only)
        ]
        return sorted(result, key=lambda e: (e.created_at, e.entity_id))

    async def add_alias(self, entity_id: int, alias: str) -> None:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise PersistenceError(f"entity {entity_id} does not exist")
        if name_key(alias) not in {name_key(a) for a in entity.aliases}:
            entity.aliases.add(alias)

    # --- Attributes ---

    async def upsert_attribute(
        self, entity_id: int, name: str, value: str, source_message_id: str | None
    ) -> str | None:
        attrs = self._attributes.setdefault(entity_id, {})
        previous = attrs.get(name)
        attrs[name] = FactAttribute(
            entity_id=entity_id,
            attribute_name=name,
            attribute_value=value,
            source_message_id=source_message_id,
            updated_at=utcnow(),
        )
        return previous.attribute_value if previous else None

    async def get_attributes(self, entity_id: int) -> list[FactAttribute]:
        return [a.model_copy() for a in self._attributes.get(entity_id, {}).values()]

    # --- Relationships ---

    async def add_relationship(
        self,
        user_id: str,
        subject_entity_id: int,
        relationship_type: str,
        object_entity_id: int | None = None,
        object_value: str | None = None,
        source_message_id: str | None = None,
    ) -> FactRelationship:
        for existing in self._relationships:
            if (
                existing.user_id == user_id
                and existing.subject_entity_id == subject_entity_id
                and existing.relationship_type == relationship_type
                and existing.object_entity_id == object_entity_id
                and existing.object_value == object_value
            ):
                return existing.model_copy()
        relationship = FactRelationship(
            relationship_id=len(self._relationships) + 1,
            user_id=user_id,
            subject_entity_id=subject_entity_id,
            relationship_type=relationship_type,
            object_entity_id=object_entity_id,
            object_value=object_value,
            source_message_id=source_message_id,
        )
        self._relationships.append(relationship)
        return relationship.model_copy()

    async def list_relationships(
        self,
        user_id: str,
        subject_entity_id: int | None = None,
        relationship_type: str | None = None,
    ) -> list[FactRelationship]:
        return [
            r.model_copy()
            for r in self._relationships
            if r.user_id == user_id
            and (subject_entity_id is None or r.subject_entity_id == subject_entity_id)
            and (relationship_type is None or r.relationship_type == relationship_type)
        ]

    # --- Audit ---

    async def record_correction(self, correction: FactCorrection) -> None:
        self._corrections.append(correction.model_copy())

    async def list_corrections(self, user_id: str) -> list[FactCorrection]:
        return [c.model_copy() for c in self._corrections if c.user_id == user_id]

    # --- Cache rows ---

    async def touch_cache_row(self, user_id: str) -> datetime:
        stamp = self._cache_rows[user_id] = utcnow()
        return stamp

    async def delete_cache_row(self, user_id: str) -> None:
        self._cache_rows.pop(user_id, None)

    async def get_cache_row(self, user_id: str) -> datetime | None:
        return self._cache_rows.get(user_id)
