"""Canonical fact store: the only writer of user facts.

Candidates from the extractor are canonicalised into fact specs, resolved to
existing identities by canonical name or alias, and written through a
FactBackend. Reads go through a bounded TTL cache owned by the store; every
write for a user drops that user's cache entry and its backend cache row, and
takes a new write stamp so a read that started before the write cannot put a
stale value back. A cached entry is only served while the backend cache row
still carries the stamp this store wrote, so a write made by another store on
the same database is seen on the next read.

Strict lookups (get_user_name) raise NotFoundError / PersistenceError.
get_all_critical_facts degrades to a partial dict instead.
"""

from __future__ import annotations

import copy
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from cachetools import LRUCache, TTLCache

from factmem.database.backend import FactBackend, name_key, utcnow
from factmem.extraction.extractor import DEFAULT_MAX_CHARS, extract_entities
from factmem.extraction.rules import BASE_CONFIDENCE
from factmem.facts.canonical import FactSpec, canonicalize
from factmem.facts.exceptions import EntityConflictError, NotFoundError, PersistenceError
from factmem.models import (
    CandidateEntity,
    EntityType,
    FactCorrection,
    FactEntity,
    FactRelationship,
    SourceType,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CRITICAL_FACT_KEYS = ("user_name", "pet_names", "family_members", "work_info", "location_info")

_WORK_SLOTS = (("workplace", "workplace"), ("profession", "position"), ("industry", "industry"))


@dataclass
class _CacheEntry:
    cached_at: datetime
    values: dict[str, Any] = field(default_factory=dict)


class _WriteStamps(LRUCache):
    """Last write stamp per user, bounded. Evicted stamps raise a shared floor."""

    def __init__(self, maxsize: int) -> None:
        super().__init__(maxsize=maxsize)
        self.floor = 0

    def popitem(self):
        user_id, stamp = super().popitem()
        self.floor = max(self.floor, stamp)
        return user_id, stamp

    def of(self, user_id: str) -> int:
        return self.get(user_id, self.floor)


class FactStore:
    def __init__(
        self,
        backend: FactBackend,
        cache_max_users: int = 1024,
        cache_ttl: float = 300.0,
        *,
        extraction_max_chars: int = DEFAULT_MAX_CHARS,
        extraction_confidence: float = BASE_CONFIDENCE,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._cache: TTLCache[str, _CacheEntry] = TTLCache(
            maxsize=cache_max_users, ttl=cache_ttl, timer=timer
        )
        self._write_stamps = _WriteStamps(maxsize=cache_max_users)
        self._write_clock = itertools.count(1)
        self._max_chars = extraction_max_chars
        self._extraction_confidence = extraction_confidence

    @property
    def backend(self) -> FactBackend:
        return self._backend

    # --- Writes ---

    async def upsert_candidate(
        self,
        user_id: str,
        candidate: CandidateEntity,
        source_message_id: str | None = None,
        source_type: SourceType = "user_stated",
    ) -> FactEntity:
        """Persist one candidate and return the first entity it resolved to."""
        entities = await self.upsert_candidates(user_id, [candidate], source_message_id, source_type)
        if not entities:
            raise ValueError(f"candidate {candidate.raw_text!r} has no usable names")
        return entities[0]

    async def upsert_candidates(
        self,
        user_id: str,
        candidates: Iterable[CandidateEntity],
        source_message_id: str | None = None,
        source_type: SourceType = "user_stated",
    ) -> list[FactEntity]:
        results: list[FactEntity] = []
        try:
            for candidate in candidates:
                confidence = self._stored_confidence(candidate, source_type)
                specs = canonicalize(candidate)
                if not specs:
                    logger.debug("facts.upsert.empty: %r", candidate.raw_text)
                for spec in specs:
                    entity = await self._upsert_spec(
                        user_id, spec, confidence, source_message_id, source_type
                    )
                    results.append(entity)
        finally:
            await self.invalidate_cache(user_id)
        return results

    def _stored_confidence(self, candidate: CandidateEntity, source_type: SourceType) -> float:
        # User statements matched at full rule strength are certain; weaker matches keep their score
        if source_type == "inferred" or candidate.confidence < self._extraction_confidence:
            return candidate.confidence
        return 1.0

    async def _upsert_spec(
        self,
        user_id: str,
        spec: FactSpec,
        confidence: float,
        source_message_id: str | None,
        source_type: SourceType,
    ) -> FactEntity:
        existing = await self._backend.find_entity(
            user_id, spec.entity_type, spec.entity_subtype, spec.name
        )

        if existing is not None and existing.is_active:
            entity = await self._confirm(user_id, existing, confidence, source_type, source_message_id)
        else:
            occupants = await self._occupants(user_id, spec, existing)
            stronger = [o for o in occupants if o.confidence > confidence]
            if stronger:
                kept = max(stronger, key=lambda e: (e.confidence, e.updated_at))
                logger.info(
                    "facts.upsert.kept: %r over %r",
                    kept.canonical_name,
                    spec.name,
                    extra={"user_id": user_id, "entity_id": kept.entity_id},
                )
                return kept

            if existing is None:
                entity = await self._insert(
                    user_id, spec, confidence,
                    "corrected" if occupants else source_type, source_message_id,
                )
            else:
                entity = await self._confirm(user_id, existing, confidence, source_type, source_message_id)
            # The new value is active before the old ones go
            await self._retire(user_id, spec, occupants, source_message_id)
            await self._resolve_contradiction(user_id, spec, source_message_id)

        for name, value in spec.attributes.items():
            previous = await self._backend.upsert_attribute(
                entity.entity_id, name, value, source_message_id
            )
            if previous is not None and previous != value:
                await self._record(user_id, entity.entity_id, f"attr:{name}", previous, value, source_message_id)

        if spec.relationship_type:
            await self._backend.add_relationship(
                user_id,
                entity.entity_id,
                spec.relationship_type,
                object_value=spec.relationship_value or "user",
                source_message_id=source_message_id,
            )
        return entity

    async def _insert(
        self,
        user_id: str,
        spec: FactSpec,
        confidence: float,
        source_type: SourceType,
        source_message_id: str | None,
    ) -> FactEntity:
        try:
            entity = await self._backend.insert_entity(
                user_id, spec.entity_type, spec.entity_subtype, spec.name, confidence, source_type
            )
        except EntityConflictError:
            # Lost the race to a concurrent writer; the row exists now
            existing = await self._backend.find_entity(
                user_id, spec.entity_type, spec.entity_subtype, spec.name
            )
            if existing is None:
                raise
            return await self._confirm(user_id, existing, confidence, source_type, source_message_id)
        logger.info(
            "facts.upsert.created: %s/%s %r",
            spec.entity_type,
            spec.entity_subtype or "-",
            spec.name,
            extra={"user_id": user_id, "entity_id": entity.entity_id},
        )
        return entity

    async def _confirm(
        self,
        user_id: str,
        existing: FactEntity,
        confidence: float,
        source_type: SourceType,
        source_message_id: str | None,
    ) -> FactEntity:
        """Repeat mention: bump updated_at, never lower confidence."""
        new_source: SourceType | None = None
        if not existing.is_active:
            new_source = "corrected"
            await self._record(user_id, existing.entity_id, "is_active", "false", "true", source_message_id)
        elif existing.source_type == "inferred" and source_type != "inferred":
            new_source = source_type

        entity = await self._backend.update_entity(
            existing.entity_id,
            confidence=max(existing.confidence, confidence),
            source_type=new_source,
            is_active=True if not existing.is_active else None,
        )
        logger.debug(
            "facts.upsert.confirmed: %r",
            entity.canonical_name,
            extra={"user_id": user_id, "entity_id": entity.entity_id},
        )
        return entity

    async def _occupants(
        self, user_id: str, spec: FactSpec, existing: FactEntity | None
    ) -> list[FactEntity]:
        """Other active entities holding the singleton slot spec is about to take."""
        if not spec.singleton:
            return []
        keep_id = existing.entity_id if existing is not None else None
        entities = await self._backend.list_entities(
            user_id, spec.entity_type, spec.entity_subtype or ""
        )
        return [
            e for e in entities
            if e.entity_id != keep_id and name_key(e.canonical_name) != name_key(spec.name)
        ]

    async def _retire(
        self,
        user_id: str,
        spec: FactSpec,
        occupants: list[FactEntity],
        source_message_id: str | None,
    ) -> None:
        for occupant in occupants:
            await self._backend.update_entity(occupant.entity_id, is_active=False)
            await self._record(
                user_id, occupant.entity_id, "canonical_name",
                occupant.canonical_name, spec.name, source_message_id,
            )
            logger.info(
                "facts.upsert.corrected: %r -> %r",
                occupant.canonical_name,
                spec.name,
                extra={"user_id": user_id, "entity_id": occupant.entity_id},
            )

    async def _resolve_contradiction(
        self, user_id: str, spec: FactSpec, source_message_id: str | None
    ) -> None:
        if spec.contradicts is None:
            return
        opposite = await self._backend.find_entity(
            user_id, spec.entity_type, spec.contradicts, spec.name
        )
        if opposite is None or not opposite.is_active:
            return
        await self._backend.update_entity(opposite.entity_id, is_active=False)
        await self._record(
            user_id, opposite.entity_id, "entity_subtype",
            spec.contradicts, spec.entity_subtype, source_message_id,
        )
        logger.info(
            "facts.upsert.contradicted: %r %s -> %s",
            spec.name,
            spec.contradicts,
            spec.entity_subtype,
            extra={"user_id": user_id, "entity_id": opposite.entity_id},
        )

    async def _record(
        self,
        user_id: str,
        entity_id: int,
        field: str,
        old_value: str | None,
        new_value: str | None,
        source_message_id: str | None,
    ) -> None:
        await self._backend.record_correction(
            FactCorrection(
                user_id=user_id,
                entity_id=entity_id,
                field=field,
                old_value=old_value,
                new_value=new_value,
                source_message_id=source_message_id,
                created_at=utcnow(),
            )
        )

    async def _owned(self, user_id: str, entity_id: int) -> FactEntity:
        entity = await self._backend.get_entity(entity_id)
        if entity is None or entity.user_id != user_id:
            raise NotFoundError(f"entity:{entity_id}", user_id)
        return entity

    async def correct_fact(
        self, user_id: str, entity_id: int, new_name: str, source_message_id: str | None = None
    ) -> FactEntity:
        """Replace an entity's name: the old record is deactivated, never edited in place."""
        new_name = new_name.strip()
        if not new_name:
            raise ValueError("new_name must not be empty")
        old = await self._owned(user_id, entity_id)
        if name_key(old.canonical_name) == name_key(new_name):
            return old
        try:
            target = await self._backend.find_entity(
                user_id, old.entity_type, old.entity_subtype, new_name
            )
            if target is None or target.entity_id == old.entity_id:
                target = await self._backend.insert_entity(
                    user_id, old.entity_type, old.entity_subtype, new_name, 1.0, "corrected"
                )
            else:
                target = await self._backend.update_entity(
                    target.entity_id, confidence=1.0, source_type="corrected", is_active=True
                )

            for attribute in await self._backend.get_attributes(old.entity_id):
                await self._backend.upsert_attribute(
                    target.entity_id, attribute.attribute_name, attribute.attribute_value, source_message_id
                )
            for edge in await self._backend.list_relationships(user_id, subject_entity_id=old.entity_id):
                await self._backend.add_relationship(
                    user_id,
                    target.entity_id,
                    edge.relationship_type,
                    object_entity_id=edge.object_entity_id,
                    object_value=edge.object_value,
                    source_message_id=source_message_id,
                )

            await self._backend.update_entity(old.entity_id, is_active=False)
            await self._record(
                user_id, old.entity_id, "canonical_name", old.canonical_name, new_name, source_message_id
            )
        finally:
            await self.invalidate_cache(user_id)

        logger.info(
            "facts.correct: %r -> %r",
            old.canonical_name,
            new_name,
            extra={"user_id": user_id, "entity_id": target.entity_id},
        )
        return target

    async def deactivate_fact(
        self, user_id: str, entity_id: int, source_message_id: str | None = None
    ) -> FactEntity:
        entity = await self._owned(user_id, entity_id)
        if not entity.is_active:
            return entity
        try:
            entity = await self._backend.update_entity(entity_id, is_active=False)
            await self._record(user_id, entity_id, "is_active", "true", "false", source_message_id)
        finally:
            await self.invalidate_cache(user_id)
        logger.info(
            "facts.deactivate: %r",
            entity.canonical_name,
            extra={"user_id": user_id, "entity_id": entity_id},
        )
        return entity

    async def add_alias(self, user_id: str, entity_id: int, alias: str) -> FactEntity:
        alias = alias.strip()
        if not alias:
            raise ValueError("alias must not be empty")
        await self._owned(user_id, entity_id)
        try:
            await self._backend.add_alias(entity_id, alias)
        finally:
            await self.invalidate_cache(user_id)
        return await self._owned(user_id, entity_id)

    async def add_relationship(
        self,
        user_id: str,
        subject_entity_id: int,
        relationship_type: str,
        object_entity_id: int | None = None,
        object_value: str | None = None,
        source_message_id: str | None = None,
    ) -> FactRelationship:
        if object_entity_id is None and object_value is None:
            raise ValueError("relationship needs an object entity or an object value")
        await self._owned(user_id, subject_entity_id)
        if object_entity_id is not None:
            await self._owned(user_id, object_entity_id)
        try:
            return await self._backend.add_relationship(
                user_id,
                subject_entity_id,
                relationship_type,
                object_entity_id=object_entity_id,
                object_value=object_value,
                source_message_id=source_message_id,
            )
        finally:
            await self.invalidate_cache(user_id)

    async def ingest_message(
        self, user_id: str, text: str, message_id: str | None = None
    ) -> list[FactEntity]:
        """Extract facts from one utterance and store them. Never raises on backend failure."""
        candidates = extract_entities(
            text, max_chars=self._max_chars, confidence=self._extraction_confidence
        )
        if not candidates:
            return []
        try:
            entities = await self.upsert_candidates(user_id, candidates, message_id)
        except PersistenceError:
            logger.warning(
                "facts.ingest.failed: %d candidates dropped",
                len(candidates),
                extra={"user_id": user_id, "message_id": message_id},
                exc_info=True,
            )
            return []
        logger.info(
            "facts.ingest: %d candidates, %d entities",
            len(candidates),
            len(entities),
            extra={"user_id": user_id, "message_id": message_id},
        )
        return entities

    # --- Cache ---

    async def invalidate_cache(self, user_id: str) -> None:
        self._write_stamps[user_id] = next(self._write_clock)
        self._cache.pop(user_id, None)
        try:
            await self._backend.delete_cache_row(user_id)
        except PersistenceError:
            # The in-process entry is already gone, so this process stays coherent
            logger.warning("facts.cache.invalidate_failed", extra={"user_id": user_id}, exc_info=True)

    async def _cached(self, user_id: str, key: str, load: Callable[[], Awaitable[T]]) -> T:
        entry = self._cache.get(user_id)
        if entry is not None and key in entry.values:
            if await self._backend.get_cache_row(user_id) == entry.cached_at:
                return copy.deepcopy(entry.values[key])
            # Another store wrote for this user since we cached
            self._cache.pop(user_id, None)
            logger.debug("facts.cache.stale", extra={"user_id": user_id})

        stamp = self._write_stamps.of(user_id)
        value = await load()
        if self._write_stamps.of(user_id) != stamp:
            return value

        entry = self._cache.get(user_id)
        if entry is None:
            try:
                cached_at = await self._backend.touch_cache_row(user_id)
            except PersistenceError:
                logger.warning("facts.cache.touch_failed", extra={"user_id": user_id}, exc_info=True)
                return value
            if self._write_stamps.of(user_id) != stamp:
                return value
            entry = self._cache[user_id] = _CacheEntry(cached_at)
        entry.values[key] = copy.deepcopy(value)
        return value

    # --- Reads ---

    async def get_user_name(self, user_id: str) -> str:
        async def load() -> str:
            users = await self._backend.list_entities(user_id, "person", "user")
            if not users:
                raise NotFoundError("user_name", user_id)
            best = max(users, key=lambda e: (e.confidence, e.updated_at))
            return best.canonical_name

        return await self._cached(user_id, "user_name", load)

    async def get_pet_names(self, user_id: str) -> list[str]:
        async def load() -> list[str]:
            pets = await self._backend.list_entities(user_id, "pet")
            return _unique_names(pets)

        return await self._cached(user_id, "pet_names", load)

    async def get_family_members(self, user_id: str) -> list[str]:
        async def load() -> list[str]:
            members = await self._backend.list_entities(user_id, "person", relationship_type="family")
            return _unique_names(members)

        return await self._cached(user_id, "family_members", load)

    async def get_work_information(self, user_id: str) -> dict[str, Any] | None:
        async def load() -> dict[str, Any] | None:
            info: dict[str, Any] = {}
            for subtype, key in _WORK_SLOTS:
                entities = await self._backend.list_entities(user_id, "thing", subtype)
                if not entities:
                    continue
                latest = max(entities, key=lambda e: e.updated_at)
                info[key] = latest.canonical_name
                if subtype == "workplace":
                    attributes = await self._backend.get_attributes(latest.entity_id)
                    if attributes:
                        info["attributes"] = {a.attribute_name: a.attribute_value for a in attributes}
            return info or None

        return await self._cached(user_id, "work_info", load)

    async def get_location_information(self, user_id: str) -> dict[str, Any] | None:
        async def load() -> dict[str, Any] | None:
            info: dict[str, Any] = {}
            places = await self._backend.list_entities(user_id, "place")
            for place in sorted(places, key=lambda e: e.updated_at):
                attributes = await self._backend.get_attributes(place.entity_id)
                info[place.entity_subtype or "location"] = {
                    "name": place.canonical_name,
                    "attributes": {a.attribute_name: a.attribute_value for a in attributes},
                }
            return info or None

        return await self._cached(user_id, "location_info", load)

    async def get_all_critical_facts(self, user_id: str) -> dict[str, Any]:
        """Everything the prompt needs. Missing or failing lookups are just left out."""
        lookups: dict[str, Callable[[str], Awaitable[Any]]] = {
            "user_name": self.get_user_name,
            "pet_names": self.get_pet_names,
            "family_members": self.get_family_members,
            "work_info": self.get_work_information,
            "location_info": self.get_location_information,
        }
        facts: dict[str, Any] = {}
        for key, lookup in lookups.items():
            try:
                value = await lookup(user_id)
            except NotFoundError:
                continue
            except Exception:
                logger.warning(
                    "facts.critical.partial: %s lookup failed",
                    key,
                    extra={"user_id": user_id},
                    exc_info=True,
                )
                continue
            if value:
                facts[key] = value
        return facts

    async def list_facts(
        self,
        user_id: str,
        entity_type: EntityType | None = None,
        include_inactive: bool = False,
    ) -> list[FactEntity]:
        return await self._backend.list_entities(
            user_id, entity_type, active_only=not include_inactive
        )

    async def get_corrections(self, user_id: str) -> list[FactCorrection]:
        return await self._backend.list_corrections(user_id)

    async def get_diagnostic_info(self, user_id: str) -> dict[str, Any]:
        entities = await self._backend.list_entities(user_id, active_only=False)
        active = [e for e in entities if e.is_active]
        by_type: dict[str, int] = {}
        for entity in active:
            by_type[entity.entity_type] = by_type.get(entity.entity_type, 0) + 1
        cached_at = await self._backend.get_cache_row(user_id)
        last_updated = max((e.updated_at for e in entities), default=None)
        return {
            "user_id": user_id,
            "total_entities": len(entities),
            "active_entities": len(active),
            "entities_by_type": by_type,
            "corrections": len(await self._backend.list_corrections(user_id)),
            "cached": user_id in self._cache,
            "cached_at": cached_at.isoformat() if cached_at else None,
            "last_updated": last_updated.isoformat() if last_updated else None,
        }


def _unique_names(entities: list[FactEntity]) -> list[str]:
    seen: set[str] = set()
    names: list[str] = []
    for entity in entities:
        key = name_key(entity.canonical_name)
        if key not in seen:
            seen.add(key)
            names.append(entity.canonical_name)
    return names
