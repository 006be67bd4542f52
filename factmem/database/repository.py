from __future__ import annotations

import functools
import logging
import sqlite3
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import ParamSpec, TypeVar

import aiosqlite

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

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

_ENTITY_COLUMNS = (
    "e.id, e.user_id, e.entity_type, e.entity_subtype, e.canonical_name, e.confidence, "
    "e.source_type, e.is_active, e.created_at, e.updated_at"
)


def _wrap_errors(fn: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
    """Translate sqlite failures into PersistenceError at the repository boundary."""

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        try:
            return await fn(*args, **kwargs)
        except PersistenceError:
            raise
        except (sqlite3.Error, ValueError) as e:
            raise PersistenceError(f"{fn.__name__} failed: {e}") from e

    return wrapper


class SqliteFactRepository:
    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    # --- Entities ---

    @_wrap_errors
    async def find_entity(
        self, user_id: str, entity_type: EntityType, entity_subtype: str | None, name: str
    ) -> FactEntity | None:
        cursor = await self._conn.execute(
            f"SELECT {_ENTITY_COLUMNS}, 0 AS via_alias FROM fact_entities e "
            "WHERE e.user_id = ? AND e.entity_type = ? AND e.entity_subtype = ? AND e.canonical_key = ? "
            f"UNION ALL SELECT {_ENTITY_COLUMNS}, 1 AS via_alias FROM fact_entities e "
            "JOIN fact_aliases a ON a.entity_id = e.id "
            "WHERE e.user_id = ? AND e.entity_type = ? AND e.entity_subtype = ? AND a.alias_key = ? "
            "ORDER BY 8 DESC, 11, 10 DESC LIMIT 1",
            (user_id, entity_type, entity_subtype or "", name_key(name)) * 2,
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return (await self._attach_aliases([row]))[0]

    @_wrap_errors
    async def get_entity(self, entity_id: int) -> FactEntity | None:
        cursor = await self._conn.execute(
            f"SELECT {_ENTITY_COLUMNS} FROM fact_entities e WHERE e.id = ?",
            (entity_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return (await self._attach_aliases([row]))[0]

    @_wrap_errors
    async def insert_entity(
        self,
        user_id: str,
        entity_type: EntityType,
        entity_subtype: str | None,
        canonical_name: str,
        confidence: float,
        source_type: SourceType,
    ) -> FactEntity:
        now = utcnow().isoformat()
        try:
            cursor = await self._conn.execute(
                "INSERT INTO fact_entities (user_id, entity_type, entity_subtype, canonical_name, "
                "canonical_key, confidence, source_type, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    user_id, entity_type, entity_subtype or "", canonical_name,
                    name_key(canonical_name), confidence, source_type, now, now,
                ),
            )
        except sqlite3.IntegrityError as e:
            await self._conn.rollback()
            if "UNIQUE" not in str(e):
                raise
            raise EntityConflictError(user_id, entity_type, entity_subtype, canonical_name) from e
        await self._conn.commit()
        return await self._require(cursor.lastrowid)

    @_wrap_errors
    async def update_entity(
        self,
        entity_id: int,
        *,
        confidence: float | None = None,
        source_type: SourceType | None = None,
        is_active: bool | None = None,
    ) -> FactEntity:
        parts = ["updated_at = ?"]
        params: list = [utcnow().isoformat()]
        if confidence is not None:
            parts.append("confidence = ?")
            params.append(confidence)
        if source_type is not None:
            parts.append("source_type = ?")
            params.append(source_type)
        if is_active is not None:
            parts.append("is_active = ?")
            params.append(int(is_active))
        params.append(entity_id)
        cursor = await self._conn.execute(
            f"UPDATE fact_entities SET {', '.join(parts)} WHERE id = ?",
            params,
        )
        await self._conn.commit()
        if cursor.rowcount == 0:
            raise PersistenceError(f"entity {entity_id} does not exist")
        return await self._require(entity_id)

    @_wrap_errors
    async def list_entities(
        self,
        user_id: str,
        entity_type: EntityType | None = None,
        entity_subtype: str | None = None,
        relationship_type: str | None = None,
        active_only: bool = True,
    ) -> list[FactEntity]:
        sql = f"SELECT DISTINCT {_ENTITY_COLUMNS} FROM fact_entities e "
        where = ["e.user_id = ?"]
        params: list = [user_id]
        if relationship_type is not None:
            sql += "JOIN fact_relationships r ON r.subject_entity_id = e.id "
            where.append("r.relationship_type = ?")
            params.append(relationship_type)
        if entity_type is not None:
            where.append("e.entity_type = ?")
            params.append(entity_type)
        if entity_subtype is not None:
            where.append("e.entity_subtype = ?")
            params.append(entity_subtype)
        if active_only:
            where.append("e.is_active = 1")
        sql += "WHERE " + " AND ".join(where) + " ORDER BY e.created_at, e.id"
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return await self._attach_aliases(rows)

    @_wrap_errors
    async def add_alias(self, entity_id: int, alias: str) -> None:
        await self._conn.execute(
            "INSERT OR IGNORE INTO fact_aliases (entity_id, alias_name, alias_key, created_at) "
            "VALUES (?, ?, ?, ?)",
            (entity_id, alias, name_key(alias), utcnow().isoformat()),
        )
        await self._conn.commit()

    async def _require(self, entity_id: int | None) -> FactEntity:
        entity = await self.get_entity(entity_id) if entity_id is not None else None
        if entity is None:
            raise PersistenceError(f"entity {entity_id} vanished after write")
        return entity

    async def _attach_aliases(self, rows: Iterable) -> list[FactEntity]:
        rows = list(rows)
        if not rows:
            return []
        ids = [r[0] for r in rows]
        placeholders = ", ".join("?" for _ in ids)
        cursor = await self._conn.execute(
            f"SELECT entity_id, alias_name FROM fact_aliases WHERE entity_id IN ({placeholders})",
            ids,
        )
        aliases: dict[int, set[str]] = {}
        for entity_id, alias in await cursor.fetchall():
            aliases.setdefault(entity_id, set()).add(alias)
        return [
            FactEntity(
                entity_id=r[0],
                user_id=r[1],
                entity_type=r[2],
                entity_subtype=r[3] or None,
                canonical_name=r[4],
                confidence=r[5],
                source_type=r[6],
                is_active=bool(r[7]),
                created_at=r[8],
                updated_at=r[9],
                aliases=aliases.get(r[0], set()),
            )
            for r in rows
        ]

    # --- Attributes ---

    @_wrap_errors
    async def upsert_attribute(
        self, entity_id: int, name: str, value: str, source_message_id: str | None
    ) -> str | None:
        cursor = await self._conn.execute(
            "SELECT attribute_value FROM fact_attributes WHERE entity_id = ? AND attribute_name = ?",
            (entity_id, name),
        )
        row = await cursor.fetchone()
        await self._conn.execute(
            "INSERT INTO fact_attributes (entity_id, attribute_name, attribute_value, source_message_id, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(entity_id, attribute_name) DO UPDATE SET "
            "attribute_value = excluded.attribute_value, "
            "source_message_id = excluded.source_message_id, "
            "updated_at = excluded.updated_at",
            (entity_id, name, value, source_message_id, utcnow().isoformat()),
        )
        await self._conn.commit()
        return row[0] if row else None

    @_wrap_errors
    async def get_attributes(self, entity_id: int) -> list[FactAttribute]:
        cursor = await self._conn.execute(
            "SELECT entity_id, attribute_name, attribute_value, source_message_id, updated_at "
            "FROM fact_attributes WHERE entity_id = ? ORDER BY id",
            (entity_id,),
        )
        rows = await cursor.fetchall()
        return [
            FactAttribute(
                entity_id=r[0], attribute_name=r[1], attribute_value=r[2],
                source_message_id=r[3], updated_at=r[4],
            )
            for r in rows
        ]

    # --- Relationships ---

    @_wrap_errors
    async def add_relationship(
        self,
        user_id: str,
        subject_entity_id: int,
        relationship_type: str,
        object_entity_id: int | None = None,
        object_value: str | None = None,
        source_message_id: str | None = None,
    ) -> FactRelationship:
        cursor = await self._conn.execute(
            "SELECT id, source_message_id FROM fact_relationships "
            "WHERE user_id = ? AND subject_entity_id = ? AND relationship_type = ? "
            "AND object_entity_id IS ? AND object_value IS ?",
            (user_id, subject_entity_id, relationship_type, object_entity_id, object_value),
        )
        row = await cursor.fetchone()
        if row:
            relationship_id, source_message_id = row
        else:
            cursor = await self._conn.execute(
                "INSERT INTO fact_relationships (user_id, subject_entity_id, relationship_type, "
                "object_entity_id, object_value, source_message_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (user_id, subject_entity_id, relationship_type, object_entity_id, object_value,
                 source_message_id, utcnow().isoformat()),
            )
            await self._conn.commit()
            relationship_id = cursor.lastrowid
        return FactRelationship(
            relationship_id=relationship_id,
            user_id=user_id,
            subject_entity_id=subject_entity_id,
            relationship_type=relationship_type,
            object_entity_id=object_entity_id,
            object_value=object_value,
            source_message_id=source_message_id,
        )

    @_wrap_errors
    async def list_relationships(
        self,
        user_id: str,
        subject_entity_id: int | None = None,
        relationship_type: str | None = None,
    ) -> list[FactRelationship]:
        sql = (
            "SELECT id, user_id, subject_entity_id, relationship_type, object_entity_id, "
            "object_value, source_message_id FROM fact_relationships WHERE user_id = ?"
        )
        params: list = [user_id]
        if subject_entity_id is not None:
            sql += " AND subject_entity_id = ?"
            params.append(subject_entity_id)
        if relationship_type is not None:
            sql += " AND relationship_type = ?"
            params.append(relationship_type)
        cursor = await self._conn.execute(sql + " ORDER BY id", params)
        rows = await cursor.fetchall()
        return [
            FactRelationship(
                relationship_id=r[0], user_id=r[1], subject_entity_id=r[2],
                relationship_type=r[3], object_entity_id=r[4], object_value=r[5],
                source_message_id=r[6],
            )
            for r in rows
        ]

    # --- Audit ---

    @_wrap_errors
    async def record_correction(self, correction: FactCorrection) -> None:
        await self._conn.execute(
            "INSERT INTO fact_corrections (user_id, entity_id, field, old_value, new_value, "
            "source_message_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                correction.user_id, correction.entity_id, correction.field, correction.old_value,
                correction.new_value, correction.source_message_id, correction.created_at.isoformat(),
            ),
        )
        await self._conn.commit()

    @_wrap_errors
    async def list_corrections(self, user_id: str) -> list[FactCorrection]:
        cursor = await self._conn.execute(
            "SELECT user_id, entity_id, field, old_value, new_value, source_message_id, created_at "
            "FROM fact_corrections WHERE user_id = ? ORDER BY id",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [
            FactCorrection(
                user_id=r[0], entity_id=r[1], field=r[2], old_value=r[3],
                new_value=r[4], source_message_id=r[5], created_at=r[6],
            )
            for r in rows
        ]

    # --- Cache rows ---

    @_wrap_errors
    async def touch_cache_row(self, user_id: str) -> datetime:
        stamp = utcnow()
        await self._conn.execute(
            "INSERT INTO fact_cache (user_id, cached_at) VALUES (?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET cached_at = excluded.cached_at",
            (user_id, stamp.isoformat()),
        )
        await self._conn.commit()
        return stamp

    @_wrap_errors
    async def delete_cache_row(self, user_id: str) -> None:
        await self._conn.execute("DELETE FROM fact_cache WHERE user_id = ?", (user_id,))
        await self._conn.commit()

    @_wrap_errors
    async def get_cache_row(self, user_id: str) -> datetime | None:
        cursor = await self._conn.execute(
            "SELECT cached_at FROM fact_cache WHERE user_id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()
        return datetime.fromisoformat(row[0]) if row else None
