import sqlite3
from unittest.mock import AsyncMock

import pytest

from factmem.database.backend import utcnow
from factmem.database.repository import SqliteFactRepository
from factmem.facts.exceptions import EntityConflictError, PersistenceError
from factmem.models import FactCorrection


async def test_insert_and_get_entity(backend):
    entity = await backend.insert_entity("u1", "person", "user", "John", 1.0, "user_stated")
    assert entity.entity_id is not None
    assert entity.entity_subtype == "user"
    assert entity.is_active is True

    fetched = await backend.get_entity(entity.entity_id)
    assert fetched.canonical_name == "John"
    assert fetched.created_at == entity.created_at


async def test_get_missing_entity(backend):
    assert await backend.get_entity(9999) is None


async def test_find_entity_is_case_insensitive(backend):
    await backend.insert_entity("u1", "pet", None, "Holly", 1.0, "user_stated")
    found = await backend.find_entity("u1", "pet", None, "holly")
    assert found is not None
    assert found.canonical_name == "Holly"
    assert found.entity_subtype is None


async def test_find_entity_scoped_by_user_and_subtype(backend):
    await backend.insert_entity("u1", "place", "residence", "Berlin", 1.0, "user_stated")
    assert await backend.find_entity("u2", "place", "residence", "Berlin") is None
    assert await backend.find_entity("u1", "place", "origin", "Berlin") is None


async def test_duplicate_identity_conflicts(backend):
    await backend.insert_entity("u1", "pet", None, "Holly", 1.0, "user_stated")
    with pytest.raises(EntityConflictError):
        await backend.insert_entity("u1", "pet", None, "HOLLY", 0.5, "inferred")
    # Same name under another user or subtype is a different identity
    await backend.insert_entity("u2", "pet", None, "Holly", 1.0, "user_stated")
    await backend.insert_entity("u1", "person", "family", "Holly", 1.0, "user_stated")


async def test_non_ascii_names_fold_case(backend):
    emile = await backend.insert_entity("u1", "person", "user", "émile", 1.0, "user_stated")
    with pytest.raises(EntityConflictError):
        await backend.insert_entity("u1", "person", "user", "Émile", 1.0, "user_stated")

    found = await backend.find_entity("u1", "person", "user", "ÉMILE")
    assert found.entity_id == emile.entity_id
    assert found.canonical_name == "émile"


async def test_non_ascii_alias_folds_case(backend):
    entity = await backend.insert_entity("u1", "person", "family", "Zoë", 1.0, "user_stated")
    await backend.add_alias(entity.entity_id, "Ärger")
    await backend.add_alias(entity.entity_id, "ärger")

    found = await backend.find_entity("u1", "person", "family", "ÄRGER")
    assert found.entity_id == entity.entity_id
    assert len(found.aliases) == 1


async def test_conflict_is_a_persistence_error(backend):
    await backend.insert_entity("u1", "pet", None, "Rex", 1.0, "user_stated")
    with pytest.raises(PersistenceError):
        await backend.insert_entity("u1", "pet", None, "Rex", 1.0, "user_stated")


async def test_find_entity_by_alias(backend):
    entity = await backend.insert_entity("u1", "person", "user", "Robert", 1.0, "user_stated")
    await backend.add_alias(entity.entity_id, "Bob")
    await backend.add_alias(entity.entity_id, "bob")

    found = await backend.find_entity("u1", "person", "user", "BOB")
    assert found.entity_id == entity.entity_id
    assert {a.lower() for a in found.aliases} == {"bob"}


async def test_update_entity(backend):
    entity = await backend.insert_entity("u1", "pet", None, "Rex", 0.5, "inferred")
    updated = await backend.update_entity(entity.entity_id, confidence=0.9, source_type="user_stated")
    assert updated.confidence == 0.9
    assert updated.source_type == "user_stated"
    assert updated.updated_at >= entity.updated_at

    deactivated = await backend.update_entity(entity.entity_id, is_active=False)
    assert deactivated.is_active is False
    assert deactivated.confidence == 0.9


async def test_update_missing_entity(backend):
    with pytest.raises(PersistenceError):
        await backend.update_entity(424242, is_active=False)


async def test_list_entities_filters(backend):
    holly = await backend.insert_entity("u1", "pet", None, "Holly", 1.0, "user_stated")
    benny = await backend.insert_entity("u1", "pet", None, "Benny", 1.0, "user_stated")
    await backend.insert_entity("u1", "person", "user", "Clemens", 1.0, "user_stated")
    await backend.update_entity(benny.entity_id, is_active=False)

    active = await backend.list_entities("u1", "pet")
    assert [e.canonical_name for e in active] == ["Holly"]

    everything = await backend.list_entities("u1", "pet", active_only=False)
    assert [e.canonical_name for e in everything] == ["Holly", "Benny"]

    users = await backend.list_entities("u1", "person", "user")
    assert [e.canonical_name for e in users] == ["Clemens"]

    assert len(await backend.list_entities("u1")) == 2
    assert holly.entity_id in {e.entity_id for e in everything}


async def test_list_entities_by_relationship(backend):
    sarah = await backend.insert_entity("u1", "person", "family", "Sarah", 1.0, "user_stated")
    await backend.insert_entity("u1", "person", "friend", "Alex", 1.0, "user_stated")
    await backend.add_relationship("u1", sarah.entity_id, "family", object_value="wife")

    family = await backend.list_entities("u1", "person", relationship_type="family")
    assert [e.canonical_name for e in family] == ["Sarah"]


async def test_attributes_last_write_wins(backend):
    entity = await backend.insert_entity("u1", "thing", "date", "birthday", 1.0, "user_stated")
    assert await backend.upsert_attribute(entity.entity_id, "date", "March 15", "m1") is None
    assert await backend.upsert_attribute(entity.entity_id, "date", "March 16", "m2") == "March 15"

    [attribute] = await backend.get_attributes(entity.entity_id)
    assert attribute.attribute_value == "March 16"
    assert attribute.source_message_id == "m2"


async def test_relationships_are_idempotent(backend):
    rex = await backend.insert_entity("u1", "pet", None, "Rex", 1.0, "user_stated")
    first = await backend.add_relationship("u1", rex.entity_id, "pet", object_value="dog", source_message_id="m1")
    second = await backend.add_relationship("u1", rex.entity_id, "pet", object_value="dog", source_message_id="m2")
    assert first.relationship_id == second.relationship_id

    edges = await backend.list_relationships("u1", subject_entity_id=rex.entity_id)
    assert len(edges) == 1
    assert edges[0].object_value == "dog"


async def test_relationship_between_entities(backend):
    sarah = await backend.insert_entity("u1", "person", "family", "Sarah", 1.0, "user_stated")
    tom = await backend.insert_entity("u1", "person", "family", "Tom", 1.0, "user_stated")
    await backend.add_relationship("u1", sarah.entity_id, "sibling", object_entity_id=tom.entity_id)
    await backend.add_relationship("u1", tom.entity_id, "sibling", object_entity_id=sarah.entity_id)

    edges = await backend.list_relationships("u1", relationship_type="sibling")
    assert {(e.subject_entity_id, e.object_entity_id) for e in edges} == {
        (sarah.entity_id, tom.entity_id),
        (tom.entity_id, sarah.entity_id),
    }


async def test_corrections_round_trip(backend):
    entity = await backend.insert_entity("u1", "person", "user", "John", 1.0, "user_stated")
    await backend.record_correction(
        FactCorrection(
            user_id="u1",
            entity_id=entity.entity_id,
            field="canonical_name",
            old_value="John",
            new_value="Jonathan",
            source_message_id="m9",
            created_at=utcnow(),
        )
    )
    [correction] = await backend.list_corrections("u1")
    assert (correction.old_value, correction.new_value) == ("John", "Jonathan")
    assert await backend.list_corrections("u2") == []


async def test_cache_rows(backend):
    assert await backend.get_cache_row("u1") is None
    await backend.touch_cache_row("u1")
    assert await backend.get_cache_row("u1") is not None
    await backend.delete_cache_row("u1")
    assert await backend.get_cache_row("u1") is None


# --- sqlite specifics ---


async def test_sqlite_errors_become_persistence_errors():
    conn = AsyncMock()
    conn.execute = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
    repository = SqliteFactRepository(conn)

    with pytest.raises(PersistenceError, match="database is locked"):
        await repository.list_entities("u1")


async def test_schema_is_idempotent(db_connection):
    from factmem.database.db import SCHEMA

    await db_connection.executescript(SCHEMA)
    cursor = await db_connection.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE 'fact_%' ORDER BY name"
    )
    tables = [row[0] for row in await cursor.fetchall()]
    assert tables == [
        "fact_aliases",
        "fact_attributes",
        "fact_cache",
        "fact_corrections",
        "fact_entities",
        "fact_relationships",
    ]
