"""Map candidate values onto canonical entity identities.

Every CandidateValue variant is matched exhaustively here; this is the only
place that knows how an extraction family becomes (entity_type,
entity_subtype, canonical_name) plus attributes and a relationship edge.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import assert_never

from factmem.extraction.rules import split_names
from factmem.models import (
    CandidateEntity,
    DateValue,
    EntityType,
    LocationValue,
    MedicalValue,
    NameValue,
    PetValue,
    PreferenceValue,
    RelationshipValue,
    WorkValue,
)

FAMILY_ROLES = {
    "wife", "husband", "partner", "spouse", "fiance", "fiancee", "brother", "sister",
    "mother", "father", "mom", "mum", "dad", "son", "daughter", "grandmother",
    "grandfather", "grandma", "grandpa", "aunt", "uncle", "cousin", "niece", "nephew",
}

LOCATION_RELATIONSHIPS = {"residence": "lives_in", "origin": "comes_from", "work": "works_in"}

_IRREGULAR_PLURALS = {"mice": "mouse", "fish": "fish", "puppies": "puppy", "bunnies": "bunny"}
_LEADING_ARTICLE = re.compile(r"^(?:a|an|the)\s+", re.IGNORECASE)


@dataclass(frozen=True)
class FactSpec:
    """One canonical identity derived from a candidate."""

    entity_type: EntityType
    entity_subtype: str | None
    name: str
    attributes: dict[str, str] = field(default_factory=dict)
    relationship_type: str | None = None
    relationship_value: str | None = None
    # A singleton slot holds at most one active entity; a new name contradicts the old one
    singleton: bool = False
    # Slot whose same-named active entity this fact contradicts (likes vs dislikes)
    contradicts: str | None = None


def singular(species: str) -> str:
    species = species.strip().lower()
    if species in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[species]
    if species.endswith("s") and not species.endswith("ss") and len(species) > 3:
        return species[:-1]
    return species


def strip_article(text: str) -> str:
    return _LEADING_ARTICLE.sub("", text.strip()).strip()


def _slug(text: str) -> str:
    return "_".join(text.lower().split())


def canonicalize(candidate: CandidateEntity) -> list[FactSpec]:
    """Turn one candidate into the fact specs the store should upsert."""
    value = candidate.value
    match value:
        case NameValue(name=name):
            return [FactSpec("person", "user", name.strip(), singleton=True)]

        case PetValue(count=count, species=species, names=names):
            kind = singular(species)
            attributes = {"species": kind}
            if count:
                attributes["mentioned_count"] = count
            return [
                FactSpec("pet", None, pet, dict(attributes), "pet", kind)
                for pet in split_names(names)
            ]

        case LocationValue(subtype=subtype, location=location):
            return [
                FactSpec(
                    "place", subtype, location.strip(),
                    relationship_type=LOCATION_RELATIONSHIPS[subtype],
                    relationship_value="user",
                    singleton=True,
                )
            ]

        case RelationshipValue(relationship=role, name=name):
            group = "family" if role in FAMILY_ROLES else "friend"
            return [
                FactSpec(
                    "person", group, name.strip(),
                    attributes={"relationship": role},
                    relationship_type=group,
                    relationship_value=role,
                )
            ]

        case PreferenceValue(preference="favorite", topic=topic, value=pref):
            topic = topic or "thing"
            return [
                FactSpec(
                    "thing", f"favorite_{_slug(topic)}", pref.strip(),
                    attributes={"topic": topic},
                    singleton=True,
                )
            ]

        case PreferenceValue(preference=kind, value=pref):
            opposite = "dislikes" if kind == "likes" else "likes"
            return [FactSpec("thing", kind, pref.strip(), contradicts=opposite)]

        case DateValue(occasion=occasion, date=date):
            return [FactSpec("thing", "date", occasion.strip().lower(), attributes={"date": date})]

        case MedicalValue(category=category, value=note):
            return [FactSpec("thing", category, note.strip())]

        case WorkValue(profession=profession, relation=relation, detail=detail):
            if profession:
                return [FactSpec("thing", "profession", strip_article(profession), singleton=True)]
            if not detail:
                return []
            if relation == "as":
                return [FactSpec("thing", "profession", strip_article(detail), singleton=True)]
            if relation == "in":
                return [FactSpec("thing", "industry", strip_article(detail), singleton=True)]
            return [
                FactSpec(
                    "thing", "workplace", strip_article(detail) if relation == "for" else detail.strip(),
                    relationship_type="works_at", relationship_value="user",
                    singleton=True,
                )
            ]

        case _:
            assert_never(value)
