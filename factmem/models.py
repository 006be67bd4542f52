from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, model_validator

EntityType = Literal["person", "pet", "place", "thing"]
SourceType = Literal["user_stated", "inferred", "corrected"]
CandidateType = Literal[
    "name", "pets", "location", "relationship", "preference", "date", "medical", "work"
]


# --- Candidate values (one variant per extraction family) ---


class NameValue(BaseModel):
    kind: Literal["name"] = "name"
    name: str


class PetValue(BaseModel):
    kind: Literal["pets"] = "pets"
    count: str | None = None
    species: str = "pet"
    names: str  # raw surface text, e.g. "Holly and Benny"; split by the store


class LocationValue(BaseModel):
    kind: Literal["location"] = "location"
    subtype: Literal["residence", "origin", "work"]
    location: str


class RelationshipValue(BaseModel):
    kind: Literal["relationship"] = "relationship"
    relationship: str
    name: str


class PreferenceValue(BaseModel):
    kind: Literal["preference"] = "preference"
    preference: Literal["likes", "dislikes", "favorite"]
    topic: str | None = None
    value: str


class DateValue(BaseModel):
    kind: Literal["date"] = "date"
    occasion: str
    date: str


class MedicalValue(BaseModel):
    kind: Literal["medical"] = "medical"
    category: Literal["allergy", "condition"]
    value: str


class WorkValue(BaseModel):
    kind: Literal["work"] = "work"
    profession: str | None = None
    relation: Literal["as", "in", "at", "for"] | None = None
    detail: str | None = None

    @model_validator(mode="after")
    def _has_content(self) -> WorkValue:
        if not self.profession and not self.detail:
            raise ValueError("work value needs a profession or a detail")
        return self


CandidateValue = Annotated[
    Union[
        NameValue,
        PetValue,
        LocationValue,
        RelationshipValue,
        PreferenceValue,
        DateValue,
        MedicalValue,
        WorkValue,
    ],
    Field(discriminator="kind"),
]


class CandidateEntity(BaseModel):
    """Unpersisted extraction result from a single message."""

    type: CandidateType
    value: CandidateValue
    raw_text: str
    confidence: float = Field(ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _type_matches_value(self) -> CandidateEntity:
        if self.value.kind != self.type:
            raise ValueError(f"candidate type {self.type!r} does not match value {self.value.kind!r}")
        return self


# --- Canonical records ---


class FactEntity(BaseModel):
    entity_id: int
    user_id: str
    entity_type: EntityType
    entity_subtype: str | None = None
    canonical_name: str
    aliases: set[str] = Field(default_factory=set)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source_type: SourceType = "user_stated"
    created_at: datetime
    updated_at: datetime
    is_active: bool = True


class FactAttribute(BaseModel):
    entity_id: int
    attribute_name: str
    attribute_value: str
    source_message_id: str | None = None
    updated_at: datetime


class FactRelationship(BaseModel):
    relationship_id: int
    user_id: str
    subject_entity_id: int
    relationship_type: str
    object_entity_id: int | None = None
    object_value: str | None = None
    source_message_id: str | None = None

    @model_validator(mode="after")
    def _has_object(self) -> FactRelationship:
        if self.object_entity_id is None and self.object_value is None:
            raise ValueError("relationship needs an object entity or an object value")
        return self


class FactCorrection(BaseModel):
    user_id: str
    entity_id: int
    field: str  # "canonical_name", "is_active" or "attr:<name>"
    old_value: str | None = None
    new_value: str | None = None
    source_message_id: str | None = None
    created_at: datetime
