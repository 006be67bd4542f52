"""Ordered battery of regex extraction rules.

Each ExtractionRule pairs one compiled pattern with a builder that turns a
match into a typed candidate value (or rejects it by returning None). Rules
are independent: the extractor runs all of them and does not dedup across
rules, so one message may yield several facts of the same type.

Patterns only use bounded quantifiers and run on NFC-normalised text.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from factmem.models import (
    CandidateEntity,
    CandidateType,
    CandidateValue,
    DateValue,
    LocationValue,
    MedicalValue,
    NameValue,
    PetValue,
    PreferenceValue,
    RelationshipValue,
    WorkValue,
)

BASE_CONFIDENCE = 0.8

# --- Pattern building blocks ---

_S = r"\s{1,4}"
_APOS = r"['’]"
# Letter, then letters / combining marks / apostrophes / hyphens.
_WORD = r"[^\W\d_](?:[^\W\d_]|[\u0300-\u036f'’-]){0,39}"
_PHRASE = _WORD + r"(?:[ \t]{1,2}" + _WORD + r"){0,4}"
_CLAUSE = r"([^.,;:!?\n]{1,80})"

# Capitalised abbreviations whose trailing period does not end a sentence.
ABBREVIATIONS = ("St", "Ste", "Mt", "Ft", "Pt", "Dr", "Mr", "Mrs", "Ms", "Jr", "Sr", "Prof")
_PLACE = r"((?:(?:St|Ste|Mt|Ft|Pt)\.[ \t]{1,2})?" + _PHRASE + r")"
_I_AM = r"\bi(?:" + _APOS + r"m|" + _S + r"am)" + _S

_SPECIES = (
    r"(?:cat|dog|pet|bird|fish|hamster|rabbit|bunny|puppy|puppie|kitten|parrot|"
    r"turtle|tortoise|guinea" + _S + r"pig|horse|pony|snake|lizard|ferret|gecko|mouse|mice|rat)"
)
_COUNT = (
    r"(two|three|four|five|six|seven|eight|nine|ten|\d{1,2}|a" + _S + r"couple" + _S + r"of|"
    r"several|some|many)"
)
_NAME_LIST = _WORD + r"(?:(?:\s{0,2},\s{0,2}(?:and" + _S + r")?|" + _S + r"and" + _S + r"|\s{0,2}&\s{0,2})" + _WORD + r"){0,9}"

_ROLES = (
    "wife", "husband", "partner", "spouse", "boyfriend", "girlfriend", "fiance", "fiancee",
    "brother", "sister", "mother", "father", "mom", "mum", "dad", "son", "daughter",
    "grandmother", "grandfather", "grandma", "grandpa", "aunt", "uncle", "cousin",
    "niece", "nephew", "friend", "best friend",
)
_ROLE = r"(" + "|".join(r.replace(" ", _S) for r in sorted(_ROLES, key=len, reverse=True)) + r")"

_MONTH = (
    r"(?:january|february|march|april|may|june|july|august|september|october|november|december|"
    r"jan|feb|mar|apr|jun|jul|aug|sept|sep|oct|nov|dec)\.?"
)
_ORD = r"(?:st|nd|rd|th)?"
_DATE = (
    r"(" + _MONTH + _S + r"\d{1,2}" + _ORD + r"(?:,?" + _S + r"\d{4})?"
    r"|\d{1,2}" + _ORD + _S + r"(?:of" + _S + r")?" + _MONTH + r"(?:,?" + _S + r"\d{4})?"
    r"|\d{4}-\d{1,2}-\d{1,2}"
    r"|\d{1,2}[/.]\d{1,2}(?:[/.]\d{2,4})?)"
)

# Words that follow "I'm"/"I am" but are not names.
_NOT_NAMES = {
    "a", "an", "the", "not", "from", "allergic", "here", "there", "fine", "good", "great",
    "ok", "okay", "sure", "so", "very", "really", "just", "also", "still", "going", "in",
    "at", "on", "with", "back", "home", "sorry", "glad", "happy", "sad", "tired", "busy",
    "working", "looking", "trying", "feeling", "doing", "done", "ready", "i", "your",
    "my", "this", "that", "it", "he", "she", "we", "they", "married", "single", "retired",
}
_CONNECTORS = {"and", "or", "but", "i", "&"}
_NOT_PET_NAMES = {"named", "called", "is", "was", "the", "a", "an", "and", "i", "it", "this", "that"}
_NOT_OWNERS = {"this", "that", "it", "he", "she", "which", "who", "what", "there", "here", "i", "they"}
_CLAUSE_CUT = re.compile(
    r"\s(?:and|but|who|which|so|because|since|though|although|while|when|where)\s",
    re.IGNORECASE,
)
_WORK_CUT = re.compile(r"\s(?:at|in|for|with|and|but|who|since|from)\s", re.IGNORECASE)
_HAVE_REJECT = re.compile(
    r"^(?:a|an|the|my|our|no|some|any|one|two|three|four|five|six|seven|eight|nine|ten|\d+|"
    r"been|to|got|had|never|always|already|just|lots|plenty|time|fun|an?\s+idea|"
    r"several|many|few|nothing|something|everything)\b",
    re.IGNORECASE,
)
_PET_WORDS = re.compile(r"\b" + _SPECIES + r"s?\b|\b(?:named|called)\b", re.IGNORECASE)
_NAME_SPLIT = re.compile(r"\s{0,4},\s{0,4}(?:and\s{1,4})?|\s{1,4}and\s{1,4}|\s{0,4}&\s{0,4}", re.IGNORECASE)


def _rx(*parts: str) -> re.Pattern[str]:
    return re.compile("".join(parts), re.IGNORECASE)


def _clean(word: str) -> str:
    return word.strip("'’-")


def _is_capitalised(word: str) -> bool:
    return bool(word) and word[0].isupper()


def _leading_capitalised(phrase: str, *, first_may_be_lower: bool = False) -> str | None:
    """Keep the first word plus the run of capitalised words that follows it."""
    words = [_clean(w) for w in phrase.split()]
    words = [w for w in words if w]
    if not words:
        return None
    if not first_may_be_lower and not _is_capitalised(words[0]):
        return None
    kept = [words[0]]
    for word in words[1:]:
        if word.lower() in _CONNECTORS or not _is_capitalised(word):
            break
        kept.append(word)
    return " ".join(kept)


def _trim_clause(text: str, cut: re.Pattern[str] = _CLAUSE_CUT) -> str | None:
    m = cut.search(" " + text + " ")
    if m:
        text = text[: max(m.start() - 1, 0)]
    text = text.strip(" \t'’\"-")
    return text or None


def split_names(names: str) -> list[str]:
    """Split "Holly and Benny" / "Nemo, Dory, and Bubbles" into single names."""
    parts = [_clean(p.strip()) for p in _NAME_SPLIT.split(names or "")]
    return [p for p in parts if p]


# --- Builders ---


def _build_name(match: re.Match[str], *, strict: bool) -> NameValue | None:
    phrase = match.group(1)
    first = _clean(phrase.split()[0]) if phrase.split() else ""
    if not first:
        return None
    if strict and (not _is_capitalised(first) or first.lower() in _NOT_NAMES):
        return None
    name = _leading_capitalised(phrase, first_may_be_lower=not strict)
    if not name or name.lower() in _NOT_NAMES:
        return None
    if strict:
        # "I'm X" only names the user when X closes the clause: "I'm Exhausted today" does not
        words = [w for w in (_clean(w) for w in phrase.split()) if w]
        rest = words[len(name.split()):]
        if rest and rest[0].lower() not in _CONNECTORS:
            return None
    return NameValue(name=name)


def _build_pet_list(match: re.Match[str]) -> PetValue | None:
    count, species, raw_names = match.group(1), match.group(2), match.group(3)
    items = split_names(raw_names)
    valid: list[str] = []
    for item in items:
        if item.lower() in _NOT_PET_NAMES or not _is_capitalised(item):
            break
        valid.append(item)
    if not valid:
        return None
    if len(valid) == len(items):
        names = raw_names.strip()
    elif len(valid) == 1:
        names = valid[0]
    else:
        names = ", ".join(valid[:-1]) + " and " + valid[-1]
    return PetValue(count=" ".join(count.split()).lower(), species=species.lower(), names=names)


def _build_single_pet(species_group: int, name_group: int) -> Callable[[re.Match[str]], PetValue | None]:
    def build(match: re.Match[str]) -> PetValue | None:
        name = _clean(match.group(name_group))
        if not name or not _is_capitalised(name) or name.lower() in _NOT_PET_NAMES:
            return None
        species = " ".join(match.group(species_group).split()).lower()
        return PetValue(species=species, names=name)

    return build


def _build_owner_pet(match: re.Match[str]) -> PetValue | None:
    name = _clean(match.group(1))
    if not _is_capitalised(name) or name.lower() in _NOT_OWNERS:
        return None
    return PetValue(species=match.group(2).lower(), names=name)


def _build_location(subtype: str) -> Callable[[re.Match[str]], LocationValue | None]:
    def build(match: re.Match[str]) -> LocationValue | None:
        place = _leading_capitalised(match.group(1))
        if not place:
            return None
        return LocationValue(subtype=subtype, location=place)

    return build


def _build_relationship(match: re.Match[str]) -> RelationshipValue | None:
    name = _leading_capitalised(match.group(2))
    if not name or name.lower() in _NOT_NAMES:
        return None
    return RelationshipValue(relationship=" ".join(match.group(1).split()).lower(), name=name)


def _build_preference(preference: str) -> Callable[[re.Match[str]], PreferenceValue | None]:
    def build(match: re.Match[str]) -> PreferenceValue | None:
        value = _trim_clause(match.group(1))
        if not value:
            return None
        return PreferenceValue(preference=preference, value=value)

    return build


def _build_favorite(match: re.Match[str]) -> PreferenceValue | None:
    value = _trim_clause(match.group(2))
    if not value:
        return None
    return PreferenceValue(preference="favorite", topic=match.group(1).lower(), value=value)


def _build_date(occasion: str | None = None) -> Callable[[re.Match[str]], DateValue | None]:
    def build(match: re.Match[str]) -> DateValue:
        name = occasion or " ".join(match.group(1).split()).lower()
        return DateValue(occasion=name, date=" ".join(match.group(match.lastindex or 1).split()))

    return build


def _build_allergy(match: re.Match[str]) -> MedicalValue | None:
    value = _trim_clause(match.group(1))
    if not value:
        return None
    return MedicalValue(category="allergy", value=value)


def _build_condition(match: re.Match[str]) -> MedicalValue | None:
    value = _trim_clause(match.group(1))
    if not value or _HAVE_REJECT.match(value) or _PET_WORDS.search(value):
        return None
    return MedicalValue(category="condition", value=value)


def _build_profession(match: re.Match[str]) -> WorkValue | None:
    profession = _trim_clause(match.group(1), _WORK_CUT)
    if not profession:
        return None
    return WorkValue(profession=profession)


def _build_work(match: re.Match[str]) -> WorkValue | None:
    relation = match.group(1).lower()
    detail = _trim_clause(match.group(2), _WORK_CUT if relation == "as" else _CLAUSE_CUT)
    if not detail:
        return None
    return WorkValue(relation=relation, detail=detail)


# --- Rule battery ---


@dataclass(frozen=True)
class ExtractionRule:
    name: str
    entity_type: CandidateType
    pattern: re.Pattern[str]
    build: Callable[[re.Match[str]], CandidateValue | None]
    # Scales the base confidence; hedged phrasings score below the base.
    weight: float = 1.0

    def apply(self, text: str, confidence: float = BASE_CONFIDENCE) -> list[CandidateEntity]:
        """Run this rule over text and return one candidate per accepted match."""
        confidence = round(confidence * self.weight, 4)
        candidates: list[CandidateEntity] = []
        for match in self.pattern.finditer(text):
            value = self.build(match)
            if value is None:
                continue
            raw_text = match.group(0).strip()
            if not raw_text:
                continue
            candidates.append(
                CandidateEntity(
                    type=self.entity_type,
                    value=value,
                    raw_text=raw_text,
                    confidence=confidence,
                )
            )
        return candidates


RULES: list[ExtractionRule] = [
    # Name
    ExtractionRule(
        "name.my_name_is", "name",
        _rx(r"\bmy", _S, r"name", _S, r"is", _S, r"(", _PHRASE, r")"),
        lambda m: _build_name(m, strict=False),
    ),
    ExtractionRule(
        "name.call_me", "name",
        _rx(r"\bcall", _S, r"me", _S, r"(", _PHRASE, r")"),
        lambda m: _build_name(m, strict=False),
    ),
    ExtractionRule(
        "name.i_am", "name",
        _rx(_I_AM, r"(", _PHRASE, r")"),
        lambda m: _build_name(m, strict=True),
        weight=0.75,
    ),
    # Pets
    ExtractionRule(
        "pets.counted_list", "pets",
        _rx(r"\b(?:i|we)", _S, r"have", _S, _COUNT, _S, r"([^\W\d_]{1,20})", _S,
            r"(?:named|called)", _S, r"(", _NAME_LIST, r")"),
        _build_pet_list,
    ),
    ExtractionRule(
        "pets.named", "pets",
        _rx(r"(?:\b(?:my|our|the|(?:i|we)", _S, r"have", _S, r"an?|and", _S, r"an?)|,\s{0,2}an?)",
            _S, r"(", _SPECIES, r")s?", _S,
            r"(?:(?:is|was|are|were)", _S, r")?(?:named|called)", _S, r"(", _WORD, r")"),
        _build_single_pet(1, 2),
    ),
    ExtractionRule(
        "pets.possessive", "pets",
        _rx(r"\bmy", _S, r"(", _SPECIES, r")", _S, r"(?:is", _S, r")?(", _WORD, r")"),
        _build_single_pet(1, 2),
    ),
    ExtractionRule(
        "pets.is_my", "pets",
        _rx(r"\b(", _WORD, r")", _S, r"is", _S, r"my", _S, r"(", _SPECIES, r")\b"),
        _build_owner_pet,
    ),
    # Locations
    ExtractionRule(
        "location.residence", "location",
        _rx(r"\bi", _S, r"(?:live|reside|stay)", _S, r"(?:in|at)", _S, _PLACE),
        _build_location("residence"),
    ),
    ExtractionRule(
        "location.origin", "location",
        _rx(r"\bi(?:", _APOS, r"m|", _S, r"am|", _S, r"come)", _S, r"from", _S, _PLACE),
        _build_location("origin"),
    ),
    ExtractionRule(
        "location.work", "location",
        _rx(r"\bi", _S, r"work", _S, r"(?:in|at)", _S, _PLACE),
        _build_location("work"),
    ),
    # Relationships
    ExtractionRule(
        "relationship.role_name", "relationship",
        _rx(r"\bmy", _S, _ROLE, r"(?:", _S, r"is", _S, r"(?:named", _S, r"|called", _S, r")?|",
            _S, r"(?:named|called)", _S, r"|\s{0,2},\s{0,2}|", _S, r")(", _WORD, r"(?:[ \t]{1,2}", _WORD, r")?)"),
        _build_relationship,
    ),
    # Preferences
    ExtractionRule(
        "preference.likes", "preference",
        _rx(r"\bi", _S, r"(?:really", _S, r"|absolutely", _S, r")?(?:love|like|enjoy|prefer)", _S, _CLAUSE),
        _build_preference("likes"),
    ),
    ExtractionRule(
        "preference.dislikes", "preference",
        _rx(r"\bi", _S, r"(?:really", _S, r")?(?:hate|dislike|don", _APOS, r"t", _S, r"like|do", _S,
            r"not", _S, r"like|can", _APOS, r"t", _S, r"stand|cannot", _S, r"stand)", _S, _CLAUSE),
        _build_preference("dislikes"),
    ),
    ExtractionRule(
        "preference.favorite", "preference",
        _rx(r"\bmy", _S, r"fav(?:ou)?rite", _S, r"([^\W\d_]{1,30}(?:", _S, r"[^\W\d_]{1,30})?)", _S,
            r"is", _S, _CLAUSE),
        _build_favorite,
    ),
    # Dates
    ExtractionRule(
        "date.occasion", "date",
        _rx(r"\bmy", _S, r"(birthday|anniversary|wedding", _S, r"anniversary|wedding", _S, r"day|wedding)",
            _S, r"is", _S, r"(?:on", _S, r")?", _DATE),
        _build_date(),
    ),
    ExtractionRule(
        "date.born_on", "date",
        _rx(r"\bi", _S, r"was", _S, r"born", _S, r"(?:on", _S, r")?", _DATE),
        _build_date("birthday"),
    ),
    # Medical
    ExtractionRule(
        "medical.allergy", "medical",
        _rx(_I_AM, r"(?:very", _S, r"|severely", _S, r"|mildly", _S, r")?allergic", _S, r"to", _S, _CLAUSE),
        _build_allergy,
    ),
    ExtractionRule(
        "medical.condition", "medical",
        _rx(r"\bi", _S, r"(?:have|suffer", _S, r"from)", _S, _CLAUSE),
        _build_condition,
    ),
    # Work
    ExtractionRule(
        "work.profession", "work",
        _rx(_I_AM, r"an?", _S, _CLAUSE),
        _build_profession,
    ),
    ExtractionRule(
        "work.detail", "work",
        _rx(r"\bi", _S, r"work", _S, r"(as|in|at|for)", _S, _CLAUSE),
        _build_work,
    ),
]
