import re

import pytest

from factmem.extraction.rules import RULES, ExtractionRule, split_names
from factmem.models import NameValue

RULES_BY_NAME = {rule.name: rule for rule in RULES}


def _values(rule_name: str, text: str):
    return [c.value for c in RULES_BY_NAME[rule_name].apply(text)]


def test_rule_names_are_unique():
    assert len(RULES_BY_NAME) == len(RULES)


def test_every_rule_emits_its_own_type():
    for rule in RULES:
        for candidate in rule.apply("My name is John. I have a cat named Tom."):
            assert candidate.type == rule.entity_type


# --- Name ---


def test_my_name_is():
    [value] = _values("name.my_name_is", "My name is John")
    assert value == NameValue(name="John")


def test_my_name_is_keeps_multi_word_name():
    [value] = _values("name.my_name_is", "my name is Mary Jane and I like tea")
    assert value.name == "Mary Jane"


def test_my_name_is_without_name_yields_nothing():
    assert _values("name.my_name_is", "my name is") == []


def test_call_me():
    [value] = _values("name.call_me", "Please call me Bob")
    assert value.name == "Bob"


def test_i_am_name():
    [value] = _values("name.i_am", "Hi, I'm Clemens")
    assert value.name == "Clemens"


@pytest.mark.parametrize("text", ["I'm a teacher", "I am an engineer", "I'm tired", "I am from Spain"])
def test_i_am_rejects_non_names(text):
    assert _values("name.i_am", text) == []


@pytest.mark.parametrize(
    "text",
    ["I'm Exhausted today.", "I'm Excited to meet you", "I am Starving right now"],
)
def test_i_am_rejects_capitalised_mood_words(text):
    assert _values("name.i_am", text) == []


@pytest.mark.parametrize(
    "text, expected",
    [("I'm Sarah.", "Sarah"), ("I'm Sarah Connor", "Sarah Connor"), ("I'm Anna and I live here", "Anna")],
)
def test_i_am_accepts_name_closing_the_clause(text, expected):
    [value] = _values("name.i_am", text)
    assert value.name == expected


def test_i_am_scores_below_my_name_is():
    [weak] = RULES_BY_NAME["name.i_am"].apply("I'm Sarah")
    [strong] = RULES_BY_NAME["name.my_name_is"].apply("My name is Sarah")
    assert weak.confidence == pytest.approx(0.6)
    assert strong.confidence == 0.8


def test_name_keeps_accented_letters():
    [value] = _values("name.my_name_is", "My name is José")
    assert value.name == "José"


# --- Pets ---


def test_counted_pet_list():
    [value] = _values("pets.counted_list", "I have two cats named Holly and Benny")
    assert value.count == "two"
    assert value.species == "cats"
    assert value.names == "Holly and Benny"


def test_counted_pet_list_with_commas():
    [value] = _values("pets.counted_list", "We have three fish named Nemo, Dory, and Bubbles")
    assert split_names(value.names) == ["Nemo", "Dory", "Bubbles"]


def test_single_pet_named():
    [value] = _values("pets.named", "I have a cat named Whiskers")
    assert value.species == "cat"
    assert value.names == "Whiskers"


def test_two_single_pets_in_one_sentence():
    values = _values("pets.named", "I have a cat named Holly and a dog named Benny.")
    assert [(v.species, v.names) for v in values] == [("cat", "Holly"), ("dog", "Benny")]


def test_single_pet_after_comma():
    values = _values("pets.named", "We have a cat named Holly, a dog named Benny")
    assert [v.names for v in values] == ["Holly", "Benny"]


def test_single_pet_is_called():
    [value] = _values("pets.named", "my dog is called Buddy")
    assert (value.species, value.names) == ("dog", "Buddy")


def test_the_bird_named():
    [value] = _values("pets.named", "the bird named Tweety sings")
    assert value.names == "Tweety"


def test_possessive_pet_rejects_verbs():
    assert _values("pets.possessive", "my dog is called Buddy") == []


def test_possessive_pet():
    [value] = _values("pets.possessive", "my cat Luna sleeps a lot")
    assert value.names == "Luna"


def test_owner_form():
    [value] = _values("pets.is_my", "Rex is my dog")
    assert (value.names, value.species) == ("Rex", "dog")


def test_owner_form_rejects_pronouns():
    assert _values("pets.is_my", "This is my dog") == []


# --- Locations ---


def test_residence():
    [value] = _values("location.residence", "I live in New York")
    assert (value.subtype, value.location) == ("residence", "New York")


def test_residence_with_abbreviation():
    [value] = _values("location.residence", "I live in St. Louis.")
    assert value.location == "St. Louis"


def test_origin():
    [value] = _values("location.origin", "I'm from Spain")
    assert (value.subtype, value.location) == ("origin", "Spain")


def test_work_location():
    [value] = _values("location.work", "I work at Google")
    assert (value.subtype, value.location) == ("work", "Google")


def test_lowercase_place_is_ignored():
    assert _values("location.residence", "I live in a small flat") == []


# --- Relationships ---


def test_role_followed_by_name():
    [value] = _values("relationship.role_name", "my wife Sarah loves hiking")
    assert (value.relationship, value.name) == ("wife", "Sarah")


def test_role_is_called_name():
    [value] = _values("relationship.role_name", "My brother is called Tom")
    assert (value.relationship, value.name) == ("brother", "Tom")


def test_best_friend():
    [value] = _values("relationship.role_name", "my best friend Alex")
    assert (value.relationship, value.name) == ("best friend", "Alex")


# --- Preferences ---


def test_likes():
    [value] = _values("preference.likes", "I love pizza")
    assert (value.preference, value.value) == ("likes", "pizza")


def test_likes_trims_at_conjunction():
    [value] = _values("preference.likes", "I really enjoy hiking but not running")
    assert value.value == "hiking"


def test_dislikes():
    [value] = _values("preference.dislikes", "I don't like mushrooms")
    assert (value.preference, value.value) == ("dislikes", "mushrooms")


def test_favorite():
    [value] = _values("preference.favorite", "My favourite color is blue")
    assert (value.preference, value.topic, value.value) == ("favorite", "color", "blue")


# --- Dates ---


@pytest.mark.parametrize(
    "text, expected",
    [
        ("My birthday is March 15th", "March 15th"),
        ("my birthday is on 15 March 1990", "15 March 1990"),
        ("My anniversary is 2024-03-15", "2024-03-15"),
        ("my birthday is 3/15", "3/15"),
    ],
)
def test_occasion_dates(text, expected):
    [value] = _values("date.occasion", text)
    assert value.date == expected


def test_born_on_is_a_birthday():
    [value] = _values("date.born_on", "I was born on June 2, 1985")
    assert (value.occasion, value.date) == ("birthday", "June 2, 1985")


# --- Medical ---


def test_allergy():
    [value] = _values("medical.allergy", "I'm allergic to peanuts and shellfish")
    assert (value.category, value.value) == ("allergy", "peanuts")


def test_condition():
    [value] = _values("medical.condition", "I have asthma")
    assert (value.category, value.value) == ("condition", "asthma")


@pytest.mark.parametrize(
    "text",
    ["I have two cats named Holly and Benny", "I have a dog", "I have been busy", "I have my keys"],
)
def test_condition_ignores_possessions(text):
    assert _values("medical.condition", text) == []


# --- Work ---


def test_copula_profession():
    [value] = _values("work.profession", "I'm a teacher")
    assert value.profession == "teacher"


def test_profession_stops_at_preposition():
    [value] = _values("work.profession", "I am a nurse at the city hospital")
    assert value.profession == "nurse"


@pytest.mark.parametrize(
    "text, relation, detail",
    [
        ("I work as a software engineer", "as", "a software engineer"),
        ("I work in healthcare", "in", "healthcare"),
        ("I work at Google", "at", "Google"),
        ("I work for a startup", "for", "a startup"),
    ],
)
def test_work_detail(text, relation, detail):
    [value] = _values("work.detail", text)
    assert (value.relation, value.detail) == (relation, detail)


# --- Helpers ---


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Holly and Benny", ["Holly", "Benny"]),
        ("Nemo, Dory, and Bubbles", ["Nemo", "Dory", "Bubbles"]),
        ("Salt & Pepper", ["Salt", "Pepper"]),
        ("Rex", ["Rex"]),
        ("", []),
    ],
)
def test_split_names(raw, expected):
    assert split_names(raw) == expected


def test_custom_rule_is_applied_independently():
    rule = ExtractionRule(
        "name.test", "name", re.compile(r"\bnick:(\w+)"), lambda m: NameValue(name=m.group(1))
    )
    [candidate] = rule.apply("nick:Zed", confidence=0.5)
    assert candidate.value.name == "Zed"
    assert candidate.raw_text == "nick:Zed"
    assert candidate.confidence == 0.5
