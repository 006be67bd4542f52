import asyncio
import warnings
from unittest.mock import AsyncMock, MagicMock

import pytest

from factmem.facts.exceptions import PersistenceError, ValidationWarning
from factmem.facts.store import FactStore
from factmem.prompts.fact_prompt import (
    FACT_SECTION_HEADER,
    TRUNCATION_NOTE,
    FactAwarePromptGenerator,
    build_fact_section,
    calculate_fact_confidence,
    insert_fact_section,
)
from factmem.prompts.models import PromptOptions

BASE = "You are a helpful assistant."

CLEMENS_FACTS = {"user_name": "Clemens", "pet_names": ["Holly", "Benny"]}


def _generator_for(facts=None, side_effect=None) -> FactAwarePromptGenerator:
    store = MagicMock(spec=FactStore)
    store.get_all_critical_facts = AsyncMock(return_value=facts, side_effect=side_effect)
    return FactAwarePromptGenerator(store)


# --- Section rendering ---


def test_fact_section_lists_exact_names():
    section = build_fact_section(CLEMENS_FACTS)
    assert FACT_SECTION_HEADER in section
    assert "- User's name: Clemens" in section
    assert "- Pet names: Holly, Benny" in section
    assert "MUST use the exact names" in section


def test_fact_section_placeholders_for_missing_facts():
    section = build_fact_section({})
    assert "- User's name: [NOT SET - REQUEST NAME]" in section
    assert "- Pet names: [NONE SPECIFIED]" in section
    assert "ask for the user's name" in section.lower()


def test_fact_section_optional_facts():
    section = build_fact_section(
        {
            "user_name": "Clemens",
            "family_members": ["Sarah", "Tom"],
            "work_info": {"workplace": "Google", "position": "software engineer"},
            "location_info": {"residence": {"name": "Berlin", "attributes": {}}},
        }
    )
    assert "- Family members: Sarah, Tom" in section
    assert "- Work: Google (software engineer)" in section
    assert "- Residence: Berlin" in section


def test_fact_section_work_without_workplace():
    section = build_fact_section({"work_info": {"position": "nurse", "industry": "healthcare"}})
    assert "- Work: nurse, industry: healthcare" in section


def test_fact_section_options():
    section = build_fact_section(
        CLEMENS_FACTS, PromptOptions(include_confidence_scores=True, include_debug_info=True)
    )
    assert "- Fact confidence: 100.0%" in section
    assert "[DEBUG INFO: 2 facts loaded at" in section


# --- Confidence ---


@pytest.mark.parametrize(
    "facts, expected",
    [
        ({}, 0.0),
        ({"user_name": "Clemens"}, 0.5),
        (CLEMENS_FACTS, 1.0),
        ({"user_name": "Clemens", "pet_names": []}, 0.5),
        ({"user_name": "Clemens", "family_members": ["Sarah"]}, 1.2 / 2.2),
    ],
)
def test_fact_confidence(facts, expected):
    assert calculate_fact_confidence(facts) == pytest.approx(expected)


# --- Insertion ---


def test_section_is_appended_without_examples():
    assert insert_fact_section(BASE, "\n[FACTS]\n") == BASE + "\n[FACTS]\n"


def test_section_goes_before_earliest_example_marker():
    base = "Be kind.\nExample: hi -> hello\n## Examples:\nmore"
    prompt = insert_fact_section(base, "[FACTS]\n")
    assert prompt == "Be kind.\n[FACTS]\nExample: hi -> hello\n## Examples:\nmore"


def test_section_goes_before_hash_examples_marker():
    base = "Be kind.\n\n## Examples:\nQ: hi"
    prompt = insert_fact_section(base, "[FACTS]\n")
    assert prompt.index("[FACTS]") < prompt.index("## Examples:")
    assert prompt.startswith("Be kind.\n\n[FACTS]\n")


def test_section_truncation():
    section = "x" * 500
    prompt = insert_fact_section(BASE, section, max_length=100)
    assert prompt.endswith(TRUNCATION_NOTE)
    assert len(prompt) == len(BASE) + 100


# --- Generation ---


async def test_generate_includes_all_names():
    generator = _generator_for(CLEMENS_FACTS)
    result = await generator.generate_system_prompt_with_facts("u1", BASE)

    for name in ("Clemens", "Holly", "Benny"):
        assert name in result.enhanced_prompt
    assert result.enhanced_prompt.startswith(BASE)
    assert result.fact_confidence == 1.0
    assert result.facts_included == ["user_name", "pet_names"]
    assert result.original_prompt_length == len(BASE)
    assert result.enhanced_prompt_length == len(result.enhanced_prompt)
    assert result.degraded is False
    assert result.timings.total_ms >= result.timings.fetch_ms >= 0

    validation = generator.validate_fact_inclusion(result.enhanced_prompt, CLEMENS_FACTS)
    assert validation.is_valid
    assert validation.present_facts == ["user_name", "pet_names"]


async def test_generate_falls_back_on_store_error():
    generator = _generator_for(side_effect=PersistenceError("db down"))
    result = await generator.generate_system_prompt_with_facts("u1", BASE)

    assert result.enhanced_prompt.startswith(BASE)
    assert "## FACT RETRIEVAL ERROR:" in result.enhanced_prompt
    assert "ask for the user's name" in result.enhanced_prompt.lower()
    assert result.fact_confidence == 0.0
    assert result.facts_included == []
    assert result.degraded is True


async def test_generate_falls_back_on_timeout():
    async def slow(user_id):
        await asyncio.sleep(5)
        return CLEMENS_FACTS

    store = MagicMock(spec=FactStore)
    store.get_all_critical_facts = slow
    generator = FactAwarePromptGenerator(store)

    result = await generator.generate_system_prompt_with_facts(
        "u1", BASE, PromptOptions(fetch_timeout=0.01)
    )
    assert result.degraded is True
    assert "timed out" in result.enhanced_prompt
    assert "ask for the user's name" in result.enhanced_prompt.lower()


async def test_generate_never_raises_on_bad_base_prompt():
    generator = _generator_for(CLEMENS_FACTS)
    result = await generator.generate_system_prompt_with_facts("u1", None)
    assert "Clemens" in result.enhanced_prompt
    assert result.original_prompt_length == 0


async def test_persistence_failure_still_produces_a_prompt():
    backend = AsyncMock()
    backend.list_entities.side_effect = PersistenceError("db down")
    generator = FactAwarePromptGenerator(FactStore(backend))

    result = await generator.generate_system_prompt_with_facts("u1", BASE)
    assert result.enhanced_prompt
    assert "ask for the user's name" in result.enhanced_prompt.lower()


async def test_generate_with_real_store(store, generator):
    await store.ingest_message("u1", "My name is Clemens. I have two dogs named Holly and Benny.", "m1")
    result = await generator.generate_system_prompt_with_facts("u1", BASE + "\n\n## Examples:\nQ: hi")

    prompt = result.enhanced_prompt
    for name in ("Clemens", "Holly", "Benny"):
        assert name in prompt
    assert prompt.index("Clemens") < prompt.index("## Examples:")

    expected = await store.get_all_critical_facts("u1")
    assert generator.validate_fact_inclusion(prompt, expected).is_valid


# --- Validation ---


def test_validation_reports_missing_facts():
    generator = _generator_for(CLEMENS_FACTS)
    prompt = "Hello Clemens, how is Holly?"

    with pytest.warns(ValidationWarning, match="pet_names"):
        validation = generator.validate_fact_inclusion(prompt, CLEMENS_FACTS)

    assert not validation.is_valid
    assert validation.missing_facts == ["pet_names"]
    assert validation.present_facts == ["user_name"]


def test_validation_of_optional_facts():
    generator = _generator_for()
    facts = {
        "family_members": ["Sarah"],
        "work_info": {"workplace": "Google", "position": "engineer", "attributes": {"team": "x"}},
        "location_info": {"residence": {"name": "Berlin", "attributes": {}}},
    }
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        validation = generator.validate_fact_inclusion(
            "Family: Sarah. Work: Google (engineer). Residence: Berlin.", facts
        )
    assert validation.is_valid
    assert sorted(validation.present_facts) == ["family_members", "location_info", "work_info"]


def test_validation_ignores_empty_expectations():
    generator = _generator_for()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        validation = generator.validate_fact_inclusion("anything", {"pet_names": [], "user_name": None})
    assert validation.is_valid
    assert validation.present_facts == []


async def test_generate_test_prompt(store, generator):
    await store.ingest_message("u1", "My name is Clemens. I have two dogs named Holly and Benny.", "m1")
    report = await generator.generate_test_prompt("u1")

    assert report.validation.is_valid
    assert "[DEBUG INFO:" in report.prompt
    assert "Fact confidence: 100.0%" in report.prompt
    assert report.result.fact_confidence == 1.0
