"""Fact-aware system prompt generation.

Loads the user's critical facts from the store, renders them as a block of
exact names, and splices that block into an externally owned base prompt
ahead of any examples section. Generation never raises: a failed or slow
fact lookup produces the base prompt plus a section telling the model to ask
for the user's name.
"""

from __future__ import annotations

import asyncio
import logging
import time
import warnings
from collections.abc import Mapping
from typing import Any

from factmem.database.backend import utcnow
from factmem.facts.exceptions import ValidationWarning
from factmem.facts.store import FactStore
from factmem.prompts.models import (
    FactValidationResult,
    PromptGenerationResult,
    PromptOptions,
    PromptSelfTest,
    PromptTimings,
)

logger = logging.getLogger(__name__)

FACT_SECTION_HEADER = "## CRITICAL USER FACTS (ALWAYS USE THESE EXACT NAMES):"
EXAMPLE_MARKERS = ("## Examples:", "## Example:", "Examples:", "Example:")
TRUNCATION_NOTE = "\n[FACT SECTION TRUNCATED TO FIT LIMIT]\n"
NAME_NOT_SET = "[NOT SET - REQUEST NAME]"
PETS_NOT_SET = "[NONE SPECIFIED]"

REQUIRED_FACTS = ("user_name", "pet_names")
OPTIONAL_FACTS = ("family_members", "work_info", "location_info")
OPTIONAL_FACT_WEIGHT = 0.2

TEST_BASE_PROMPT = (
    "You are a helpful AI assistant. Respond naturally and use the user's name when appropriate."
)

_LOCATION_LABELS = {"residence": "Residence", "origin": "Origin", "work": "Work location"}


def calculate_fact_confidence(facts: Mapping[str, Any]) -> float:
    """Required facts weigh 1.0 each; optional ones add 0.2 when present."""
    present = 0.0
    total = 0.0
    for key in REQUIRED_FACTS:
        total += 1.0
        if facts.get(key):
            present += 1.0
    for key in OPTIONAL_FACTS:
        if facts.get(key):
            present += OPTIONAL_FACT_WEIGHT
            total += OPTIONAL_FACT_WEIGHT
    return present / total if total else 0.0


def _work_line(work: Any) -> str:
    if not isinstance(work, Mapping):
        return f"- Work: {work}"
    workplace = work.get("workplace")
    position = work.get("position")
    if workplace and position:
        line = f"- Work: {workplace} ({position})"
    else:
        line = f"- Work: {workplace or position or 'Unknown workplace'}"
    if industry := work.get("industry"):
        line += f", industry: {industry}"
    return line


def _location_lines(locations: Any) -> list[str]:
    if not isinstance(locations, Mapping):
        return [f"- Location: {locations}"]
    lines = []
    for kind, details in locations.items():
        label = _LOCATION_LABELS.get(kind, kind.replace("_", " ").capitalize())
        name = details.get("name") if isinstance(details, Mapping) else details
        lines.append(f"- {label}: {name}")
    return lines


def build_fact_section(facts: Mapping[str, Any], options: PromptOptions | None = None) -> str:
    options = options or PromptOptions()
    lines = ["", "", FACT_SECTION_HEADER]

    user_name = facts.get("user_name")
    lines.append(f"- User's name: {user_name or NAME_NOT_SET}")

    pet_names = facts.get("pet_names")
    lines.append(f"- Pet names: {', '.join(pet_names) if pet_names else PETS_NOT_SET}")

    if family := facts.get("family_members"):
        lines.append(f"- Family members: {', '.join(family)}")
    if work := facts.get("work_info"):
        lines.append(_work_line(work))
    if locations := facts.get("location_info"):
        lines.extend(_location_lines(locations))

    if options.include_confidence_scores:
        lines.append(f"- Fact confidence: {calculate_fact_confidence(facts) * 100:.1f}%")

    lines.append("")
    lines.append(
        "CRITICAL INSTRUCTION: You MUST use the exact names listed above. "
        "Never guess or use different names. If you don't know a name, ask for it."
    )
    if not user_name:
        lines.append("The user's name is not known yet: ask for the user's name early in the conversation.")

    if options.include_debug_info:
        lines.append("")
        lines.append(f"[DEBUG INFO: {len(facts)} facts loaded at {utcnow().isoformat()}]")

    return "\n".join(lines) + "\n"


def build_error_fallback_section(reason: str) -> str:
    return (
        "\n\n## FACT RETRIEVAL ERROR:\n"
        f"Unable to load user facts: {reason}\n"
        "IMPORTANT: Ask for the user's name and any important information "
        "at the start of the conversation.\n"
    )


def insert_fact_section(base_prompt: str, section: str, max_length: int | None = None) -> str:
    """Place the section before the earliest example marker, else at the end."""
    if max_length is not None and len(section) > max_length:
        section = section[: max(0, max_length - len(TRUNCATION_NOTE))] + TRUNCATION_NOTE

    insert_at = len(base_prompt)
    for marker in EXAMPLE_MARKERS:
        index = base_prompt.find(marker)
        if index != -1 and index < insert_at:
            insert_at = index
    return base_prompt[:insert_at] + section + base_prompt[insert_at:]


def _fact_needles(key: str, value: Any) -> list[str]:
    """Literal strings that must appear in a prompt for the fact to count as present."""
    if isinstance(value, str):
        return [value]
    if key == "location_info" and isinstance(value, Mapping):
        return [
            str(d.get("name")) if isinstance(d, Mapping) else str(d)
            for d in value.values()
        ]
    if isinstance(value, Mapping):
        return [str(v) for k, v in value.items() if k != "attributes" and v]
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value]
    return [str(value)]


class FactAwarePromptGenerator:
    def __init__(self, store: FactStore, default_options: PromptOptions | None = None):
        self._store = store
        self._default_options = default_options or PromptOptions()

    async def _fetch_facts(self, user_id: str, timeout: float | None) -> dict[str, Any]:
        if timeout is None:
            return await self._store.get_all_critical_facts(user_id)
        return await asyncio.wait_for(self._store.get_all_critical_facts(user_id), timeout=timeout)

    async def generate_system_prompt_with_facts(
        self,
        user_id: str,
        base_prompt: str,
        options: PromptOptions | None = None,
    ) -> PromptGenerationResult:
        """Build the enhanced prompt. Falls back to base prompt + ask-for-name section on any error."""
        options = options or self._default_options
        base_prompt = base_prompt if isinstance(base_prompt, str) else ""
        start = time.monotonic()
        fetch_ms = 0.0

        try:
            facts = await self._fetch_facts(user_id, options.fetch_timeout)
            fetch_ms = (time.monotonic() - start) * 1000
            section = build_fact_section(facts, options)
            enhanced = insert_fact_section(base_prompt, section, options.max_fact_section_length)
        except TimeoutError:
            logger.warning(
                "prompt.facts.timeout: lookup exceeded %.0fms",
                (options.fetch_timeout or 0) * 1000,
                extra={"user_id": user_id},
            )
            return self._fallback(base_prompt, "fact lookup timed out", start)
        except Exception as e:
            logger.warning(
                "prompt.facts.fallback: %s", e, extra={"user_id": user_id}, exc_info=True
            )
            return self._fallback(base_prompt, type(e).__name__, start)

        total_ms = (time.monotonic() - start) * 1000
        result = PromptGenerationResult(
            enhanced_prompt=enhanced,
            fact_confidence=calculate_fact_confidence(facts),
            facts_included=list(facts),
            timings=PromptTimings(fetch_ms=fetch_ms, build_ms=total_ms - fetch_ms, total_ms=total_ms),
            original_prompt_length=len(base_prompt),
            enhanced_prompt_length=len(enhanced),
        )
        logger.debug(
            "prompt.facts.generated: %d facts, confidence=%.2f (%.1fms)",
            len(facts),
            result.fact_confidence,
            total_ms,
            extra={"user_id": user_id},
        )
        return result

    def _fallback(self, base_prompt: str, reason: str, start: float) -> PromptGenerationResult:
        enhanced = base_prompt + build_error_fallback_section(reason)
        total_ms = (time.monotonic() - start) * 1000
        return PromptGenerationResult(
            enhanced_prompt=enhanced,
            fact_confidence=0.0,
            facts_included=[],
            timings=PromptTimings(fetch_ms=total_ms, total_ms=total_ms),
            original_prompt_length=len(base_prompt),
            enhanced_prompt_length=len(enhanced),
            degraded=True,
        )

    def validate_fact_inclusion(
        self, prompt: str, expected_facts: Mapping[str, Any]
    ) -> FactValidationResult:
        """Check that every expected fact value appears verbatim in the prompt.

        Missing facts emit a ValidationWarning; nothing here blocks generation.
        """
        present: list[str] = []
        missing: list[str] = []
        for key, value in expected_facts.items():
            if not value:
                continue
            needles = _fact_needles(key, value)
            if all(needle in prompt for needle in needles):
                present.append(key)
            else:
                missing.append(key)

        if missing:
            logger.warning("prompt.facts.missing: %s", missing)
            warnings.warn(
                f"facts missing from prompt: {', '.join(missing)}",
                ValidationWarning,
                stacklevel=2,
            )
        return FactValidationResult(is_valid=not missing, missing_facts=missing, present_facts=present)

    async def generate_test_prompt(self, user_id: str) -> PromptSelfTest:
        """Build a debug prompt for the user and validate it against the stored facts."""
        result = await self.generate_system_prompt_with_facts(
            user_id,
            TEST_BASE_PROMPT,
            PromptOptions(include_debug_info=True, include_confidence_scores=True),
        )
        expected = await self._store.get_all_critical_facts(user_id)
        validation = self.validate_fact_inclusion(result.enhanced_prompt, expected)
        return PromptSelfTest(prompt=result.enhanced_prompt, validation=validation, result=result)
