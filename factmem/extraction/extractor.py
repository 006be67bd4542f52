"""Deterministic extraction of user facts from a single utterance.

No LLM calls: the ordered regex battery in rules.py is applied to every
non-question sentence of the message. Never raises; anything that is not a
non-empty string yields [].
"""

from __future__ import annotations

import logging
import re
import unicodedata

from factmem.extraction.rules import ABBREVIATIONS, BASE_CONFIDENCE, RULES, ExtractionRule
from factmem.models import CandidateEntity

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 10_000

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?？])\s{1,20}|\n{1,20}")
_ABBREVIATION_END = re.compile(r"\b(?:" + "|".join(ABBREVIATIONS) + r")\.$")
_QUESTION_START = re.compile(
    r"^(?:what|who|where|when|why|how|which|whose|is|am\s+i|"
    r"do(?:es)?\s+(?:you|i)|did\s+(?:you|i)|can\s+you|could\s+you|would\s+you|"
    r"will\s+you|are\s+you|have\s+you)\b",
    re.IGNORECASE,
)


def is_question(sentence: str) -> bool:
    stripped = sentence.strip()
    return stripped.endswith(("?", "？")) or bool(_QUESTION_START.match(stripped))


def split_sentences(text: str) -> list[str]:
    sentences: list[str] = []
    for piece in _SENTENCE_BOUNDARY.split(text):
        if not piece or not piece.strip():
            continue
        if sentences and _ABBREVIATION_END.search(sentences[-1]):
            # "St. Louis" is one sentence
            sentences[-1] = sentences[-1] + " " + piece
        else:
            sentences.append(piece)
    return sentences


def extract_entities(
    text: object,
    *,
    max_chars: int = DEFAULT_MAX_CHARS,
    confidence: float = BASE_CONFIDENCE,
    rules: list[ExtractionRule] | None = None,
) -> list[CandidateEntity]:
    """Extract typed candidate entities from one message.

    Questions are skipped sentence by sentence, so "What is your name?"
    yields nothing while "What's up? I'm Sarah" still yields the name.
    Input beyond max_chars is ignored.
    """
    if not isinstance(text, str) or not text:
        return []

    text = unicodedata.normalize("NFC", text[:max_chars])
    sentences = [s for s in split_sentences(text) if not is_question(s)]
    if not sentences:
        return []

    entities: list[CandidateEntity] = []
    for rule in rules if rules is not None else RULES:
        for sentence in sentences:
            try:
                entities.extend(rule.apply(sentence, confidence))
            except Exception:
                # A broken rule must not cost the other rules their matches
                logger.warning("extraction.rule_failed: %s", rule.name, exc_info=True)

    if entities:
        logger.debug(
            "extraction.done: %d candidates",
            len(entities),
            extra={"types": sorted({e.type for e in entities})},
        )
    return entities
