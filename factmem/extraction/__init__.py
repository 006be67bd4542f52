"""Pattern-based entity extraction.

Provides:
- extract_entities: utterance text -> list of CandidateEntity
- RULES: the ordered rule battery, each rule testable on its own
"""

from factmem.extraction.extractor import extract_entities
from factmem.extraction.rules import RULES, ExtractionRule

__all__ = ["RULES", "ExtractionRule", "extract_entities"]
