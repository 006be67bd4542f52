"""Fact-aware prompt assembly.

Provides:
- FactAwarePromptGenerator: splices verified critical facts into a base prompt
- PromptOptions / PromptGenerationResult / FactValidationResult
"""

from factmem.prompts.fact_prompt import FactAwarePromptGenerator
from factmem.prompts.models import (
    FactValidationResult,
    PromptGenerationResult,
    PromptOptions,
)

__all__ = [
    "FactAwarePromptGenerator",
    "FactValidationResult",
    "PromptGenerationResult",
    "PromptOptions",
]
