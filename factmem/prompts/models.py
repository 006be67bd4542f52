from pydantic import BaseModel, Field


class PromptOptions(BaseModel):
    include_debug_info: bool = False
    include_confidence_scores: bool = False
    max_fact_section_length: int | None = Field(default=None, gt=0)
    fetch_timeout: float | None = Field(default=None, gt=0)


class PromptTimings(BaseModel):
    fetch_ms: float = 0.0
    build_ms: float = 0.0
    total_ms: float = 0.0


class PromptGenerationResult(BaseModel):
    enhanced_prompt: str
    fact_confidence: float
    facts_included: list[str]
    timings: PromptTimings
    original_prompt_length: int
    enhanced_prompt_length: int
    degraded: bool = False


class FactValidationResult(BaseModel):
    is_valid: bool
    missing_facts: list[str]
    present_facts: list[str]


class PromptSelfTest(BaseModel):
    prompt: str
    validation: FactValidationResult
    result: PromptGenerationResult
