from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_path: str = "data/factmem.db"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True
    log_file: str = "data/factmem.log"

    # Fact cache (per store instance)
    fact_cache_max_users: int = 1024
    fact_cache_ttl_seconds: float = 300.0

    # Extraction
    extraction_max_chars: int = 10_000
    extraction_base_confidence: float = 0.8

    # Prompt generation
    prompt_fetch_timeout: float | None = 2.0  # seconds; None disables the timeout
    prompt_include_confidence_scores: bool = False

    @field_validator("extraction_base_confidence")
    @classmethod
    def check_confidence(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("extraction_base_confidence must be in (0, 1]")
        return v

    @field_validator("fact_cache_max_users", "extraction_max_chars")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    model_config = {"env_file": ".env", "env_prefix": "FACTMEM_", "extra": "ignore"}
