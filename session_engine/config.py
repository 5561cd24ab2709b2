import os
from functools import lru_cache
from typing import Dict, List, Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    openai_api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    model: str = Field("gpt-4o-mini", alias="SESSION_ENGINE_MODEL")
    temperature: float = Field(0.7, alias="SESSION_ENGINE_TEMPERATURE")
    timeout_ms: int = Field(60000, alias="SESSION_ENGINE_TIMEOUT_MS")
    max_retries: int = Field(3, ge=0, alias="SESSION_ENGINE_MAX_RETRIES")
    initial_delay_ms: int = Field(1000, ge=0, alias="SESSION_ENGINE_INITIAL_DELAY_MS")
    max_delay_ms: int = Field(30000, ge=0, alias="SESSION_ENGINE_MAX_DELAY_MS")

    base_capacity: int = Field(4, ge=1, alias="SESSION_ENGINE_BASE_CAPACITY")
    moderate_warning_percent: float = Field(70.0, alias="SESSION_ENGINE_MODERATE_WARNING_PERCENT")
    high_warning_percent: float = Field(90.0, alias="SESSION_ENGINE_HIGH_WARNING_PERCENT")

    fuzzy_overlap_ratio: float = Field(0.5, gt=0.0, le=1.0, alias="SESSION_ENGINE_FUZZY_OVERLAP_RATIO")
    stop_word_max_length: int = Field(3, ge=0, alias="SESSION_ENGINE_STOP_WORD_MAX_LENGTH")
    fast_answer_ms: int = Field(5000, ge=0, alias="SESSION_ENGINE_FAST_ANSWER_MS")
    sandbox_baseline_ms: Dict[str, int] = Field(
        default_factory=lambda: {
            "matching": 4000,
            "fill_in_blank": 5000,
            "sequencing": 6000,
            "diagram_build": 8000,
            "branching": 8000,
        },
        alias="SESSION_ENGINE_SANDBOX_BASELINE_MS",
    )
    sandbox_element_ms: int = Field(3500, ge=0, alias="SESSION_ENGINE_SANDBOX_ELEMENT_MS")
    reading_words_per_second: float = Field(3.0, gt=0.0, alias="SESSION_ENGINE_READING_WPS")

    synthesis_intervals: List[int] = Field(default_factory=lambda: [5, 6], alias="SESSION_ENGINE_SYNTHESIS_INTERVALS")
    synthesis_min_concepts: int = Field(3, ge=1, alias="SESSION_ENGINE_SYNTHESIS_MIN_CONCEPTS")
    synthesis_max_concepts: int = Field(5, ge=1, alias="SESSION_ENGINE_SYNTHESIS_MAX_CONCEPTS")
    synthesis_model: Optional[str] = Field(None, alias="SESSION_ENGINE_SYNTHESIS_MODEL")

    placement_mode: Literal["off", "advisor"] = Field("advisor", alias="SESSION_ENGINE_PLACEMENT_MODE")
    placement_model: Optional[str] = Field(None, alias="SESSION_ENGINE_PLACEMENT_MODEL")
    placement_confidence_threshold: float = Field(0.6, ge=0.0, le=1.0, alias="SESSION_ENGINE_PLACEMENT_CONFIDENCE")
    sandbox_min_count: int = Field(1, ge=0, alias="SESSION_ENGINE_SANDBOX_MIN")
    sandbox_max_count: int = Field(3, ge=1, alias="SESSION_ENGINE_SANDBOX_MAX")
    sandbox_min_capacity: int = Field(2, ge=1, alias="SESSION_ENGINE_SANDBOX_MIN_CAPACITY")

    usefulness_min_samples: int = Field(5, ge=1, alias="SESSION_ENGINE_USEFULNESS_MIN_SAMPLES")
    questions_per_new_concept: int = Field(2, ge=0, alias="SESSION_ENGINE_QUESTIONS_PER_NEW_CONCEPT")
    pretest_checks: bool = Field(False, alias="SESSION_ENGINE_PRETEST_CHECKS")
    strict_state: bool = Field(True, alias="SESSION_ENGINE_STRICT_STATE")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        populate_by_name = True


@lru_cache
def get_settings() -> Settings:
    try:
        settings = Settings()  # type: ignore[call-arg]
        if settings.openai_api_key and not os.getenv("OPENAI_API_KEY"):
            os.environ["OPENAI_API_KEY"] = settings.openai_api_key
        return settings
    except ValidationError as exc:
        raise RuntimeError(f"Invalid session engine configuration: {exc}") from exc
