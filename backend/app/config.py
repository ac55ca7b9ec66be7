import os
from datetime import date
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

DEFAULT_SYNC_SKIP_PATTERNS = [
    "syllabus",
    "honor code",
    "fee",
    "supply",
    "registration",
    "course info",
    "welcome",
    "introduction",
    "orientation",
    "in class",
    "in-class",
    "roll call",
    "attendance",
    "class discussion",
    "class activity",
    "classroom",
    "class work",
    "(continued)",
]


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="STUDYFLOW_DATABASE_URL")
    database_pool_size: int = Field(10, alias="STUDYFLOW_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="STUDYFLOW_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="STUDYFLOW_DATABASE_ECHO")
    school_timezone: str = Field("America/New_York", alias="STUDYFLOW_SCHOOL_TIMEZONE")
    stuck_undo_seconds: float = Field(15.0, ge=0, alias="STUDYFLOW_STUCK_UNDO_SECONDS")
    bible_block_minutes: int = Field(20, ge=1, alias="STUDYFLOW_BIBLE_BLOCK_MINUTES")
    completion_points: int = Field(10, ge=0, alias="STUDYFLOW_COMPLETION_POINTS")
    conflict_retry_limit: int = Field(3, ge=1, alias="STUDYFLOW_CONFLICT_RETRY_LIMIT")
    school_year_start: Optional[date] = Field(None, alias="STUDYFLOW_SCHOOL_YEAR_START")
    sync_skip_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SYNC_SKIP_PATTERNS),
        alias="STUDYFLOW_SYNC_SKIP_PATTERNS",
    )
    canvas_base_url: Optional[str] = Field(None, alias="STUDYFLOW_CANVAS_BASE_URL")
    canvas_tokens: Dict[str, str] = Field(default_factory=dict, alias="STUDYFLOW_CANVAS_TOKENS")
    canvas_timeout_seconds: float = Field(20.0, alias="STUDYFLOW_CANVAS_TIMEOUT_SECONDS")
    parent_email: Optional[str] = Field(None, alias="STUDYFLOW_PARENT_EMAIL")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc
