import os
import secrets
import logging
from typing import Dict

from dotenv import load_dotenv
from pydantic import BaseModel, model_validator

load_dotenv()

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("pt", "en")


def _secret_from_env(name: str) -> str:
    secret = os.getenv(name)
    if not secret:
        logger.warning(
            "%s not set in environment! Using generated key (not persistent across restarts)", name
        )
        return secrets.token_urlsafe(32)
    return secret


class PlanAllowances(BaseModel):
    """Monthly credit allowance per plan."""

    FREE: int = 10
    PRO: int = 1000
    ENTERPRISE: int = 10000

    def for_plan(self, plan) -> int:
        name = getattr(plan, "value", plan)
        return getattr(self, str(name), self.FREE)

    def as_dict(self) -> Dict[str, int]:
        return self.model_dump()


class ConfidenceThresholds(BaseModel):
    """Cut points mapping an AI score in [0, 100] onto a confidence band.

    Scores >= high are HIGH, scores >= medium are MEDIUM, everything else LOW.
    """

    high: float = 70
    medium: float = 30
    ai_generated: float = 70

    @model_validator(mode="after")
    def check_ordering(self):
        if not 0 <= self.medium <= self.high <= 100:
            raise ValueError("thresholds must satisfy 0 <= medium <= high <= 100")
        if not 0 <= self.ai_generated <= 100:
            raise ValueError("ai_generated threshold must be within [0, 100]")
        return self


class ScoringSettings(BaseModel):
    model: str = "gemini-2.5-flash"
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_input_length: int = 10000
    max_output_tokens: int = 800


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./truecheck.db")

    JWT_SECRET = _secret_from_env("JWT_SECRET")
    JWT_REFRESH_SECRET = _secret_from_env("JWT_REFRESH_SECRET")
    JWT_ALGORITHM = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15"))
    REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))

    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    SCORING_TIMEOUT_SECONDS = float(os.getenv("SCORING_TIMEOUT_SECONDS", "30"))
    SCORING_MAX_ATTEMPTS = int(os.getenv("SCORING_MAX_ATTEMPTS", "3"))
    SCORING_BACKOFF_SECONDS = float(os.getenv("SCORING_BACKOFF_SECONDS", "1.0"))

    CRON_SECRET = os.getenv("CRON_SECRET", "")
    DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "pt")

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    MIN_TEXT_LENGTH = 50
    MAX_TEXT_LENGTH = 10000

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENVIRONMENT.lower() == "production"

    @classmethod
    def scoring(cls) -> ScoringSettings:
        return ScoringSettings(
            model=cls.GEMINI_MODEL,
            timeout_seconds=cls.SCORING_TIMEOUT_SECONDS,
            max_attempts=cls.SCORING_MAX_ATTEMPTS,
            backoff_seconds=cls.SCORING_BACKOFF_SECONDS,
            max_input_length=cls.MAX_TEXT_LENGTH,
        )
