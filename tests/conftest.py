import os

# Must be set before any application module reads its settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-access-secret"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["GEMINI_API_KEY"] = ""
os.environ["ENVIRONMENT"] = "development"

import json
import asyncio
from datetime import datetime
from types import SimpleNamespace

import pytest

from config import PlanAllowances, ScoringSettings
from credit_ledger import CreditLedger
from database import SessionLocal, engine
from models import Base, CreditReason, CreditTransaction, Plan, Role, User, utcnow
from scoring_client import ScoringClient

SAMPLE_TEXT = (
    "Furthermore, it is important to note that the rapid adoption of new tools "
    "has changed how teams collaborate. Moreover, the results are consistent."
)


class FakeResponse:
    def __init__(self, text, prompt_tokens=120, output_tokens=60):
        self.text = text
        self.usage_metadata = SimpleNamespace(
            prompt_token_count=prompt_tokens, candidates_token_count=output_tokens
        )


class FakeModel:
    """Stands in for genai.GenerativeModel; replays scripted outcomes in order.

    An outcome is a dict (sent back as JSON), a raw string, or an exception to raise.
    The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [{"score": 50}]
        self.calls = 0
        self.prompts = []

    async def generate_content_async(self, prompt, generation_config=None):
        self.prompts.append(prompt)
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, str):
            return FakeResponse(outcome)
        return FakeResponse(json.dumps(outcome))


class HangingModel:
    """Never answers within any reasonable timeout."""

    def __init__(self, delay=10):
        self.delay = delay
        self.calls = 0

    async def generate_content_async(self, prompt, generation_config=None):
        self.calls += 1
        await asyncio.sleep(self.delay)


def provider_answer(score, **extra):
    answer = {
        "score": score,
        "reasoning": "Uniform structure and formal connectors.",
        "patterns": ["formal connectors"],
        "suspiciousParts": [{"text": "Furthermore", "reason": "stock connector", "score": 80}],
    }
    answer.update(extra)
    return answer


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def ledger(session_factory):
    return CreditLedger(session_factory, PlanAllowances())


@pytest.fixture
def make_user(session_factory):
    counter = {"n": 0}

    def _make(credits=10, plan=Plan.FREE, role=Role.USER, created_at=None,
              credits_reset_at=None, current_period_end=None, email=None, factory=None):
        counter["n"] += 1
        created_at = created_at or utcnow()
        with (factory or session_factory)() as db:
            user = User(
                email=email or f"user{counter['n']}@example.com",
                plan=plan,
                role=role,
                credits=credits,
                created_at=created_at,
                credits_reset_at=credits_reset_at or created_at,
                stripe_current_period_end=current_period_end,
            )
            if credits:
                user.credit_transactions.append(
                    CreditTransaction(delta=credits, reason=CreditReason.GRANT, note="seed")
                )
            db.add(user)
            db.commit()
            return user.id

    return _make


@pytest.fixture
def make_scorer():
    def _make(model, **overrides):
        settings = ScoringSettings(**{"backoff_seconds": 0, "timeout_seconds": 1, **overrides})
        return ScoringClient(settings=settings, model=model)

    return _make


def get_user(user_id) -> User:
    with SessionLocal() as db:
        user = db.get(User, user_id)
        db.expunge(user)
        return user


def at(*args) -> datetime:
    return datetime(*args)
