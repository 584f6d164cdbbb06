import asyncio

import pytest
from google.api_core import exceptions as google_exceptions

from conftest import SAMPLE_TEXT, FakeModel, HangingModel, provider_answer
from errors import UpstreamUnavailable, ValidationError
from scoring_client import ScoringClient, estimate_cost, estimate_tokens


def run(coro):
    return asyncio.run(coro)


def test_score_normalizes_provider_answer(make_scorer):
    model = FakeModel(provider_answer(150, suspiciousParts=[
        {"text": "Moreover, the results", "reason": "connector", "score": -5},
        {"reason": "missing text"},
    ]))

    result = run(make_scorer(model).score(SAMPLE_TEXT, "en"))

    assert result.ai_score == 100
    assert result.explanation == "Uniform structure and formal connectors."
    assert {"type": "ai_pattern", "description": "Pattern detected: formal connectors",
            "severity": "medium"} in result.indicators
    assert result.suspicious_parts[0] == {"text": "Moreover, the results", "reason": "connector", "score": 0.0}
    assert all(part.get("text") for part in result.suspicious_parts)
    assert len(result.suspicious_parts) <= 5
    assert result.tokens_used == 180
    assert model.calls == 1


def test_portuguese_prompt_and_descriptions(make_scorer):
    model = FakeModel(provider_answer(40))

    result = run(make_scorer(model).score("Além disso, " + SAMPLE_TEXT, "pt"))

    assert "Você é um especialista" in model.prompts[0]
    assert any(i["description"] == "Padrão detectado: formal connectors" for i in result.indicators)


def test_code_fenced_json_is_accepted(make_scorer):
    model = FakeModel('```json\n{"score": 12, "reasoning": "Personal tone"}\n```')

    result = run(make_scorer(model).score(SAMPLE_TEXT, "en"))

    assert result.ai_score == 12
    assert result.explanation == "Personal tone"


def test_transient_failures_are_retried(make_scorer):
    model = FakeModel(
        google_exceptions.ServiceUnavailable("overloaded"),
        google_exceptions.TooManyRequests("slow down"),
        provider_answer(77),
    )

    result = run(make_scorer(model).score(SAMPLE_TEXT, "en"))

    assert result.ai_score == 77
    assert model.calls == 3


def test_malformed_answer_is_retried(make_scorer):
    model = FakeModel("I think this is AI written", provider_answer(61))

    result = run(make_scorer(model).score(SAMPLE_TEXT, "en"))

    assert result.ai_score == 61
    assert model.calls == 2


def test_timeouts_exhaust_retries(make_scorer):
    model = HangingModel()
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    scorer = ScoringClient(
        settings=make_scorer(model, timeout_seconds=0.01).settings.model_copy(update={"backoff_seconds": 0.5}),
        model=model,
        sleep=fake_sleep,
    )

    with pytest.raises(UpstreamUnavailable):
        run(scorer.score(SAMPLE_TEXT, "en"))

    assert model.calls == 3
    assert slept == [0.5, 1.0]


def test_client_errors_are_not_retried(make_scorer):
    model = FakeModel(google_exceptions.InvalidArgument("bad request"))

    with pytest.raises(UpstreamUnavailable):
        run(make_scorer(model).score(SAMPLE_TEXT, "en"))

    assert model.calls == 1


def test_input_ceiling_is_enforced_before_calling_out(make_scorer):
    model = FakeModel(provider_answer(50))

    with pytest.raises(ValidationError):
        run(make_scorer(model, max_input_length=100).score("x" * 101, "en"))

    assert model.calls == 0


def test_missing_api_key_is_rejected():
    with pytest.raises(ValueError):
        ScoringClient(api_key=None)


def test_estimates_are_advisory():
    assert estimate_tokens("a" * 10) == 2
    assert estimate_tokens("a" * 11) == 3
    assert estimate_cost(1000, 1000, "gemini-2.0-flash") == pytest.approx(0.0005)
    assert estimate_cost(1000, 1000, "unknown-model") == 0.0
