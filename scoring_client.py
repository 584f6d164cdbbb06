import re
import json
import math
import time
import asyncio
import logging
from typing import Dict, List, NamedTuple, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from config import ScoringSettings
from errors import UpstreamUnavailable, ValidationError
from text_signals import TextSignalAnalyzer

logger = logging.getLogger(__name__)

# USD per 1K tokens, advisory only
PRICING = {
    "gemini-2.5-flash": {"input": 0.0003, "output": 0.0025},
    "gemini-2.0-flash": {"input": 0.0001, "output": 0.0004},
    "gemini-2.0-flash-lite": {"input": 0.000075, "output": 0.0003},
}

TRANSIENT_ERRORS = (
    asyncio.TimeoutError,
    google_exceptions.DeadlineExceeded,
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
    google_exceptions.ResourceExhausted,
    ConnectionError,
)

PROMPTS = {
    "pt": """Você é um especialista em detecção de texto gerado por IA. Analise o texto e determine se foi escrito por um humano ou gerado por inteligência artificial.

RETORNE APENAS UM JSON VÁLIDO com esta estrutura exata:
{{
  "score": número de 0 a 100 (100 = definitivamente IA),
  "reasoning": "explicação concisa em português",
  "patterns": ["padrão", "padrão"] (no máximo 5 padrões específicos encontrados),
  "suspiciousParts": [{{"text": "trecho suspeito", "reason": "motivo", "score": número}}]
}}

Texto:
\"\"\"{text}\"\"\"""",
    "en": """You are an expert in AI-generated text detection. Analyze the text and determine whether it was written by a human or generated by artificial intelligence.

RETURN ONLY A VALID JSON with this exact structure:
{{
  "score": number from 0 to 100 (100 = definitely AI),
  "reasoning": "concise explanation in English",
  "patterns": ["pattern", "pattern"] (max 5 specific patterns found),
  "suspiciousParts": [{{"text": "suspicious excerpt", "reason": "reason", "score": number}}]
}}

Text:
\"\"\"{text}\"\"\"""",
}


class MalformedResponse(Exception):
    """Provider answered, but not with the JSON document we asked for."""


class ScoreResult(NamedTuple):
    ai_score: float
    indicators: List[Dict]
    explanation: str
    suspicious_parts: List[Dict]
    processing_time_ms: int
    tokens_used: int = 0
    estimated_cost: float = 0.0


def estimate_tokens(text: str) -> int:
    # ~4 chars/token for English, ~6 for Portuguese
    return math.ceil(len(text) / 5)


def estimate_cost(input_tokens: int, output_tokens: int, model: str) -> float:
    pricing = PRICING.get(model)
    if not pricing:
        return 0.0
    return (input_tokens / 1000) * pricing["input"] + (output_tokens / 1000) * pricing["output"]


def _clamp_score(value) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(score):
        return 0.0
    return max(0.0, min(100.0, score))


class ScoringClient:
    """Gemini-powered AI-text scoring client"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        settings: ScoringSettings = None,
        model=None,
        signals: TextSignalAnalyzer = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or ScoringSettings()
        self.signals = signals or TextSignalAnalyzer()
        self._sleep = sleep

        if model is None:
            if not api_key:
                raise ValueError("Gemini API key is required")
            genai.configure(api_key=api_key)
            model = genai.GenerativeModel(self.settings.model)
            logger.info(f"Scoring client initialized with Gemini model {self.settings.model}")
        self.model = model

    async def score(self, text: str, language: str) -> ScoreResult:
        """
        Score how likely a text is to be AI-generated

        Args:
            text: Text to score, at most max_input_length characters
            language: "pt" or "en"

        Returns:
            ScoreResult with the provider's score in [0, 100] and normalized details

        Raises:
            ValidationError: text exceeds the input ceiling
            UpstreamUnavailable: provider failed after all retries, or rejected the request
        """
        if len(text) > self.settings.max_input_length:
            raise ValidationError(
                f"Text must be at most {self.settings.max_input_length} characters"
            )

        prompt = PROMPTS.get(language, PROMPTS["en"]).format(text=text)
        started = time.monotonic()
        attempts = self.settings.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                response = await asyncio.wait_for(
                    self.model.generate_content_async(
                        prompt,
                        generation_config={
                            "temperature": 0,
                            "max_output_tokens": self.settings.max_output_tokens,
                            "response_mime_type": "application/json",
                        },
                    ),
                    timeout=self.settings.timeout_seconds,
                )
                parsed = self._parse(response)
            except (*TRANSIENT_ERRORS, MalformedResponse) as e:
                logger.warning(f"Scoring attempt {attempt}/{attempts} failed: {type(e).__name__}: {e}")
                if attempt < attempts:
                    await self._sleep(self.settings.backoff_seconds * 2 ** (attempt - 1))
                continue
            except google_exceptions.GoogleAPICallError as e:
                # Deterministic rejection (bad argument, auth); retrying cannot help.
                logger.error(f"Scoring request rejected by provider: {e}")
                raise UpstreamUnavailable()

            elapsed_ms = int((time.monotonic() - started) * 1000)
            return self._build_result(text, language, parsed, response, elapsed_ms)

        raise UpstreamUnavailable()

    def _parse(self, response) -> Dict:
        try:
            content = response.text
        except (ValueError, AttributeError) as e:
            # .text raises ValueError when the candidate was blocked or empty
            raise MalformedResponse(f"No text in response: {e}")
        if not content or not content.strip():
            raise MalformedResponse("Empty response from provider")

        content = re.sub(r"^```(?:json)?\s*|\s*```$", "", content.strip())
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"Invalid JSON from provider: {e}")
        if not isinstance(parsed, dict) or "score" not in parsed:
            raise MalformedResponse("Provider JSON has no score")
        return parsed

    def _build_result(self, text: str, language: str, parsed: Dict, response, elapsed_ms: int) -> ScoreResult:
        signals = self.signals.analyze(text, language)
        indicators = list(signals["indicators"])
        for pattern in (parsed.get("patterns") or [])[:5]:
            indicators.append({
                "type": "ai_pattern",
                "description": (f"Padrão detectado: {pattern}" if language == "pt" else f"Pattern detected: {pattern}"),
                "severity": "medium",
            })

        provider_parts = []
        for part in (parsed.get("suspiciousParts") or [])[:3]:
            if not isinstance(part, dict) or not part.get("text"):
                continue
            provider_parts.append({
                "text": str(part["text"]),
                "score": _clamp_score(part.get("score")),
                "reason": str(part.get("reason") or ""),
            })
        suspicious_parts = (provider_parts + signals["suspiciousParts"])[:5]

        usage = getattr(response, "usage_metadata", None)
        input_tokens = getattr(usage, "prompt_token_count", None) or estimate_tokens(text)
        output_tokens = getattr(usage, "candidates_token_count", None) or 0
        cost = estimate_cost(input_tokens, output_tokens, self.settings.model)
        logger.info(
            f"Scored {len(text)} chars in {elapsed_ms}ms, ~{input_tokens + output_tokens} tokens, ~${cost:.6f}"
        )

        return ScoreResult(
            ai_score=round(_clamp_score(parsed.get("score")), 2),
            indicators=indicators,
            explanation=str(parsed.get("reasoning") or "Analysis completed"),
            suspicious_parts=suspicious_parts,
            processing_time_ms=elapsed_ms,
            tokens_used=input_tokens + output_tokens,
            estimated_cost=cost,
        )
