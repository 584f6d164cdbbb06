import re
from typing import Dict, List, NamedTuple

AI_PHRASE_PATTERNS = {
    "en": [
        {
            "name": "Formal Connectors",
            "pattern": r"\b(furthermore|moreover|additionally|consequently|nevertheless|therefore)\b",
            "severity": "medium",
            "explanation": "Formal connector frequently overused in AI-generated text",
        },
        {
            "name": "Summary Phrases",
            "pattern": r"\b(in conclusion|in summary|to summarize|overall|in other words)\b",
            "severity": "medium",
            "explanation": "Summarising phrase typical of AI-generated text",
        },
        {
            "name": "Hedging Phrases",
            "pattern": r"(it is important to note|it should be noted|it is worth noting|as we can see|as mentioned)",
            "severity": "high",
            "explanation": "Hedging phrase common in AI-generated text",
        },
        {
            "name": "Enumeration Phrases",
            "pattern": r"(first and foremost|last but not least|on the other hand|in light of)",
            "severity": "low",
            "explanation": "Stock enumeration phrase common in AI-generated text",
        },
    ],
    "pt": [
        {
            "name": "Formal Connectors",
            "pattern": r"(além disso|no entanto|consequentemente|portanto)",
            "severity": "medium",
            "explanation": "Conector formal frequente em textos gerados por IA",
        },
        {
            "name": "Summary Phrases",
            "pattern": r"(em conclusão|em resumo|para resumir|em outras palavras)",
            "severity": "medium",
            "explanation": "Frase de resumo típica de textos gerados por IA",
        },
        {
            "name": "Hedging Phrases",
            "pattern": r"(é importante notar|vale notar|vale ressaltar|como mencionado|como podemos ver)",
            "severity": "high",
            "explanation": "Frase de ressalva comum em textos gerados por IA",
        },
        {
            "name": "Enumeration Phrases",
            "pattern": r"(em primeiro lugar|por último|por outro lado|à luz de)",
            "severity": "low",
            "explanation": "Frase de enumeração comum em textos gerados por IA",
        },
    ],
}

MESSAGES = {
    "en": {
        "low_vocabulary_diversity": "Low vocabulary diversity ({ratio:.1f}%)",
        "uniform_sentences": "Very uniform sentence lengths",
        "ai_phrases": "{count} AI-typical phrases found",
    },
    "pt": {
        "low_vocabulary_diversity": "Baixa diversidade vocabular ({ratio:.1f}%)",
        "uniform_sentences": "Comprimento de frases muito uniforme",
        "ai_phrases": "{count} frases típicas de IA encontradas",
    },
}


class TextMetrics(NamedTuple):
    word_count: int
    char_count: int
    sentence_count: int
    avg_word_length: float
    vocabulary_ratio: float
    sentence_variance: float


def extract_metrics(text: str) -> TextMetrics:
    words = [w for w in text.lower().split() if w]
    sentences = [s.strip() for s in re.split(r"[.!?]+", text) if s.strip()]

    word_count = len(words)
    avg_word_length = sum(len(w) for w in words) / word_count if word_count else 0.0
    vocabulary_ratio = len(set(words)) / word_count if word_count else 0.0

    if sentences:
        lengths = [len(s) for s in sentences]
        mean = sum(lengths) / len(lengths)
        variance = sum((n - mean) ** 2 for n in lengths) / len(lengths)
    else:
        variance = 0.0

    return TextMetrics(
        word_count=word_count,
        char_count=len(text),
        sentence_count=len(sentences),
        avg_word_length=avg_word_length,
        vocabulary_ratio=vocabulary_ratio,
        sentence_variance=variance,
    )


class TextSignalAnalyzer:
    """Rule-based AI-writing signal detector"""

    def __init__(self, patterns: Dict[str, List[Dict]] = None):
        self.patterns = patterns or AI_PHRASE_PATTERNS

    def analyze(self, text: str, language: str = "en") -> Dict[str, List[Dict]]:
        """
        Detect deterministic AI-writing signals in text

        Args:
            text: Text to inspect
            language: "pt" or "en"

        Returns:
            Dict with "indicators" ({type, description, severity}) and
            "suspiciousParts" ({text, score, reason}), strongest first
        """
        lang = language if language in self.patterns else "en"
        messages = MESSAGES[lang]
        metrics = extract_metrics(text)
        indicators = []
        suspicious_parts = []

        if metrics.vocabulary_ratio < 0.45 and metrics.word_count > 30:
            indicators.append({
                "type": "low_vocabulary_diversity",
                "description": messages["low_vocabulary_diversity"].format(ratio=metrics.vocabulary_ratio * 100),
                "severity": "high",
            })

        if metrics.sentence_variance < 80 and metrics.sentence_count > 3:
            indicators.append({
                "type": "uniform_sentences",
                "description": messages["uniform_sentences"],
                "severity": "medium",
            })

        sentences = re.split(r"(?<=[.!?])\s+", text)
        found = 0
        for pattern_info in self.patterns[lang]:
            for match in re.finditer(pattern_info["pattern"], text, re.IGNORECASE):
                found += 1
                context = match.group(0)
                for sentence in sentences:
                    if match.group(0).lower() in sentence.lower():
                        context = sentence.strip()
                        break

                if not any(p["text"] == context for p in suspicious_parts):
                    suspicious_parts.append({
                        "text": context,
                        "score": self._severity_score(pattern_info["severity"]),
                        "reason": pattern_info["explanation"],
                    })

        if found > 2:
            indicators.append({
                "type": "ai_phrases",
                "description": messages["ai_phrases"].format(count=found),
                "severity": "high" if found > 4 else "medium",
            })

        severity_order = {"high": 0, "medium": 1, "low": 2}
        indicators.sort(key=lambda x: severity_order[x["severity"]])
        suspicious_parts.sort(key=lambda x: -x["score"])

        return {"indicators": indicators, "suspiciousParts": suspicious_parts}

    @staticmethod
    def _severity_score(severity: str) -> int:
        return {"high": 85, "medium": 70, "low": 55}[severity]
