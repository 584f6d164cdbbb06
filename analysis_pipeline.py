import asyncio
import logging
import math
from typing import Dict, Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config import ConfidenceThresholds, SUPPORTED_LANGUAGES, Settings
from credit_ledger import CreditLedger, Reservation
from errors import (
    AppError,
    InsufficientCredits,
    InternalError,
    NotFound,
    PersistenceError,
    ValidationError,
)
from models import Analysis, Confidence, utcnow
from scoring_client import ScoreResult, ScoringClient
from text_signals import extract_metrics

logger = logging.getLogger(__name__)

ANALYSIS_COST = 1
MAX_PAGE_SIZE = 50


def derive_confidence(ai_score: float, thresholds: ConfidenceThresholds = None):
    """Map a score onto (confidence band, is_ai_generated).

    Total over [0, 100] and monotonic: a higher score never lands in a lower band.
    """
    thresholds = thresholds or ConfidenceThresholds()
    if ai_score >= thresholds.high:
        confidence = Confidence.HIGH
    elif ai_score >= thresholds.medium:
        confidence = Confidence.MEDIUM
    else:
        confidence = Confidence.LOW
    return confidence, ai_score >= thresholds.ai_generated


class AnalysisPipeline:
    """Validate -> reserve credit -> score -> persist, refunding on any later failure.

    The scoring call runs outside of any storage transaction; each ledger and
    persistence step opens its own short session.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: CreditLedger,
        scorer: ScoringClient,
        thresholds: ConfidenceThresholds = None,
        default_language: str = Settings.DEFAULT_LANGUAGE,
        min_length: int = Settings.MIN_TEXT_LENGTH,
        max_length: int = Settings.MAX_TEXT_LENGTH,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.scorer = scorer
        self.thresholds = thresholds or ConfidenceThresholds()
        self.default_language = default_language
        self.min_length = min_length
        self.max_length = max_length

    def validate(self, text: str, language: Optional[str]):
        if not isinstance(text, str):
            raise ValidationError("Text is required")
        text = text.strip()
        if len(text) < self.min_length:
            raise ValidationError(f"Text must be at least {self.min_length} characters")
        if len(text) > self.max_length:
            raise ValidationError(f"Text must be at most {self.max_length} characters")

        language = language or self.default_language
        if language not in SUPPORTED_LANGUAGES:
            raise ValidationError(f"Unsupported language: {language}. Supported: {', '.join(SUPPORTED_LANGUAGES)}")
        return text, language

    async def analyze(self, user_id: int, text: str, language: Optional[str] = None) -> Dict:
        text, language = self.validate(text, language)

        reservation = self.ledger.reserve(user_id, ANALYSIS_COST)
        if not reservation.granted:
            raise InsufficientCredits()

        try:
            result = await self.scorer.score(text, language)
        except asyncio.CancelledError:
            logger.warning(f"Analysis for user {user_id} cancelled during scoring")
            self._refund(user_id, reservation, "scoring cancelled")
            raise
        except AppError:
            self._refund(user_id, reservation, "scoring failed")
            raise
        except Exception:
            logger.exception(f"Unexpected scoring failure for user {user_id}")
            self._refund(user_id, reservation, "scoring failed")
            raise InternalError()

        try:
            analysis = self._persist(user_id, text, language, result)
        except SQLAlchemyError:
            logger.exception(f"Failed to persist analysis for user {user_id}")
            self._refund(user_id, reservation, "persistence failed")
            raise PersistenceError()
        except Exception:
            logger.exception(f"Failed to build analysis for user {user_id}")
            self._refund(user_id, reservation, "persistence failed")
            raise InternalError()

        try:
            remaining = self.ledger.balance(user_id)
        except (SQLAlchemyError, NotFound):
            logger.exception(f"Could not read balance for user {user_id}")
            remaining = reservation.remaining

        return {"analysis": analysis, "remainingCredits": remaining}

    def _persist(self, user_id: int, text: str, language: str, result: ScoreResult) -> Dict:
        """Store the analysis and return its API payload.

        The payload is built before the commit; once the row is committed
        nothing else can fail.
        """
        confidence, is_ai_generated = derive_confidence(result.ai_score, self.thresholds)
        metrics = extract_metrics(text)

        with self.session_factory() as db:
            analysis = Analysis(
                user_id=user_id,
                ai_score=result.ai_score,
                confidence=confidence,
                is_ai_generated=is_ai_generated,
                indicators=result.indicators,
                explanation=result.explanation,
                suspicious_parts=result.suspicious_parts,
                processing_time=result.processing_time_ms,
                word_count=metrics.word_count,
                char_count=metrics.char_count,
                language=language,
                created_at=utcnow(),
            )
            db.add(analysis)
            try:
                db.flush()
                payload = analysis.to_dict()
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
            return payload

    def _refund(self, user_id: int, reservation: Reservation, reason: str):
        try:
            self.ledger.refund(user_id, ANALYSIS_COST, note=reason, reservation=reservation)
        except Exception:
            # The scoring or persistence error is still raised to the caller.
            logger.exception(f"Refund of {ANALYSIS_COST} credit to user {user_id} failed ({reason})")


class AnalysisHistory:
    """Owner-scoped reads over stored analyses, newest first."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_analysis(self, user_id: int, analysis_id: int) -> Dict:
        with self.session_factory() as db:
            analysis = db.scalar(
                select(Analysis).where(Analysis.id == analysis_id, Analysis.user_id == user_id)
            )
            if analysis is None:
                raise NotFound("Analysis not found")
            return analysis.to_dict()

    def delete_analysis(self, user_id: int, analysis_id: int):
        with self.session_factory() as db:
            analysis = db.scalar(
                select(Analysis).where(Analysis.id == analysis_id, Analysis.user_id == user_id)
            )
            if analysis is None:
                raise NotFound("Analysis not found")
            db.delete(analysis)
            db.commit()

    def history(self, user_id: int, page: int = 1, limit: int = 20) -> Dict:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        with self.session_factory() as db:
            analyses = db.scalars(
                select(Analysis)
                .where(Analysis.user_id == user_id)
                .order_by(Analysis.created_at.desc(), Analysis.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            items = [a.to_dict() for a in analyses]
            stats = self._stats(db, user_id)

        total = stats["totalAnalyses"]
        return {
            "analyses": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit) if total else 0,
            },
            "stats": stats,
        }

    def stats(self, user_id: int) -> Dict:
        with self.session_factory() as db:
            return self._stats(db, user_id)

    @staticmethod
    def _stats(db, user_id: int) -> Dict:
        def count_where(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        row = db.execute(
            select(
                func.count(Analysis.id).label("total"),
                func.avg(Analysis.ai_score).label("average"),
                count_where(Analysis.confidence == Confidence.HIGH).label("high"),
                count_where(Analysis.confidence == Confidence.MEDIUM).label("medium"),
                count_where(Analysis.confidence == Confidence.LOW).label("low"),
                count_where(Analysis.is_ai_generated.is_(True)).label("ai"),
            ).where(Analysis.user_id == user_id)
        ).one()

        total = row.total or 0
        return {
            "totalAnalyses": total,
            "averageAiScore": round(row.average or 0),
            "highConfidenceCount": row.high,
            "mediumConfidenceCount": row.medium,
            "lowConfidenceCount": row.low,
            "aiGeneratedCount": row.ai,
            "humanGeneratedCount": total - row.ai,
        }
