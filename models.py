import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    JSON,
    Boolean,
    Float,
    Enum,
    CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Plan(str, enum.Enum):
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class Role(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class Confidence(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class CreditReason(str, enum.Enum):
    CONSUME = "CONSUME"
    RESET = "RESET"
    GRANT = "GRANT"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    # Null for OAuth-only accounts
    hashed_password = Column(String, nullable=True)
    plan = Column(Enum(Plan, native_enum=False), default=Plan.FREE, nullable=False)
    role = Column(Enum(Role, native_enum=False), default=Role.USER, nullable=False)
    credits = Column(Integer, default=0, nullable=False)
    credits_reset_at = Column(DateTime, default=utcnow, nullable=True)
    email_verified = Column(Boolean, default=False)
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    stripe_current_period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    is_active = Column(Boolean, default=True)

    analyses = relationship("Analysis", back_populates="user", cascade="all, delete-orphan")
    credit_transactions = relationship(
        "CreditTransaction", back_populates="user", cascade="all, delete-orphan"
    )


class Analysis(Base):
    __tablename__ = "analyses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    ai_score = Column(Float, nullable=False)
    confidence = Column(Enum(Confidence, native_enum=False), nullable=False)
    is_ai_generated = Column(Boolean, nullable=False)
    indicators = Column(JSON, nullable=False, default=list)
    explanation = Column(Text, nullable=False, default="")
    suspicious_parts = Column(JSON, nullable=False, default=list)
    processing_time = Column(Integer, nullable=False, default=0)
    word_count = Column(Integer, nullable=False, default=0)
    char_count = Column(Integer, nullable=False, default=0)
    language = Column(String(2), nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)

    user = relationship("User", back_populates="analyses")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "aiScore": self.ai_score,
            "confidence": self.confidence.value,
            "isAiGenerated": self.is_ai_generated,
            "indicators": self.indicators or [],
            "explanation": self.explanation,
            "suspiciousParts": self.suspicious_parts or [],
            "processingTime": self.processing_time,
            "wordCount": self.word_count,
            "charCount": self.char_count,
            "language": self.language,
            "createdAt": self.created_at.isoformat(),
        }


class CreditTransaction(Base):
    """One balance change. Per user, the deltas sum to User.credits."""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(Enum(CreditReason, native_enum=False), nullable=False)
    note = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="credit_transactions")
