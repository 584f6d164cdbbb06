from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from config import Settings
from models import Base

DATABASE_URL = Settings.DATABASE_URL


def build_engine(url: str):
    if url in ("sqlite://", "sqlite:///:memory:"):
        # In-memory SQLite: one shared connection for every session
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        # pysqlite opens a transaction only at the first write, so plain reads
        # hold no lock and ledger writers queue on the busy timeout.
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    # PostgreSQL or other database configuration
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables():
    Base.metadata.create_all(bind=engine)


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
