"""
Deadline Enforcer - Storage

One engine per process. Every writer in the pipeline (monitor, decision
engine, executor, notification queue) relies on row-level conditional
UPDATEs and the consequence uniqueness constraint, so any backend with
transactional DML works; PostgreSQL in production, SQLite in tests.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_URL

engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """Request-scoped session; closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create any missing tables. Existing tables are left untouched."""
    from .models import db_models  # noqa: F401 - registers tables on Base
    Base.metadata.create_all(bind=engine)
