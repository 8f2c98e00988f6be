from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
import os

# Mandatory database connection outside of tests
SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "").strip()

# Special case for local testing/CI
IS_TEST = os.getenv("PYTEST_CURRENT_TEST") is not None or os.getenv("ENVIRONMENT") == "testing"

if not SQLALCHEMY_DATABASE_URL and not IS_TEST:
    raise RuntimeError(
        "CRITICAL: DATABASE_URL must be set. Session credentials are only ever persisted "
        "to a configured database."
    )

if IS_TEST and not SQLALCHEMY_DATABASE_URL:
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test_wagw.db"

# Pooled engine for PostgreSQL, single-file engine for SQLite
if SQLALCHEMY_DATABASE_URL.startswith("postgresql"):
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        pool_size=20,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
else:
    engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})

# SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

def run_migrations():
    """Bootstrap the database schema."""
    from app.core import models  # noqa: F401  (registers tables on Base.metadata)
    Base.metadata.create_all(bind=engine)
