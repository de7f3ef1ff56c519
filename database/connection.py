"""
Database connection utilities
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agritrace.db")


def build_engine(database_url: str):
    """Create an engine with pool settings suited to the backend."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool  # one shared in-memory database
        return create_engine(database_url, echo=False, **kwargs)
    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,  # Test connections before using them
        pool_recycle=3600,   # Recycle connections after 1 hour
        pool_size=5,
        max_overflow=10
    )


def build_session_factory(bind):
    """Sessions keep loaded attributes after commit so snapshots stay readable."""
    return sessionmaker(bind=bind, expire_on_commit=False)


engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)
