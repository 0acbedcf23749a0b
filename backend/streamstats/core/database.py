"""
Database configuration and session management.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from streamstats.core.config import settings

_database_url = str(getattr(settings, "DATABASE_URL", ""))

# Reduce worst-case startup/readiness delays when the DB host is unreachable.
# (psycopg2 honors connect_timeout in seconds)
_connect_args = {}
_pool_kwargs = {}
if _database_url.startswith(("postgresql://", "postgres://")):
    _connect_args = {"connect_timeout": 5}
    _pool_kwargs = {
        "poolclass": QueuePool,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
    }
elif _database_url.startswith("sqlite"):
    # Refresh workers use their own sessions on pool threads.
    _connect_args = {"check_same_thread": False}

engine = create_engine(
    _database_url,
    connect_args=_connect_args,
    pool_pre_ping=True,  # Verify connections before use
    **_pool_kwargs,
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()
