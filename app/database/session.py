"""
============================================================================
Detention Adjudicator
Database Session - SQLAlchemy Engine Management
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: DETENTION_DATABASE_URL (any SQLAlchemy URL)
Side Effects: Database connections

SQLite URLs get a single shared connection pool for in-memory
databases; every other URL uses the default pool with pre-ping.

============================================================================
"""

import os
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

# Load environment variables
load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///detention_checkpoints.db"


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Read the checkpoint database URL from the environment.

    Environment Variables:
        DETENTION_DATABASE_URL: SQLAlchemy URL (default: local SQLite file)
    """
    return os.getenv("DETENTION_DATABASE_URL", DEFAULT_DATABASE_URL)


def create_detention_engine(url: Optional[str] = None) -> Engine:
    """
    Build an engine for the given URL.

    In-memory SQLite shares one connection so every caller sees the same
    tables.
    """
    url = url or get_database_url()
    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
