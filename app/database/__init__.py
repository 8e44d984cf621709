# ============================================================================
# Detention Adjudicator
# Database Module - SQLAlchemy Engine & Checkpoint Store
# ============================================================================

from app.database.session import create_detention_engine, get_database_url
from app.database.checkpoint_store import CheckpointStore, BatchCheckpoint

__all__ = [
    "create_detention_engine",
    "get_database_url",
    "CheckpointStore",
    "BatchCheckpoint",
]
