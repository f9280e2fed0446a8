import logging
from typing import Optional

from sqlalchemy import MetaData, create_engine
from sqlalchemy.engine import Engine

from core.config import settings

logger = logging.getLogger(__name__)

# Every table module registers against this
metadata = MetaData()

_engine: Optional[Engine] = None


def _connect_args(url: str) -> dict:
    """Driver kwargs with sane defaults for cloud envs."""
    if url.startswith("sqlite"):
        # Repos run inside Starlette's threadpool, so connections hop threads
        return {"check_same_thread": False}
    if url.startswith("postgresql"):
        return {"connect_timeout": settings.DB_CONNECT_TIMEOUT}
    return {}


def create_db_engine(url: Optional[str] = None) -> Engine:
    url = url or settings.DATABASE_URL
    kwargs = {"connect_args": _connect_args(url)}
    if url.startswith("postgresql"):
        kwargs.update(pool_size=5, max_overflow=15, pool_pre_ping=True)
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    """Get or create the process-wide engine"""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
        logger.info(f"✅ Database engine created ({_engine.url.get_backend_name()})")
    return _engine


def initialize_database(engine: Optional[Engine] = None) -> bool:
    """Create any missing tables. Returns False instead of raising so the app can still boot."""
    # Table modules must be imported so they register on `metadata`
    import modules.users.tables  # noqa: F401
    import modules.equipment.tables  # noqa: F401

    engine = engine or get_engine()
    try:
        metadata.create_all(engine)
        logger.info("✅ Equipment, archive, history and user tables ready")
        return True
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        return False
