import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

# Created on first use so importing models never opens a connection
engine = None
SessionLocal = None


def get_engine():
    global engine
    if engine is None:
        from radar.config import config, settings

        logger.info(f"Connecting to database at {settings.database_host}")
        engine = create_engine(settings.database_url, echo=config.database_echo, pool_pre_ping=True)
    return engine


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        SessionLocal = sessionmaker(bind=get_engine(), autocommit=False, autoflush=False)
    return SessionLocal


def init_db():
    """Create missing tables. Schema migrations are managed outside the worker."""
    import radar.models  # noqa: F401  registers the mappers on Base
    Base.metadata.create_all(bind=get_engine())


@contextmanager
def session_scope():
    """Session for one unit of worker work; rolled back if the work raises."""
    db = get_session_local()()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db():
    """FastAPI dependency"""
    with session_scope() as db:
        yield db
