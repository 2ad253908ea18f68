# dentalcrm/database.py
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from .config import get_settings

logger = logging.getLogger(__name__)

_settings = get_settings()

if _settings.is_sqlite:
    # SQLite connections are shared across the threadpool FastAPI runs sync endpoints in
    engine_options = {"connect_args": {"check_same_thread": False}}
else:
    engine_options = {"pool_size": _settings.database_pool_size, "max_overflow": _settings.database_max_overflow}

engine = create_engine(
    _settings.database_url,
    pool_pre_ping=True,
    echo=False,
    **engine_options,
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

# Dependency to get database session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def create_tables():
    """Create all database tables - models must be imported first."""
    from . import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")

def drop_tables():
    """Drop all database tables"""
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    logger.info("Database tables dropped")
