import os
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./membella.db")

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db():
    """Create tables that do not exist yet. Migrations are managed by alembic."""
    # Import all models so they are registered on Base.metadata
    import membella.models  # noqa: F401
    import membella.database.subscription  # noqa: F401

    logger.info("Initializing database tables")
    Base.metadata.create_all(bind=engine)
