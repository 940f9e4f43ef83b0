import logging

from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool
import os

from tripsign.core.settings import settings

logger = logging.getLogger("tripsign.database")

DATABASE_URL = settings.database_url


def _build_engine(url: str):
    if url.startswith("sqlite"):
        # SQLite has no server-side pool; sessions may hop threads when the
        # assembly pipeline is offloaded.
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=settings.sql_debug,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,  # Validate connections before use
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
        echo=settings.sql_debug,
    )


engine = _build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def check_database_health():
    """Check if database is accessible."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database health check: PASSED")
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error(f"Database health check: FAILED - {str(e)}")
        return {"status": "unhealthy", "database": f"error: {str(e)}"}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
