"""
Database session management
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from shipment_ledger.core.settings import get_settings
from shipment_ledger.logging_config import get_logger

logger = get_logger(__name__)

settings = get_settings()

# Log connection info (without password)
if settings.DATABASE_URL:
    logger.info("Database connection: explicit DATABASE_URL")
else:
    logger.info(f"Database connection: {settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME} (PostgreSQL)")

engine = create_engine(
    settings.database_url,
    echo=settings.DEBUG,
    pool_pre_ping=True,  # Verify connections before using
    pool_recycle=3600,  # Recycle connections after 1 hour
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Open a session for one unit of work and always close it.

    Ledger services commit or roll back themselves; this only owns the
    session lifetime.

    Usage:
        with session_scope() as db:
            allocate_and_create(db, invoice_id, product_id, 10, Decimal("4.50"))
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
