from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import create_engine
import structlog

from .config import settings
from .errors import StorageError, ConcurrentUpdate


logger = structlog.get_logger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # Configure connection pool for server databases
    return {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    }


engine = create_engine(settings.database_url, future=True, **_engine_kwargs(settings.database_url))

# Fresh Session per request; never a scoped_session
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_raise(db: Session, operation: str) -> None:
    """Commit the unit of work; persistence faults surface as StorageError."""
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning("concurrent_update", operation=operation, error=str(e))
        raise ConcurrentUpdate("Record was modified concurrently, please retry", cause=e, operation=operation)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("storage_error", operation=operation, error=str(e))
        raise StorageError(cause=e, operation=operation)
