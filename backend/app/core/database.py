import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.errors import ConcurrentModification, PersistenceFailure

logger = logging.getLogger(__name__)

engine = create_engine(
    settings.APP_DATABASE_DSN,
    connect_args=({"check_same_thread": False} if "sqlite" in settings.APP_DATABASE_DSN else {}),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base: Any = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Run a block of writes as a single transaction.

    Commits when the block exits normally. Any SQLAlchemy failure inside the
    block or during commit rolls the whole transaction back; a version
    mismatch surfaces as ConcurrentModification, anything else as
    PersistenceFailure.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Concurrent modification detected: %s", exc)
        raise ConcurrentModification("Record was modified by another writer") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Transaction rolled back: %s", exc)
        raise PersistenceFailure(f"Failed to persist changes: {exc}") from exc
    except Exception:
        db.rollback()
        raise
