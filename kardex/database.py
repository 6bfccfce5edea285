import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from kardex.config import settings
from kardex.errors import LedgerError, PersistenceFailure

logger = logging.getLogger(__name__)


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    eng = create_engine(url, connect_args=connect_args)
    if url.startswith("sqlite"):
        # SQLite only enforces foreign keys when asked to, per connection
        @event.listens_for(eng, "connect")
        def _enable_foreign_keys(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return eng


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """Run a block as one unit of work: commit at the end, roll everything back on error."""
    try:
        yield db
        db.commit()
    except LedgerError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Persistence failure, transaction rolled back: %s", e, exc_info=True)
        raise PersistenceFailure(str(e)) from e


def init_db(bind=None):
    # Import all models so Base.metadata knows about them
    import kardex.models.audit  # noqa: F401
    import kardex.models.movement  # noqa: F401
    import kardex.models.operator  # noqa: F401
    import kardex.models.product  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
