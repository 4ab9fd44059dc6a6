from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base

from circulation.config import DATABASE_URL, DATABASE_ISOLATION_LEVEL


engine_options = {}
if DATABASE_ISOLATION_LEVEL:
    engine_options["isolation_level"] = DATABASE_ISOLATION_LEVEL

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
    **engine_options,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Dependency function that provides a database session.

    One session per HTTP request. The session is closed after the response
    is produced; committing is left to the unit of work (see transaction()).
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session):
    """
    Run a block as a single unit of work on the given session.

    Commits when the block finishes and rolls back on any exception, so no
    partial state is ever committed. The same session is yielded back so it
    can be threaded explicitly into the allocator and other helpers.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
