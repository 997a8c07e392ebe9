from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from excel_data.core.config import settings

# SQLite connections are shared across the threadpool that runs sync
# dependencies and the scheduler's worker threads
connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)

# autocommit=False: Changes require explicit commit
# autoflush=False: Don't auto-flush before queries
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """Create tables for every model registered on Base.

    Called once from the application lifespan. Importing the models package
    here makes sure all tables are known to the metadata.
    """
    from excel_data.models import audit, data_import, file, row  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db():
    """
    Dependency for getting database session.

    The session is closed after the request completes (via finally block).
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
