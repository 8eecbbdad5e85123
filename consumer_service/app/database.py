from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Base class for declarative ORM models.
Base = declarative_base()


def create_db_engine(database_url, pool_size=10):
    """Create the bounded connection pool shared by the store primitives."""
    options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options["pool_size"] = pool_size
        options["max_overflow"] = 0
    return create_engine(database_url, **options)


def create_session_factory(engine):
    # Instances stay readable after commit; the store hands them out detached.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
