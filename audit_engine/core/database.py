"""
Database engine, sessions and table creation.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from audit_engine.core.config import get_settings

settings = get_settings()

database_url = settings.sqlalchemy_database_uri

connect_args = {}
if database_url.startswith("sqlite"):
    # Sweep workers share connections across threads and wait on each other's writes
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(
    database_url,
    pool_pre_ping=not database_url.startswith("sqlite"),
    echo=settings.DEBUG,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def init_db(bind=None) -> None:
    """Create any missing engine tables on the given engine (default: the configured one)."""
    import audit_engine.models  # noqa: F401  registers every table on Base.metadata
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Request-scoped session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
