import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from pushline.config import settings

logger = logging.getLogger(__name__)


_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

_engine_kwargs: dict = (
    {"connect_args": {"check_same_thread": False}}
    if _is_sqlite
    else {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}
)

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def create_tables() -> None:
    """Create any missing tables.

    Production deployments run the Alembic migrations instead; this keeps
    SQLite dev databases usable without a migration step.
    """
    # Import models so they register on Base.metadata
    import pushline.models.push_subscription  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured (%s)", engine.url.get_backend_name())
