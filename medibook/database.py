import logging
from typing import Iterator

from sqlmodel import Session, SQLModel, create_engine

from medibook.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    pool_pre_ping=True,
    connect_args=connect_args,
)


def create_db_and_tables() -> None:
    # table modules must be imported so their metadata is registered
    from medibook.models import appointment, hospital, notification, payment, user, wallet  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info(f"Database ready ({engine.url.get_backend_name()})")


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
