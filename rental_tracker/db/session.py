import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from db.base import Base


DEFAULT_DB_URL = "sqlite+pysqlite:///./rental_tracker.db"
RENTAL_TRACKER_DB_URL = (os.environ.get("RENTAL_TRACKER_DB_URL") or DEFAULT_DB_URL).strip()


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine_rental = create_engine(
    RENTAL_TRACKER_DB_URL,
    pool_pre_ping=True,
    future=True,
    connect_args=_connect_args(RENTAL_TRACKER_DB_URL),
)

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_db(engine=None) -> None:
    # Model modules register their tables on Base when imported.
    import models.rental_models  # noqa: F401

    Base.metadata.create_all(bind=engine or engine_rental)
