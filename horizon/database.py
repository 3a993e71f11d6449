# horizon/database.py
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

# Import models so SQLModel metadata is populated before create_all()
from horizon.models import position as _position_models  # noqa: F401
from horizon.models import session as _session_models  # noqa: F401
from horizon.models import user as _user_models  # noqa: F401

# ---------------------------------------------------------
# Embedded on-device database (SQLite)
#
# - one process, one active engine instance
# - check_same_thread=False: the FastAPI threadpool may touch the
#   connection; SQLite still serializes writes itself
# - in-memory URLs use StaticPool so every checkout sees the same DB
# ---------------------------------------------------------


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for the local store.

    For file-based SQLite URLs the parent directory is created first.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    else:
        db_path = Path(database_url.removeprefix("sqlite:///"))
        db_path.parent.mkdir(parents=True, exist_ok=True)

    return create_engine(database_url, echo=echo, **kwargs)


def create_db_and_tables(engine: Engine) -> None:
    """
    Create all tables defined in SQLModel metadata if they do not exist.

    This is called once on application startup.
    """
    SQLModel.metadata.create_all(engine)


def open_local_session(engine: Engine) -> Session:
    """
    Open the long-lived Session shared by the sync engine.

    expire_on_commit=False keeps the current user / session objects usable
    (and timezone-aware) after each save without a reload round-trip.
    """
    return Session(engine, expire_on_commit=False)
