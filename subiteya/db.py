"""Database engine and session factory."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from subiteya.models import Base

logger = logging.getLogger(__name__)


def create_session_factory(database_url: str, echo: bool = False) -> sessionmaker:
    """
    Build a session factory and make sure the tables exist.

    In-memory SQLite URLs share one connection so every thread sees the same
    database.
    """
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url:
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, echo=echo, **kwargs)
    Base.metadata.create_all(engine)
    logger.info(f"[DB] Connected ({engine.url.get_backend_name()})")
    return sessionmaker(bind=engine, expire_on_commit=False)
