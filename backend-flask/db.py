from __future__ import annotations

from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

engine = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, future=True)


def init_engine(database_url: str):
    global engine

    kwargs = {"future": True, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        # In-memory sqlite only lives as long as its single connection.
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool

    if engine is not None:
        engine.dispose()

    engine = create_engine(database_url, **kwargs)
    SessionLocal.configure(bind=engine)
    return engine


def ping(db) -> None:
    db.execute(text("SELECT 1"))
