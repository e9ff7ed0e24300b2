from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings

Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def make_engine(url: str) -> Engine:
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {}
    engine_url = url

    if engine_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS}
        db_path = engine_url.replace("sqlite:///", "")
        if engine_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every checkout sees an empty database.
            engine_kwargs["poolclass"] = StaticPool
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    elif engine_url.startswith("postgres://"):
        engine_url = engine_url.replace("postgres://", "postgresql+psycopg://", 1)
    elif engine_url.startswith("postgresql://"):
        engine_url = engine_url.replace("postgresql://", "postgresql+psycopg://", 1)

    engine = create_engine(engine_url, connect_args=connect_args, future=True, **engine_kwargs)
    if engine_url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)
    return engine


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT handling.
    # IMMEDIATE takes the write lock up front; other writers wait on the busy timeout.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        future=True,
    )


engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    with session_scope() as session:
        yield session


def init_db(bind: Engine | None = None, factory: sessionmaker | None = None) -> None:
    from . import orm_models  # noqa: F401
    from .services.templates import ensure_default_templates

    Base.metadata.create_all(bind=bind or engine)

    with session_scope(factory) as session:
        ensure_default_templates(session)
