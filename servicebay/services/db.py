from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from loguru import logger
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from servicebay.core.config import get_settings
from servicebay.models.base import Base

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)
_engine: Engine | None = None


def _enable_sqlite_write_locking(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first DML, which lets two writers read the
    # same row and then deadlock on upgrade; take the write lock up front instead.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    is_sqlite = url.drivername.startswith("sqlite")

    if is_sqlite and url.database and url.database != ":memory:":
        db_path = Path(url.database).expanduser()
        if db_path.parent:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        # Rebuild URL so SQLAlchemy can handle relative paths nicely
        database_url = f"sqlite:///{db_path}"

    engine = create_engine(
        database_url,
        echo=False,
        pool_pre_ping=not is_sqlite,
        connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
    )
    if is_sqlite:
        _enable_sqlite_write_locking(engine)
    return engine


def configure_database(database_url: str | None = None) -> Engine:
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = create_db_engine(database_url or get_settings().database_url)
    SessionLocal.configure(bind=_engine)
    logger.debug("Database configured url={url}", url=_engine.url.render_as_string(hide_password=True))
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        return configure_database()
    return _engine


def init_db() -> None:
    from servicebay import models  # noqa: F401  (registers every table on Base.metadata)

    Base.metadata.create_all(bind=get_engine())


@contextmanager
def db_session() -> Generator[Session, None, None]:
    get_engine()
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    with db_session() as session:
        yield session
