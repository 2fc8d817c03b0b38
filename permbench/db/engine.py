# (c) Copyright Datacraft, 2026
from sqlalchemy import create_engine, event, Engine
from sqlalchemy.orm import sessionmaker, Session as SQLAlchemySession

from permbench.config import get_settings

from .base import Base


def create_db_engine(db_url: str | None = None, echo: bool | None = None) -> Engine:
    settings = get_settings()
    url = db_url or settings.db_url
    connect_args = {}
    if url.startswith("sqlite"):
        # benchmark workers share the pool across threads
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(
        url,
        echo=settings.db_echo if echo is None else echo,
        connect_args=connect_args,
    )
    if url.startswith("sqlite"):
        event.listen(engine, "connect", _sqlite_pragmas)
    return engine


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(engine: Engine) -> sessionmaker[SQLAlchemySession]:
    return sessionmaker(engine, expire_on_commit=False)


def _register_models() -> None:
    # mapped classes land on Base.metadata at import
    from . import orm, departments  # noqa: F401
    from permbench.rebac import tuples  # noqa: F401
    from permbench.flat import models  # noqa: F401


def init_db(engine: Engine) -> None:
    """Create every table the two engines and the corpus loader use."""
    _register_models()
    Base.metadata.create_all(engine)


def reset_db(engine: Engine) -> None:
    """Drop and recreate every table."""
    _register_models()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
