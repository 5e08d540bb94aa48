from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from stockledger.domain.models import Base

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Request handlers share the engine across threads; writers wait on the file lock
        connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(database_url, echo=echo, future=True, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker, session: Optional[Session] = None) -> Iterator[Session]:
    """Yield ``session`` when the caller owns one, otherwise a new session closed on exit."""
    if session is not None:
        yield session
        return
    with session_factory() as owned:
        yield owned


def init_models(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def run_migrations(database_url: str) -> None:
    """Upgrade the schema to head with the bundled alembic scripts."""
    from alembic import command
    from alembic.config import Config

    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    # configparser interpolation treats "%" as special
    config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    logger.info("Running database migrations")
    command.upgrade(config, "head")
    logger.info("Database migrations completed")
