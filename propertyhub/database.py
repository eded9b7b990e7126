from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Lifecycle-scoped handle on the engine and session factory.

    ``init()`` must run before ``session()`` hands anything out; the app does it
    on startup and calls ``dispose()`` on shutdown. Scripts and tests own their
    own instance or re-bind this one to another URL.
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database.init() has not been called.")
        return self._engine

    def init(self, url: Optional[str] = None, *, create_schema: bool = False) -> None:
        if self._engine is not None:
            self.dispose()
        if url:
            self.url = url

        connect_args = {}
        if self.url.startswith("sqlite"):
            # sqlite3 "timeout" is the busy wait on a locked database.
            connect_args = {"check_same_thread": False, "timeout": self.timeout_seconds}
        self._engine = create_engine(self.url, connect_args=connect_args)
        if self.url.startswith("sqlite"):
            event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
        self._sessionmaker = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)

        if create_schema:
            # Alembic owns real schema evolution; this covers dev and tests.
            Base.metadata.create_all(bind=self._engine)
        logger.info("Database initialised (%s)", self._engine.url.render_as_string(hide_password=True))

    def session(self) -> Session:
        if self._sessionmaker is None:
            raise RuntimeError("Database.init() has not been called.")
        return self._sessionmaker()

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._engine = None
        self._sessionmaker = None


database = Database(settings.database_url, timeout_seconds=settings.database_timeout_seconds)
