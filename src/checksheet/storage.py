from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from checksheet.config import Settings, ensure_dirs
from checksheet.models import Base


def _enable_sqlite_transactional_ddl(engine: Engine) -> None:
    # pysqlite issues its own BEGIN only before DML; take over so CREATE/ALTER/DROP
    # participate in the surrounding transaction and roll back with it.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


class Storage:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        ensure_dirs(settings)
        if settings.is_sqlite:
            self.engine = create_engine(
                settings.database_url,
                connect_args={"check_same_thread": False},
            )
            _enable_sqlite_transactional_ddl(self.engine)
        else:
            self.engine = create_engine(settings.database_url, pool_pre_ping=True)
        self._Session = sessionmaker(self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One unit of work; commits on success and rolls back on any exception."""
        with self._Session() as session:
            with session.begin():
                yield session

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self._Session() as session:
            yield session

    def dispose(self) -> None:
        self.engine.dispose()


def init_storage(settings: Settings) -> Storage:
    return Storage(settings)
