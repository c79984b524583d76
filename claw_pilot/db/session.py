"""
Registry engine & session factory.

Driver: stdlib sqlite3 (sqlite+pysqlite)
ORM:    SQLAlchemy 2.0

pysqlite issues its own BEGIN lazily and never around DDL, which would
make shadow-table migrations non-atomic. The connect/begin hooks below
take transaction control away from the driver so that SQLAlchemy's
``begin()`` emits a real ``BEGIN`` covering DDL too.
"""

import logging
from pathlib import Path

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger("claw_pilot.db")

BUSY_TIMEOUT_MS = 5000


def create_registry_engine(db_path: str | Path, echo: bool = False) -> Engine:
    """Engine for the registry file. The parent directory must exist."""
    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=echo,
        # Pooled connections may be reused by a thread other than the one that opened them.
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    logger.debug("Registry engine ready: %s", db_path)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)
