"""
The owned store object: engine, sessions, transactions and write locks.

Every operation in the stash, search, graph, auth and access-log modules takes
a ``Store`` as its first argument; there is no module-level database handle.
"""

import logging
import threading
from contextlib import contextmanager, nullcontext
from typing import Dict, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config, get_config
from errors import ConflictError
from models import Base

logger = logging.getLogger(__name__)


class Store:
    """
    Single-node embedded store with an explicit init/close lifecycle.

    Writes to one stash are serialized by a per-stash lock and run inside one
    database transaction, so readers see either the old or the new state of a
    stash, never a mix.
    """

    def __init__(self, config: Optional[Config] = None, url: Optional[str] = None) -> None:
        self.config = config or get_config()
        self.url = url or self.config.DATABASE_URL
        self.engine = None
        self._session_factory = None
        self._sqlite = self.url.startswith("sqlite")
        self._memory = self._sqlite and (":memory:" in self.url or self.url.rstrip("/") == "sqlite:")
        # One shared connection for in-memory SQLite, so sessions take turns on it
        self._memory_lock = threading.RLock()
        # SQLite has a single writer; queueing here avoids SQLITE_BUSY on lock upgrade
        self._write_lock = threading.RLock()
        self._stash_locks: Dict[str, threading.RLock] = {}
        self._stash_locks_guard = threading.Lock()

    def __repr__(self) -> str:
        return f"<Store {self.url}>"

    def __enter__(self) -> "Store":
        return self.init()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def init(self) -> "Store":
        """Create the engine and schema, then sweep expired sessions."""
        if self.engine is not None:
            return self

        self.engine = self._create_engine()
        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info("Store opened at %s", self.url)

        from auth_utils import clean_expired_sessions

        clean_expired_sessions(self)
        return self

    def close(self) -> None:
        """Dispose of the engine; the store can be re-initialized afterwards."""
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        self._session_factory = None
        logger.info("Store closed at %s", self.url)

    def _create_engine(self):
        kwargs = {"echo": getattr(self.config, "DATABASE_ECHO", False)}
        if self._sqlite:
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if self._memory:
                kwargs["poolclass"] = StaticPool
        engine = create_engine(self.url, **kwargs)

        if self._sqlite:
            memory = self._memory

            @event.listens_for(engine, "connect")
            def _on_connect(dbapi_connection, connection_record):
                # Let SQLAlchemy emit BEGIN so reads also run in a snapshot transaction
                dbapi_connection.isolation_level = None
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                if not memory:
                    cursor.execute("PRAGMA journal_mode=WAL")
                cursor.close()

            @event.listens_for(engine, "begin")
            def _on_begin(conn):
                conn.exec_driver_sql("BEGIN")

        return engine

    def _require_open(self) -> None:
        if self._session_factory is None:
            raise RuntimeError("Store is not initialized; call init() first")

    def _guard(self, write: bool):
        if self._memory:
            return self._memory_lock
        if write and self._sqlite:
            return self._write_lock
        return nullcontext()

    def stash_lock(self, stash_id: str) -> threading.RLock:
        """Return the writer lock for one stash."""
        with self._stash_locks_guard:
            lock = self._stash_locks.get(stash_id)
            if lock is None:
                lock = threading.RLock()
                self._stash_locks[stash_id] = lock
            return lock

    def forget_stash_lock(self, stash_id: str) -> None:
        with self._stash_locks_guard:
            self._stash_locks.pop(stash_id, None)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only session over a consistent snapshot."""
        self._require_open()
        with self._guard(write=False):
            session = self._session_factory()
            try:
                yield session
            finally:
                session.rollback()
                session.close()

    @contextmanager
    def transaction(self, stash_id: Optional[str] = None) -> Iterator[Session]:
        """
        Run a unit of work atomically.

        Args:
            stash_id: When given, writers to the same stash are serialized.

        Raises:
            ConflictError: If a uniqueness constraint rejects the commit
        """
        self._require_open()
        stash_guard = self.stash_lock(stash_id) if stash_id else nullcontext()
        with stash_guard, self._guard(write=True):
            session = self._session_factory()
            try:
                with session.begin():
                    yield session
            except IntegrityError as exc:
                logger.error("Transaction rejected by constraint: %s", exc.orig)
                raise ConflictError(
                    "Concurrent modification detected; retry the operation.",
                    stash_id=stash_id,
                ) from exc
            finally:
                session.close()


def open_store(env: str = None, url: Optional[str] = None) -> Store:
    """Build and initialize a store for the given environment."""
    return Store(get_config(env), url=url).init()
