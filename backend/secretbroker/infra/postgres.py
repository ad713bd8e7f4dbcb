import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from secretbroker.core.exceptions import StoreUnavailableError
from secretbroker.models.base import Base
from secretbroker.models.kv_entry import KVEntry
from .store import KeyValueStore

logger = logging.getLogger(__name__)


def utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =========================
# ENGINE CONFIGURATION
# =========================

def create_db_engine(database_url: str, timeout: float = 5.0) -> Engine:
    """
    Pooled engine for PostgreSQL; SQLite URLs (tests, local runs) get a
    single shared connection so an in-memory database survives across sessions.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Check connections before using them
        pool_size=5,         # Maintain 5 connections in the pool
        max_overflow=10,     # Allow 10 extra connections if needed
        pool_recycle=3600,   # Recycle connections every hour
        pool_timeout=timeout,
        connect_args={"connect_timeout": int(timeout)},
        echo=False
    )


def init_db(engine: Engine) -> None:
    """
    Create the key/value table if it does not exist.
    """
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


def check_connection(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            return True
    except SQLAlchemyError as e:
        logger.warning("Database connection failed: %s", e)
        return False


# =========================
# STORE
# =========================

class SqlStore(KeyValueStore):
    """
    Key/value store on a relational table. Expired rows read as absent and
    are removed by `purge_expired`.
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow_naive):
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "SqlStore":
        engine = create_db_engine(settings.database_url, timeout=settings.store_timeout)
        init_db(engine)
        return cls(engine)

    @contextmanager
    def db_session(self):
        """
        Context manager for one transaction.
        Usage:
            with store.db_session() as session:
                session.get(KVEntry, key)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _expired(self, entry: KVEntry) -> bool:
        return entry.expires_at is not None and entry.expires_at <= self._clock()

    def put_with_ttl(self, key: str, value: str, ttl: timedelta) -> None:
        try:
            with self.db_session() as session:
                session.merge(KVEntry(key=key, value=value, expires_at=self._clock() + ttl))
        except SQLAlchemyError as e:
            raise StoreUnavailableError("sql put failed") from e

    def get(self, key: str) -> Optional[str]:
        try:
            with self.db_session() as session:
                entry = session.get(KVEntry, key)
                if entry is None or self._expired(entry):
                    return None
                return entry.value
        except SQLAlchemyError as e:
            raise StoreUnavailableError("sql get failed") from e

    def delete(self, key: str) -> bool:
        try:
            with self.db_session() as session:
                entry = (
                    session.query(KVEntry)
                    .filter(KVEntry.key == key)
                    .with_for_update()
                    .one_or_none()
                )
                if entry is None:
                    return False
                live = not self._expired(entry)
                session.delete(entry)
                return live
        except SQLAlchemyError as e:
            raise StoreUnavailableError("sql delete failed") from e

    def _increment_once(self, key: str, ttl: Optional[timedelta]) -> int:
        expires_at = self._clock() + ttl if ttl is not None else None
        with self.db_session() as session:
            entry = (
                session.query(KVEntry)
                .filter(KVEntry.key == key)
                .with_for_update()
                .one_or_none()
            )
            if entry is None:
                session.add(KVEntry(key=key, value="1", expires_at=expires_at))
                return 1
            if self._expired(entry):
                entry.value, entry.expires_at = "1", expires_at
                return 1
            value = int(entry.value) + 1
            entry.value = str(value)
            return value

    def increment_returning(self, key: str, ttl: Optional[timedelta] = None) -> int:
        try:
            try:
                return self._increment_once(key, ttl)
            except IntegrityError:
                # Lost the race to create the row; it exists and is lockable now
                return self._increment_once(key, ttl)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("sql increment failed") from e

    def purge_expired(self) -> int:
        """Delete rows past their expiry; returns how many were removed."""
        try:
            with self.db_session() as session:
                return (
                    session.query(KVEntry)
                    .filter(KVEntry.expires_at.isnot(None), KVEntry.expires_at <= self._clock())
                    .delete(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            raise StoreUnavailableError("sql purge failed") from e

    def ping(self) -> bool:
        return check_connection(self.engine)

    def close(self) -> None:
        self.engine.dispose()


# =========================
# MANUAL SETUP
# =========================

if __name__ == "__main__":
    from secretbroker.core.config import Settings

    engine = create_db_engine(Settings.from_env().database_url)
    if check_connection(engine):
        init_db(engine)
        print("Tables ready:", ", ".join(Base.metadata.tables))
    else:
        print("Database connection failed")
