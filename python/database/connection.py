"""
Database Connection Management for the KYC Case Pipeline

The process entry point (cli.py) calls init_db() on startup and close_db()
on shutdown; services only ever receive a Session. Tests build their own
provider around an in-memory engine with create_test_provider().
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from config_manager import DatabaseConfig
from database.models import Base
from database.monitoring import HealthStatus, check_health

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Where the case store lives and how its pool is sized."""
    host: str = "localhost"
    port: int = 5432
    database: str = "kyc_database"
    user: str = "kyc_user"
    password: str = "kyc_password"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False
    url: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        return cls.from_config(None)

    @classmethod
    def from_config(cls, db_config) -> 'DatabaseSettings':
        """
        Build settings from the ``database`` section of config.yaml.

        ``DB_*`` environment variables override the file, the password is
        only ever read from the environment, and ``DATABASE_URL`` replaces
        the individual parts entirely.
        """
        base = db_config or DatabaseConfig()
        return cls(
            host=os.getenv("DB_HOST", base.host),
            port=int(os.getenv("DB_PORT", str(base.port))),
            database=os.getenv("DB_NAME", base.name),
            user=os.getenv("DB_USER", base.user),
            password=os.getenv("DB_PASSWORD", "kyc_password"),
            pool_size=base.pool_size,
            max_overflow=base.max_overflow,
            pool_timeout=base.pool_timeout,
            pool_recycle=base.pool_recycle,
            echo=os.getenv("DB_ECHO", str(base.echo)).lower() == "true",
            url=os.getenv("DATABASE_URL") or base.url or None
        )

    def get_url(self) -> str:
        if self.url:
            return self.url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"

    @property
    def is_sqlite(self) -> bool:
        return self.get_url().startswith("sqlite")


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Retry decorator for connecting to the case store.

    Only OperationalError (server not up yet, connection refused) is
    retried; a bad URL or missing driver fails on the first attempt.
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


db_retry = create_retry_decorator()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ============================================
# DATABASE SESSION PROVIDER
# ============================================

class DatabaseSessionProvider:
    """
    Owns the engine and hands out sessions to the pipeline services.

    Usage:
        provider = DatabaseSessionProvider(settings)
        provider.init()

        with provider.session_scope() as session:
            overview = DashboardService(session).get_overview(owner_id)

        provider.close()
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        self._settings = settings or DatabaseSettings.from_env()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None

    def init(self) -> None:
        if self._session_factory is not None:
            return

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False
        )
        logger.info(f"Case store ready ({self._engine.dialect.name})")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        settings = self._settings
        engine = create_engine(
            settings.get_url(),
            echo=settings.echo,
            poolclass=QueuePool,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            pool_recycle=settings.pool_recycle,
            pool_pre_ping=True
        )
        if settings.is_sqlite:
            # Cascades and ownership FKs must hold on SQLite as on PostgreSQL
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    def get_session(self) -> Session:
        """Get a bare session; the caller owns commit and close."""
        self.init()
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        One transaction per block: commit on success, rollback on any
        exception, close either way.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Pipeline tables created")

    def drop_tables(self) -> None:
        """Drop every pipeline table, including all case data."""
        self.init()
        Base.metadata.drop_all(self._engine)
        logger.warning("Pipeline tables dropped")

    def health_check(self) -> HealthStatus:
        self.init()
        return check_health(self._engine, Base.metadata.tables.keys())

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._session_factory = None


# ============================================
# PROCESS-WIDE PROVIDER
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def init_db(settings: Optional[DatabaseSettings] = None) -> DatabaseSessionProvider:
    """Create and initialise the process-wide provider (once)."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider(settings=settings)
    _db_provider.init()
    return _db_provider


def close_db() -> None:
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """Provider around a pre-built engine, e.g. in-memory SQLite for unit tests."""
    return DatabaseSessionProvider(settings=settings, engine=engine)
