import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urlparse, urlunparse, quote, unquote

from sqlalchemy import MetaData, text
from sqlalchemy.exc import OperationalError, InterfaceError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine
from sqlalchemy.pool import NullPool

from viraloop.utils.config import config, EnvMode
from viraloop.utils.logger import logger


def _get_db_config():
    if config.ENV_MODE == EnvMode.LOCAL:
        return {
            "pool_size": 3,
            "max_overflow": 5,
            "pool_timeout": 10,
            "pool_recycle": 300,
            "connect_timeout": 5,
        }
    return {
        "pool_size": 3,
        "max_overflow": 7,
        "pool_timeout": 30,
        "pool_recycle": 300,
        "connect_timeout": 15,
    }


ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"
SQLITE_BUSY_TIMEOUT = 30

TRANSIENT_ERRORS = (
    "connection reset", "connection refused", "connection timed out",
    "server closed the connection", "ssl connection has been closed",
    "could not connect to server", "remaining connection slots are reserved",
    "too many connections", "connection pool exhausted",
    "canceling statement due to statement timeout", "database is locked",
)


def is_transient(error: Exception) -> bool:
    if not isinstance(error, (OperationalError, InterfaceError)):
        return False
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_ERRORS)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def row_to_dict(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    result = {}
    for key, value in row._mapping.items():
        result[key] = ensure_utc(value) if isinstance(value, datetime) else value
    return result


def normalize_dsn(url: str) -> str:
    """Map a plain database URL onto the async driver this service uses.

    ``postgres://`` and ``postgresql://`` become ``postgresql+psycopg://``,
    ``sqlite://`` becomes ``sqlite+aiosqlite://``. Passwords are URL-encoded
    exactly once so special characters survive.
    """
    if url.startswith("sqlite"):
        if "+aiosqlite" not in url:
            url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return url

    try:
        parsed = urlparse(url)
        if parsed.password:
            password = parsed.password
            while "%" in password:
                decoded = unquote(password)
                if decoded == password:
                    break
                password = decoded
            netloc = f"{parsed.username}:{quote(password, safe='')}@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            url = urlunparse((parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment))
    except ValueError:
        pass

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if "+asyncpg" in url:
        url = url.replace("+asyncpg", "+psycopg")
    elif "+psycopg" not in url:
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _mask(url: str) -> str:
    if "@" in url:
        return url.split("@")[0][:20] + "...@" + url.split("@")[-1]
    return url


class Database:
    """Async SQLAlchemy engine plus session factory.

    Construct one per process (the ``AppContext`` owns it), call
    ``initialize()`` before use and ``close()`` on shutdown.
    """

    def __init__(self, url: Optional[str] = None, echo: bool = ECHO):
        raw_url = url or config.DATABASE_URL
        if not raw_url:
            raise RuntimeError("DATABASE_URL is not configured")
        self.url = normalize_dsn(raw_url)
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized")
        return self._engine

    async def initialize(self) -> None:
        if self._engine is not None:
            return

        logger.info(f"🔌 Database URL: {_mask(self.url)}")

        if self.is_sqlite:
            # One connection per session; SQLite serialises writers itself
            self._engine = create_async_engine(
                self.url,
                echo=self.echo,
                poolclass=NullPool,
                connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
            )
        else:
            db_config = _get_db_config()
            self._engine = create_async_engine(
                self.url,
                echo=self.echo,
                pool_size=db_config["pool_size"],
                max_overflow=db_config["max_overflow"],
                pool_timeout=db_config["pool_timeout"],
                pool_recycle=db_config["pool_recycle"],
                pool_pre_ping=True,
                connect_args={"connect_timeout": db_config["connect_timeout"]},
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("✅ Database connection initialized")

    async def create_schema(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info(f"Database schema ensured ({len(metadata.tables)} tables)")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read-only session. Nothing is committed."""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized")
        async with self._session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One atomic scope: commits on success, rolls back on any exception.

        Errors are not retried here. Callers own the recovery boundary.
        """
        if self._session_factory is None:
            raise RuntimeError("Database not initialized")
        async with self._session_factory() as session:
            async with session.begin():
                yield session
