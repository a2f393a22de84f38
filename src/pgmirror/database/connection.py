"""
Database connection management for pgmirror.

Provides async PostgreSQL connection pooling for the two stores taking part
in a reconciliation run, with a connectivity probe and bounded retries.
"""

import asyncio
import logging
import ssl
from contextlib import asynccontextmanager
from typing import Dict, Optional, Any, AsyncIterator, List, Literal, Union
from urllib.parse import urlparse, parse_qs

import asyncpg
from pydantic import BaseModel, Field, field_validator

from ..exceptions import ConfigurationError, ConnectivityError, StorePermissionError


logger = logging.getLogger(__name__)

SSLMode = Literal["disable", "prefer", "require", "verify-ca", "verify-full"]

CONNECTIVITY_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InvalidAuthorizationSpecificationError,
    asyncpg.exceptions.InvalidCatalogNameError,
)


def is_permission_error(error: BaseException) -> bool:
    """Check whether an error was raised by the store's access control."""
    return isinstance(
        error, (asyncpg.exceptions.InsufficientPrivilegeError, StorePermissionError)
    )


def is_connectivity_error(error: BaseException) -> bool:
    """Check whether an error means the store could not be reached."""
    return isinstance(error, CONNECTIVITY_ERRORS + (ConnectivityError,))


class ConnectionConfig(BaseModel):
    """Store connection configuration."""

    host: str = Field(..., description="Database host")
    port: int = Field(5432, description="Database port")
    database: str = Field(..., description="Database name")
    user: str = Field(..., description="Database user")
    password: str = Field("", description="Database password", repr=False)

    # Pool settings; a run is sequential so the pool stays small
    min_size: int = Field(1, description="Minimum connections in pool")
    max_size: int = Field(5, description="Maximum connections in pool")

    command_timeout: float = Field(60.0, description="Default command timeout in seconds")
    connect_timeout: float = Field(10.0, description="Connection timeout in seconds")
    connect_retries: int = Field(1, ge=1, description="Connection attempts before giving up")
    retry_delay: float = Field(5.0, ge=0, description="Delay between connection attempts")
    server_settings: Dict[str, str] = Field(
        default_factory=lambda: {"application_name": "pgmirror"},
        description="PostgreSQL server settings",
    )

    # SSL settings; "require" encrypts without verifying the server certificate
    ssl_mode: SSLMode = Field("prefer", description="SSL mode")
    ssl_ca: Optional[str] = Field(None, description="SSL CA certificate path")
    ssl_cert: Optional[str] = Field(None, description="SSL client certificate path")
    ssl_key: Optional[str] = Field(None, description="SSL client key path")

    @field_validator("database")
    @classmethod
    def validate_database(cls, v):
        if not v or not v.strip():
            raise ValueError("Database name is required")
        return v

    @field_validator("max_size")
    @classmethod
    def validate_max_size(cls, v, info):
        min_size = info.data.get("min_size", 1)
        if v < min_size:
            raise ValueError(f"max_size ({v}) must be >= min_size ({min_size})")
        return v

    @classmethod
    def from_url(cls, url: str, **overrides: Any) -> "ConnectionConfig":
        """Create configuration from a postgresql:// URL."""
        parsed = urlparse(url)

        if parsed.scheme not in ("postgresql", "postgres"):
            raise ConfigurationError(f"Invalid database URL scheme: {parsed.scheme}")

        if not parsed.path or parsed.path == "/":
            raise ConfigurationError("Database name is required")

        query_params = parse_qs(parsed.query) if parsed.query else {}

        config_data: Dict[str, Any] = {
            "host": parsed.hostname or "localhost",
            "port": parsed.port or 5432,
            "database": parsed.path.lstrip("/"),
            "user": parsed.username or "",
            "password": parsed.password or "",
        }

        if "sslmode" in query_params:
            config_data["ssl_mode"] = query_params["sslmode"][0]
        if "sslcert" in query_params:
            config_data["ssl_cert"] = query_params["sslcert"][0]
        if "sslkey" in query_params:
            config_data["ssl_key"] = query_params["sslkey"][0]
        if "sslrootcert" in query_params:
            config_data["ssl_ca"] = query_params["sslrootcert"][0]

        config_data.update(overrides)
        return cls(**config_data)

    @property
    def display_name(self) -> str:
        """Host/database label without credentials, safe for logs."""
        return f"{self.host}:{self.port}/{self.database}"

    def build_ssl(self) -> Union[str, ssl.SSLContext]:
        """Build the asyncpg ``ssl`` argument."""
        if not (self.ssl_ca or self.ssl_cert):
            return self.ssl_mode

        if self.ssl_mode in ("verify-ca", "verify-full"):
            context = ssl.create_default_context(cafile=self.ssl_ca)
            context.check_hostname = self.ssl_mode == "verify-full"
        else:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if self.ssl_cert:
            context.load_cert_chain(self.ssl_cert, self.ssl_key)
        return context

    def to_connection_kwargs(self) -> Dict[str, Any]:
        """Convert to asyncpg connection kwargs."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
            "timeout": self.connect_timeout,
            "command_timeout": self.command_timeout,
            "server_settings": self.server_settings,
            "ssl": self.build_ssl(),
        }


class ConnectionPool:
    """Async PostgreSQL connection pool for one store."""

    def __init__(self, config: ConnectionConfig, name: str = "default"):
        self.config = config
        self.name = name
        self._pool: Optional[asyncpg.Pool] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the pool and verify the store answers a probe query."""
        async with self._lock:
            if self._pool is not None:
                return

            attempts = self.config.connect_retries
            last_error: Optional[BaseException] = None

            for attempt in range(1, attempts + 1):
                logger.info(
                    f"Connecting to store '{self.name}' at {self.config.display_name} "
                    f"(attempt {attempt}/{attempts})"
                )
                try:
                    pool = await asyncpg.create_pool(
                        **self.config.to_connection_kwargs(),
                        min_size=self.config.min_size,
                        max_size=self.config.max_size,
                    )
                    try:
                        async with pool.acquire() as conn:
                            await conn.fetchval("SELECT 1")
                    except BaseException:
                        await pool.close()
                        raise
                    self._pool = pool
                    logger.info(f"Connection pool for store '{self.name}' initialized")
                    return

                except Exception as e:
                    last_error = e
                    logger.warning(f"Connection to store '{self.name}' failed: {e}")
                    if attempt < attempts:
                        await asyncio.sleep(self.config.retry_delay)

            logger.error(f"Giving up on store '{self.name}' after {attempts} attempt(s)")
            raise ConnectivityError(
                f"Failed to connect to store '{self.name}'",
                {"store": self.config.display_name, "attempts": attempts},
                last_error,
            ) from last_error

    async def close(self) -> None:
        """Close the connection pool."""
        async with self._lock:
            if self._pool is not None:
                logger.info(f"Closing connection pool for store '{self.name}'")
                await self._pool.close()
                self._pool = None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection from the pool."""
        if self._pool is None:
            raise ConnectivityError(f"Pool for store '{self.name}' is not connected")

        async with self._pool.acquire() as connection:
            yield connection

    async def execute(self, query: str, *args, timeout: Optional[float] = None) -> str:
        """Execute a query and return status."""
        async with self.acquire() as conn:
            return await conn.execute(query, *args, timeout=timeout)

    async def fetch(self, query: str, *args, timeout: Optional[float] = None) -> List[asyncpg.Record]:
        """Fetch all results from a query."""
        async with self.acquire() as conn:
            return await conn.fetch(query, *args, timeout=timeout)

    async def fetchrow(self, query: str, *args, timeout: Optional[float] = None) -> Optional[asyncpg.Record]:
        """Fetch a single row from a query."""
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args, timeout=timeout)

    async def fetchval(self, query: str, *args, timeout: Optional[float] = None) -> Any:
        """Fetch a single value from a query."""
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args, timeout=timeout)

    @property
    def is_initialized(self) -> bool:
        """Check if pool is initialized."""
        return self._pool is not None


class DatabaseManager:
    """Owns the named store pools for a run."""

    def __init__(self):
        self._pools: Dict[str, ConnectionPool] = {}
        self._lock = asyncio.Lock()

    def add_database(self, name: str, config: ConnectionConfig) -> ConnectionPool:
        """Register a store without connecting to it."""
        if name in self._pools:
            raise ConfigurationError(f"Store '{name}' already exists")

        logger.debug(f"Adding store '{name}' ({config.display_name})")
        pool = ConnectionPool(config, name=name)
        self._pools[name] = pool
        return pool

    def get_pool(self, name: str) -> ConnectionPool:
        """Get a connection pool by name."""
        if name not in self._pools:
            raise ConfigurationError(f"Store '{name}' not found")
        return self._pools[name]

    async def close_all(self) -> None:
        """Close all store connections."""
        async with self._lock:
            for name, pool in self._pools.items():
                try:
                    await pool.close()
                except Exception as e:
                    logger.error(f"Error closing pool '{name}': {e}")

    async def test_connection(self, name: str) -> Dict[str, Any]:
        """Test a store connection and return server info."""
        pool = self.get_pool(name)
        try:
            if not pool.is_initialized:
                await pool.initialize()
            row = await pool.fetchrow(
                "SELECT version() AS version, current_database() AS database, "
                "current_user AS user, now() AS server_time"
            )
            return {
                "status": "connected",
                "database": row["database"],
                "user": row["user"],
                "version": row["version"],
                "server_time": str(row["server_time"]),
            }
        except Exception as e:
            logger.error(f"Connection test failed for '{name}': {e}")
            return {"status": "failed", "error": str(e)}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close_all()
