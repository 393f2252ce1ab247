"""PostgreSQL connection pool shared by the server-side services.

Ingestion workers, the aggregation pool and the retention executor all
draw from one ``ThreadedConnectionPool``. Each connection carries the
service's ``application_name`` and a statement timeout so a stuck query
shows up in ``pg_stat_activity`` and cannot hold a bucket lock forever.
"""
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from psycopg2 import pool

logger = logging.getLogger(__name__)

STORAGE_ENV = "HEROTRACK_STORAGE"
SECRET_ARN_ENV = "DB_SECRET_ARN"


@dataclass(frozen=True)
class DatabaseConfig:
    """Pool settings and credentials.

    Attributes:
        host: Database host
        port: Database port
        database: Database name
        username: Login role
        password: Login password
        min_connections: Connections opened at startup
        max_connections: Pool ceiling (ingestion workers + aggregation pool)
        connect_timeout: Seconds to wait for a new connection
        ssl_mode: libpq ``sslmode``
        application_name: Reported in ``pg_stat_activity``
        statement_timeout_ms: Per-statement limit, 0 to disable
    """
    host: str
    port: int = 5432
    database: str = "herotrack"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    ssl_mode: str = "require"
    application_name: str = "herotrack"
    statement_timeout_ms: int = 30000

    def __post_init__(self):
        if self.min_connections < 1 or self.max_connections < self.min_connections:
            raise ValueError("Pool needs 1 <= min_connections <= max_connections")
        if self.statement_timeout_ms < 0:
            raise ValueError("statement_timeout_ms cannot be negative")

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Read ``DB_*`` environment variables.

        DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD, DB_MIN_CONN,
        DB_MAX_CONN, DB_SSL_MODE, DB_APPLICATION_NAME and
        DB_STATEMENT_TIMEOUT_MS.
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "herotrack"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
            application_name=os.getenv("DB_APPLICATION_NAME", "herotrack"),
            statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "30000")),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Take credentials from an RDS-style Secrets Manager secret.

        Pool sizing and timeouts still come from the environment.
        """
        import boto3

        try:
            client = boto3.client("secretsmanager", region_name=region)
            response = client.get_secret_value(SecretId=secret_arn)
            secret = json.loads(response["SecretString"])
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"error": str(e), "secret_arn": secret_arn}
            )
            raise

        base = cls.from_env()
        return cls(
            host=secret.get("host", base.host),
            port=int(secret.get("port", base.port)),
            database=secret.get("dbname", base.database),
            username=secret.get("username", ""),
            password=secret.get("password", ""),
            min_connections=base.min_connections,
            max_connections=base.max_connections,
            ssl_mode=base.ssl_mode,
            application_name=base.application_name,
            statement_timeout_ms=base.statement_timeout_ms,
        )

    @classmethod
    def load(cls) -> "DatabaseConfig":
        """Secrets Manager when ``DB_SECRET_ARN`` is set, environment otherwise."""
        secret_arn = os.getenv(SECRET_ARN_ENV)
        if secret_arn:
            return cls.from_secrets_manager(
                secret_arn, region=os.getenv("AWS_REGION", "us-east-1")
            )
        return cls.from_env()

    def connect_kwargs(self) -> Dict[str, Any]:
        kwargs = {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
            "application_name": self.application_name,
        }
        if self.statement_timeout_ms:
            kwargs["options"] = f"-c statement_timeout={self.statement_timeout_ms}"
        return kwargs


class ConnectionManager:
    """Lazily created threaded pool with checkout/return handling."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool: Optional[pool.ThreadedConnectionPool] = None

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "application_name": config.application_name,
                "max_connections": config.max_connections,
            }
        )

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    def initialize(self) -> None:
        """Open the pool; repeated calls are no-ops."""
        if self._pool is not None:
            return

        try:
            self._pool = pool.ThreadedConnectionPool(
                minconn=self.config.min_connections,
                maxconn=self.config.max_connections,
                **self.config.connect_kwargs(),
            )
        except Exception as e:
            logger.error(
                "CONNECTION_POOL_INIT_FAILED",
                extra={"host": self.config.host, "error": str(e)}
            )
            raise

        logger.info(
            "CONNECTION_POOL_INITIALIZED",
            extra={"host": self.config.host, "database": self.config.database}
        )

    @contextmanager
    def get_connection(self):
        """Check a connection out of the pool for the duration of the block.

        Connections the server closed underneath us are discarded instead
        of being handed to the next caller.
        """
        if self._pool is None:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn, close=bool(getattr(conn, "closed", 0)))

    def health_check(self) -> Dict[str, Any]:
        """Readiness probe payload; never raises."""
        if self._pool is None:
            return {"status": "not_initialized", "healthy": False}

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except Exception as e:
            logger.error("DATABASE_HEALTH_CHECK_FAILED", extra={"error": str(e)})
            return {"status": "error", "healthy": False, "error": str(e)}

        return {
            "status": "connected",
            "healthy": True,
            "host": self.config.host,
            "database": self.config.database,
            "max_connections": self.config.max_connections,
        }

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("CONNECTION_POOL_CLOSED")


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide manager built from ``DatabaseConfig.load()``."""
    global _connection_manager

    if _connection_manager is None:
        _connection_manager = ConnectionManager(DatabaseConfig.load())

    return _connection_manager


def storage_connection_manager() -> Optional[ConnectionManager]:
    """Connection manager for service wiring.

    Returns the initialized global manager when ``HEROTRACK_STORAGE`` is
    ``postgres`` and None otherwise, which selects in-memory repositories.
    """
    if os.getenv(STORAGE_ENV, "memory").lower() != "postgres":
        return None
    manager = get_connection_manager()
    manager.initialize()
    return manager
