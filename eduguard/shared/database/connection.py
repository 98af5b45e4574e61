"""PostgreSQL connection pooling for EduGuard state.

Risk flags and per-school rule configurations are the only state this
core owns; both go through one ThreadedConnectionPool. Detection sweeps
and bulk sends hit the pool from worker threads, so pool start-up is
guarded and every statement runs under a server-side timeout.
"""
import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseConfig:
    """Where and how to connect.

    Production credentials live in AWS Secrets Manager (``DB_SECRET_ARN``);
    development reads plain environment variables.
    """
    host: str
    port: int = 5432
    database: str = "eduguard"
    username: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    connect_timeout: int = 10
    statement_timeout_ms: int = 30000
    application_name: str = "eduguard"
    ssl_mode: str = "require"

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Environment variables:
            DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD
            DB_MIN_CONN / DB_MAX_CONN: Pool bounds (default 2 / 10)
            DB_STATEMENT_TIMEOUT_MS: Per-statement limit (default 30000)
            DB_APP_NAME: application_name reported to the server
            DB_SSL_MODE: libpq sslmode (default require)
        """
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "eduguard"),
            username=os.getenv("DB_USER", ""),
            password=os.getenv("DB_PASSWORD", ""),
            min_connections=int(os.getenv("DB_MIN_CONN", "2")),
            max_connections=int(os.getenv("DB_MAX_CONN", "10")),
            statement_timeout_ms=int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "30000")),
            application_name=os.getenv("DB_APP_NAME", "eduguard"),
            ssl_mode=os.getenv("DB_SSL_MODE", "require"),
        )

    @classmethod
    def from_secrets_manager(cls, secret_arn: str, region: str = "us-east-1") -> "DatabaseConfig":
        """Credentials and endpoint from an RDS-style secret.

        Pool sizing and timeouts still come from the environment.

        Raises:
            Exception: Whatever boto3 raised; logged first
        """
        import boto3

        try:
            client = boto3.client("secretsmanager", region_name=region)
            secret = json.loads(client.get_secret_value(SecretId=secret_arn)["SecretString"])
        except Exception as e:
            logger.error(
                "SECRETS_MANAGER_LOAD_FAILED",
                extra={"secret_arn": secret_arn, "error": str(e), "error_type": type(e).__name__}
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
            statement_timeout_ms=base.statement_timeout_ms,
            application_name=base.application_name,
            ssl_mode=base.ssl_mode,
        )

    @classmethod
    def resolve(cls) -> "DatabaseConfig":
        """Secrets Manager when DB_SECRET_ARN is set, else the environment."""
        secret_arn = os.getenv("DB_SECRET_ARN")
        if secret_arn:
            return cls.from_secrets_manager(secret_arn, region=os.getenv("AWS_REGION", "us-east-1"))
        return cls.from_env()

    def connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for psycopg2.connect / the pool."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            "sslmode": self.ssl_mode,
            "application_name": self.application_name,
            "options": f"-c statement_timeout={self.statement_timeout_ms}",
        }


class ConnectionManager:
    """Owns the pool; hands out one connection per ``get_connection()`` block.

    The pool is created on first use (or by ``initialize()`` at start-up).
    Connections that the server closed while checked out are discarded
    instead of going back into the pool.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._pool = None
        self._initialized = False
        self._init_lock = threading.Lock()

        logger.info(
            "CONNECTION_MANAGER_CREATED",
            extra={
                "host": config.host,
                "database": config.database,
                "max_connections": config.max_connections,
            }
        )

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return

            from psycopg2 import pool

            try:
                self._pool = pool.ThreadedConnectionPool(
                    minconn=self.config.min_connections,
                    maxconn=self.config.max_connections,
                    **self.config.connect_kwargs()
                )
            except Exception as e:
                logger.error(
                    "CONNECTION_POOL_INIT_FAILED",
                    extra={"host": self.config.host, "error": str(e), "error_type": type(e).__name__}
                )
                raise

            self._initialized = True

        logger.info(
            "CONNECTION_POOL_INITIALIZED",
            extra={
                "host": self.config.host,
                "database": self.config.database,
                "min_connections": self.config.min_connections,
                "max_connections": self.config.max_connections,
            }
        )

    @contextmanager
    def get_connection(self):
        """Check a connection out of the pool for the duration of the block.

        Transaction control (commit/rollback) is the caller's job.
        """
        if not self._initialized:
            self.initialize()

        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn, close=conn.closed != 0)

    def health_check(self) -> Dict[str, Any]:
        """Round-trip ``SELECT 1`` for readiness probes."""
        if not self._initialized:
            return {"status": "not_initialized", "healthy": False}

        started = time.monotonic()
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
        except Exception as e:
            logger.error(
                "DATABASE_HEALTH_CHECK_FAILED",
                extra={"host": self.config.host, "error": str(e), "error_type": type(e).__name__}
            )
            return {"status": "error", "healthy": False, "error": str(e)}

        return {
            "status": "connected",
            "healthy": True,
            "database": self.config.database,
            "latency_ms": round((time.monotonic() - started) * 1000, 1),
        }

    def close(self) -> None:
        """Close every pooled connection (shutdown)."""
        with self._init_lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
                logger.info("CONNECTION_POOL_CLOSED", extra={"host": self.config.host})
            self._initialized = False


# Process-wide manager shared by the repositories
_connection_manager: Optional[ConnectionManager] = None
_manager_lock = threading.Lock()


def get_connection_manager() -> ConnectionManager:
    """The process-wide ConnectionManager, built from DatabaseConfig.resolve()."""
    global _connection_manager

    with _manager_lock:
        if _connection_manager is None:
            _connection_manager = ConnectionManager(DatabaseConfig.resolve())
        return _connection_manager
