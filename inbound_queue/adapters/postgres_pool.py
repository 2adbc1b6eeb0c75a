"""psycopg2 connection pool with retried checkout and usage tracking."""

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from time import sleep
from typing import Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import register_uuid

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.exceptions import QueueStoreUnavailableError

DEFAULT_POOL_MIN_CONNECTIONS: Final[int] = 2
DEFAULT_POOL_MAX_CONNECTIONS: Final[int] = 10
POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0
POOL_USAGE_WARNING_THRESHOLD: Final[float] = 0.8

logger = get_logger(__name__)

_UUID_ADAPTER_REGISTERED: bool = False
_UUID_ADAPTER_LOCK: Lock = Lock()


def _ensure_uuid_adapter_registered() -> None:
    """Register psycopg2 adapters required by the queue store."""

    global _UUID_ADAPTER_REGISTERED
    if _UUID_ADAPTER_REGISTERED:
        return

    with _UUID_ADAPTER_LOCK:
        if _UUID_ADAPTER_REGISTERED:
            return
        register_uuid()
        _UUID_ADAPTER_REGISTERED = True


class PostgresConnectionPool:
    """Threaded psycopg2 pool handing out transactional connections."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        *,
        min_connections: int = DEFAULT_POOL_MIN_CONNECTIONS,
        max_connections: int = DEFAULT_POOL_MAX_CONNECTIONS,
        statement_timeout_ms: int = 10_000,
        connect_timeout_seconds: int = 10,
        application_name: str = "inbound_queue",
        ssl_mode: str | None = None,
        acquire_max_attempts: int = POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT,
    ):
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password
        self._min_connections = min_connections
        self._max_connections = max_connections
        self._statement_timeout_ms = statement_timeout_ms
        self._connect_timeout_seconds = connect_timeout_seconds
        self._application_name = application_name
        self._ssl_mode = ssl_mode

        self._acquire_max_attempts = acquire_max_attempts
        self._in_use_count = 0
        self._high_watermark = 0
        self._usage_warning_emitted = False
        self._lock = Lock()

        if self._min_connections <= 0:
            raise QueueStoreUnavailableError("postgres_min_connections must be positive")
        if self._max_connections < self._min_connections:
            raise QueueStoreUnavailableError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )

        _ensure_uuid_adapter_registered()
        self._pool = self._create_pool()

    def _create_pool(self) -> psycopg2_pool.ThreadedConnectionPool:
        """Create the pool and validate it with a round trip."""
        options = " ".join(
            [
                f"-c statement_timeout={self._statement_timeout_ms}",
                f"-c application_name={self._application_name}",
            ]
        )
        conn_kwargs: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "database": self._database,
            "user": self._user,
            "password": self._password,
            "connect_timeout": self._connect_timeout_seconds,
            "options": options,
        }
        if self._ssl_mode:
            conn_kwargs["sslmode"] = self._ssl_mode

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                self._min_connections,
                self._max_connections,
                **conn_kwargs,
            )
        except PsycopgError as exc:
            raise QueueStoreUnavailableError(
                f"Failed to initialize PostgreSQL pool: {exc}"
            ) from exc

        try:
            conn = pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            finally:
                pool.putconn(conn)
        except PsycopgError as exc:
            pool.closeall()
            raise QueueStoreUnavailableError(
                f"PostgreSQL validation query failed: {exc}"
            ) from exc

        logger.info(
            "postgres_pool_initialized",
            host=self._host,
            port=self._port,
            database=self._database,
            min_connections=self._min_connections,
            max_connections=self._max_connections,
            statement_timeout_ms=self._statement_timeout_ms,
        )
        return pool

    def _acquire_with_retry(self) -> extensions.connection:
        attempt = 0
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        while True:
            attempt += 1
            try:
                conn = self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= self._acquire_max_attempts:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._max_connections,
                        in_use=self._in_use_count,
                    )
                    raise QueueStoreUnavailableError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc

                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                    max_attempts=self._acquire_max_attempts,
                    in_use=self._in_use_count,
                )
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)
                continue

            self._register_checkout()
            return conn

    def _register_checkout(self) -> None:
        with self._lock:
            self._in_use_count += 1
            if self._in_use_count > self._high_watermark:
                self._high_watermark = self._in_use_count

            usage_ratio = self._in_use_count / self._max_connections
            if (
                usage_ratio >= POOL_USAGE_WARNING_THRESHOLD
                and not self._usage_warning_emitted
            ):
                self._usage_warning_emitted = True
                logger.warning(
                    "postgres_pool_usage_high",
                    in_use=self._in_use_count,
                    max_connections=self._max_connections,
                )

    def _release(self, conn: extensions.connection, *, close: bool) -> None:
        try:
            self._pool.putconn(conn, close=close)
        except PsycopgError:
            logger.warning("postgres_putconn_failed", close=close, exc_info=True)
        finally:
            with self._lock:
                if self._in_use_count > 0:
                    self._in_use_count -= 1
                if self._in_use_count / self._max_connections < POOL_USAGE_WARNING_THRESHOLD:
                    self._usage_warning_emitted = False

    @contextmanager
    def connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection; uncommitted work is rolled back on exit."""
        conn: extensions.connection | None = None
        try:
            conn = self._acquire_with_retry()
            conn.autocommit = False
            yield conn
        except PsycopgError as exc:
            if conn is not None:
                try:
                    conn.rollback()
                except PsycopgError:
                    logger.warning("postgres_connection_rollback_failed", exc_info=True)
                finally:
                    self._release(conn, close=True)
                    conn = None
            raise QueueStoreUnavailableError(f"PostgreSQL connection error: {exc}") from exc
        finally:
            if conn is not None:
                try:
                    if conn.get_transaction_status() in (
                        extensions.TRANSACTION_STATUS_INTRANS,
                        extensions.TRANSACTION_STATUS_INERROR,
                    ):
                        conn.rollback()
                except PsycopgError:
                    logger.warning("postgres_connection_cleanup_failed", exc_info=True)
                    self._release(conn, close=True)
                else:
                    self._release(conn, close=False)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        with self._lock:
            self._in_use_count = 0
            self._usage_warning_emitted = False
        logger.info(
            "postgres_pool_closed",
            database=self._database,
            high_watermark=self._high_watermark,
        )


__all__ = ["PostgresConnectionPool"]
