"""Factory for creating queue store instances."""

from inbound_queue.adapters.postgres_pool import PostgresConnectionPool
from inbound_queue.adapters.postgres_queue_store import PostgresQueueStore
from inbound_queue.adapters.sqlite_queue_store import SQLiteQueueStore
from inbound_queue.config.logging_config import get_logger
from inbound_queue.config.settings import Settings
from inbound_queue.ports.queue_store import MessageStorePort
from inbound_queue.services.store_guard import ensure_message_store

logger = get_logger(__name__)


def create_queue_store(settings: Settings) -> MessageStorePort:
    """Create the queue store selected by ``settings.database_type``.

    Raises:
        ValueError: If database_type is not supported or PostgreSQL
            is selected without a password
        QueueStoreUnavailableError: On connection errors
    """
    if settings.database_type == "sqlite":
        logger.info("queue_store_sqlite_selected", path=settings.db_path)
        return ensure_message_store(SQLiteQueueStore(db_path=settings.db_path))

    if settings.database_type == "postgres":
        if not settings.postgres_password:
            raise ValueError(
                "POSTGRES_PASSWORD environment variable must be set when using PostgreSQL"
            )

        logger.info(
            "queue_store_postgres_selected",
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
        )
        pool = PostgresConnectionPool(
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
            password=settings.postgres_password.get_secret_value(),
            min_connections=settings.postgres_min_connections,
            max_connections=settings.postgres_max_connections,
            statement_timeout_ms=settings.postgres_statement_timeout_ms,
            connect_timeout_seconds=settings.postgres_connect_timeout_seconds,
            application_name=settings.postgres_application_name,
            ssl_mode=settings.postgres_ssl_mode,
        )
        return ensure_message_store(
            PostgresQueueStore(pool.connection, on_close=pool.close)
        )

    raise ValueError(
        f"Unsupported database type: {settings.database_type}. "
        f"Must be 'sqlite' or 'postgres'"
    )


__all__ = ["create_queue_store"]
