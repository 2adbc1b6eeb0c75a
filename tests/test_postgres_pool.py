from __future__ import annotations

from typing import Any

import pytest
from psycopg2 import OperationalError, extensions
from psycopg2 import pool as psycopg2_pool
from pytest_mock import MockerFixture

from inbound_queue.adapters.postgres_pool import PostgresConnectionPool
from inbound_queue.domain.exceptions import QueueStoreUnavailableError


@pytest.fixture
def threaded_pool(mocker: MockerFixture) -> Any:
    pool_cls = mocker.patch(
        "inbound_queue.adapters.postgres_pool.psycopg2_pool.ThreadedConnectionPool"
    )
    return pool_cls.return_value


def _pool(**overrides: Any) -> PostgresConnectionPool:
    params: dict[str, Any] = {
        "host": "localhost",
        "port": 5432,
        "database": "inbound_queue",
        "user": "postgres",
        "password": "secret",
        "min_connections": 1,
        "max_connections": 2,
    }
    params.update(overrides)
    return PostgresConnectionPool(**params)


def test_pool_is_validated_on_creation(threaded_pool: Any) -> None:
    validation_conn = threaded_pool.getconn.return_value

    _pool()

    cursor = validation_conn.cursor.return_value.__enter__.return_value
    cursor.execute.assert_called_once_with("SELECT 1")
    threaded_pool.putconn.assert_called_once_with(validation_conn)


def test_invalid_bounds_are_rejected(threaded_pool: Any) -> None:
    with pytest.raises(QueueStoreUnavailableError):
        _pool(min_connections=0)
    with pytest.raises(QueueStoreUnavailableError):
        _pool(min_connections=3, max_connections=2)


def test_failed_validation_closes_pool(threaded_pool: Any) -> None:
    threaded_pool.getconn.side_effect = OperationalError("connection refused")

    with pytest.raises(QueueStoreUnavailableError):
        _pool()

    threaded_pool.closeall.assert_called_once()


def test_acquire_retries_until_connection_available(
    threaded_pool: Any, mocker: MockerFixture
) -> None:
    store_pool = _pool()
    sleep = mocker.patch("inbound_queue.adapters.postgres_pool.sleep")
    conn = mocker.MagicMock()
    conn.get_transaction_status.return_value = extensions.TRANSACTION_STATUS_IDLE
    threaded_pool.getconn.side_effect = [psycopg2_pool.PoolError("exhausted"), conn]
    threaded_pool.putconn.reset_mock()

    with store_pool.connection() as borrowed:
        assert borrowed is conn

    sleep.assert_called_once()
    threaded_pool.putconn.assert_called_once_with(conn, close=False)
    conn.rollback.assert_not_called()


def test_acquire_gives_up_after_max_attempts(
    threaded_pool: Any, mocker: MockerFixture
) -> None:
    store_pool = _pool(acquire_max_attempts=2)
    # construction borrows one connection for the validation query
    threaded_pool.getconn.reset_mock()
    mocker.patch("inbound_queue.adapters.postgres_pool.sleep")
    threaded_pool.getconn.side_effect = psycopg2_pool.PoolError("exhausted")

    with pytest.raises(QueueStoreUnavailableError):
        with store_pool.connection():
            pass

    assert threaded_pool.getconn.call_count == 2


def test_open_transaction_is_rolled_back_on_exit(
    threaded_pool: Any, mocker: MockerFixture
) -> None:
    store_pool = _pool()
    conn = mocker.MagicMock()
    conn.get_transaction_status.return_value = extensions.TRANSACTION_STATUS_INTRANS
    threaded_pool.getconn.side_effect = None
    threaded_pool.getconn.return_value = conn

    with store_pool.connection():
        pass

    conn.rollback.assert_called_once()
    threaded_pool.putconn.assert_called_with(conn, close=False)


def test_driver_errors_are_wrapped_and_connection_discarded(
    threaded_pool: Any, mocker: MockerFixture
) -> None:
    store_pool = _pool()
    conn = mocker.MagicMock()
    threaded_pool.getconn.return_value = conn

    with pytest.raises(QueueStoreUnavailableError):
        with store_pool.connection():
            raise OperationalError("server closed the connection")

    conn.rollback.assert_called_once()
    threaded_pool.putconn.assert_called_with(conn, close=True)


def test_close_closes_all_connections(threaded_pool: Any) -> None:
    store_pool = _pool()

    store_pool.close()

    threaded_pool.closeall.assert_called_once()
