"""Tests for queue store selection."""

from pathlib import Path

import pytest
from pytest_mock import MockerFixture

from inbound_queue.adapters.sqlite_queue_store import SQLiteQueueStore
from inbound_queue.adapters.store_factory import create_queue_store
from inbound_queue.config.settings import Settings


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("POSTGRES_PASSWORD", raising=False)
    monkeypatch.delenv("DATABASE_TYPE", raising=False)


def test_sqlite_store_is_default(tmp_path: Path) -> None:
    settings = Settings(db_path=str(tmp_path / "data" / "queue.db"))

    store = create_queue_store(settings)

    assert isinstance(store, SQLiteQueueStore)
    assert (tmp_path / "data" / "queue.db").exists()


def test_postgres_requires_password() -> None:
    settings = Settings(database_type="postgres")

    with pytest.raises(ValueError, match="POSTGRES_PASSWORD"):
        create_queue_store(settings)


def test_postgres_store_uses_pool_connections(mocker: MockerFixture) -> None:
    pool_cls = mocker.patch("inbound_queue.adapters.store_factory.PostgresConnectionPool")
    settings = Settings(
        database_type="postgres",
        postgres_password="secret",
        postgres_host="db.internal",
        postgres_max_connections=4,
    )

    store = create_queue_store(settings)

    kwargs = pool_cls.call_args.kwargs
    assert kwargs["host"] == "db.internal"
    assert kwargs["password"] == "secret"
    assert kwargs["max_connections"] == 4

    store.close()
    pool_cls.return_value.close.assert_called_once()


def test_unknown_database_type_is_rejected() -> None:
    settings = Settings()
    object.__setattr__(settings, "database_type", "mysql")

    with pytest.raises(ValueError, match="Unsupported database type"):
        create_queue_store(settings)
