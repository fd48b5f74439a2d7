"""
tests/test_db.py -- Engine construction and storage error translation.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import SingletonThreadPool

from auth.db import is_memory_url, make_engine, storage_errors
from auth.errors import StorageError
from tests.helpers import memory_url


@pytest.mark.parametrize(
    "url, expected",
    [
        ("sqlite://", True),
        ("sqlite:///:memory:", True),
        ("sqlite:///file:x?mode=memory&cache=shared&uri=true", True),
        ("sqlite:////var/lib/warden/warden.db", False),
        ("postgresql://warden@db/warden", False),
    ],
)
def test_is_memory_url(url: str, expected: bool) -> None:
    assert is_memory_url(url) is expected


def test_memory_url_gets_singleton_thread_pool() -> None:
    engine = make_engine(memory_url("pool"))
    try:
        assert isinstance(engine.pool, SingletonThreadPool)
    finally:
        engine.dispose()


def test_file_url_keeps_default_pool(tmp_path) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'warden.db'}")
    try:
        assert not isinstance(engine.pool, SingletonThreadPool)
    finally:
        engine.dispose()


def test_storage_errors_translates_and_chains() -> None:
    cause = OperationalError("SELECT 1", {}, Exception("database is locked"))
    with pytest.raises(StorageError) as info:
        with storage_errors("select_one"):
            raise cause
    assert info.value.__cause__ is cause
    assert "locked" not in info.value.message
