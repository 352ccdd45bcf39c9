"""Tests for engine construction and session handling."""

import pytest
from sqlalchemy import select

from gateway.core.database import (
    create_db_engine,
    get_session_factory,
    quota_counters,
    resolve_database_url,
    session_scope,
)


def test_session_factory_is_built_once():
    assert get_session_factory() is get_session_factory()


def test_session_scope_binds_given_engine(engine):
    with session_scope(engine) as session:
        assert session.get_bind() is engine


def test_session_scope_rolls_back_on_error(engine):
    with pytest.raises(RuntimeError):
        with session_scope(engine) as session:
            session.execute(quota_counters.insert().values(user_id="u1", kind="screenshot", day="2026-03-01", count=1))
            raise RuntimeError("boom")

    with session_scope(engine) as session:
        assert session.execute(select(quota_counters)).first() is None


def test_database_url_comes_only_from_caller(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///from-env.db")
    monkeypatch.setenv("TEST_DATABASE_URL", "sqlite:///from-env-test.db")
    with pytest.raises(ValueError):
        resolve_database_url(None)
    assert resolve_database_url("sqlite:///explicit.db") == "sqlite:///explicit.db"


def test_sqlite_engine_waits_on_locks(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'locks.db'}")
    try:
        with engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA busy_timeout").scalar() == 30000
    finally:
        engine.dispose()
