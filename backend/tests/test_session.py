"""Engine options and job session scope"""
from unittest.mock import Mock, patch

import pytest

from casefund.core.config import settings
from casefund.db import session as session_module
from casefund.db.session import engine_options, session_scope


class TestEngineOptions:
    def test_sqlite_is_shared_across_threads(self):
        assert engine_options("sqlite:///:memory:") == {"connect_args": {"check_same_thread": False}}

    def test_postgres_pool_comes_from_settings(self):
        options = engine_options("postgresql://casefund:pw@db:5432/casefund")

        assert options["pool_pre_ping"] is True
        assert options["pool_size"] == settings.DB_POOL_SIZE
        assert options["max_overflow"] == settings.DB_MAX_OVERFLOW
        assert options["pool_timeout"] == settings.DB_POOL_TIMEOUT
        assert options["pool_recycle"] == settings.DB_POOL_RECYCLE
        assert "connect_args" not in options


class TestSessionScope:
    def test_closes_after_job(self):
        db = Mock()
        with patch.object(session_module, "SessionLocal", return_value=db):
            with session_scope() as scoped:
                assert scoped is db

        db.rollback.assert_not_called()
        db.close.assert_called_once()

    def test_rolls_back_when_job_raises(self):
        db = Mock()
        with patch.object(session_module, "SessionLocal", return_value=db):
            with pytest.raises(RuntimeError):
                with session_scope():
                    raise RuntimeError("job failed")

        db.rollback.assert_called_once()
        db.close.assert_called_once()
