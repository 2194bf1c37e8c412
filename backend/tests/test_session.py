"""Tests for engine configuration."""

from vms.core.config import Settings
from vms.db.session import engine_options


class TestEngineOptions:
    def test_sqlite_is_shared_across_threads(self):
        connect_args, pool = engine_options("sqlite:///./data/vms.db", Settings())
        assert connect_args == {"check_same_thread": False}
        assert "pool_size" not in pool

    def test_server_pool_follows_settings(self):
        config = Settings(db_pool_size=3, db_max_overflow=2, db_pool_recycle_seconds=600)
        connect_args, pool = engine_options("postgresql://vms@db/vms", config)
        assert connect_args == {}
        assert pool["pool_size"] == 3
        assert pool["max_overflow"] == 2
        assert pool["pool_recycle"] == 600

    def test_default_pool_is_small(self):
        _, pool = engine_options("postgresql://vms@db/vms", Settings())
        assert pool["pool_size"] + pool["max_overflow"] <= 10
