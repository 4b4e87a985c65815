"""
Test Database
Units of work and the raw SQL helpers
"""

import pytest
from sqlalchemy import select

from models import Setting


def _insert_setting(database, key, value):
    return database.execute(
        "INSERT INTO settings (key, value, description, updated_at) "
        "VALUES (:key, :value, :description, :updated_at)",
        {"key": key, "value": value, "description": None, "updated_at": 1700000000},
    )


class TestRawSql:
    """query / query_one / execute"""

    def test_execute_returns_rowcount(self, database):
        assert _insert_setting(database, "motd", "hello") == 1
        updated = database.execute(
            "UPDATE settings SET value = :value WHERE key = :key", {"key": "motd", "value": "bye"}
        )
        assert updated == 1
        assert database.execute("DELETE FROM settings WHERE key = :key", {"key": "missing"}) == 0

    def test_execute_commits(self, database):
        _insert_setting(database, "motd", "hello")
        with database.session() as db:
            stored = db.execute(select(Setting).where(Setting.key == "motd")).scalar_one()
            assert stored.value == "hello"

    def test_query_returns_dict_rows(self, database):
        _insert_setting(database, "a", "1")
        _insert_setting(database, "b", "2")
        rows = database.query("SELECT key, value FROM settings ORDER BY key")
        assert rows == [{"key": "a", "value": "1"}, {"key": "b", "value": "2"}]

    def test_query_one(self, database):
        _insert_setting(database, "motd", "hello")
        row = database.query_one("SELECT value FROM settings WHERE key = :key", {"key": "motd"})
        assert row == {"value": "hello"}
        assert database.query_one("SELECT value FROM settings WHERE key = :key", {"key": "nope"}) is None


class TestUnitOfWork:
    """session() commit/rollback"""

    def test_rollback_on_error(self, database):
        with pytest.raises(RuntimeError):
            with database.session() as db:
                db.add(Setting(key="motd", value="hello", updated_at=1700000000))
                db.flush()
                raise RuntimeError("boom")
        assert database.query("SELECT key FROM settings") == []

    def test_connection_check(self, database):
        assert database.test_connection() is True
        assert "pool_class" in database.get_pool_stats()
