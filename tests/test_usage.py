"""
Unit tests for usage collection.
"""

import pytest

from screen_guard.core.errors import PermissionDenied
from screen_guard.core.usage import UsageCollector
from screen_guard.storage.repository import UsageRepository


class FakeUsageSource:
    def __init__(self, readings, permission=True):
        self.readings = readings
        self.permission = permission

    def has_usage_permission(self):
        return self.permission

    def minutes_used_today(self, package_name):
        return self.readings.get(package_name)


class TestUsageCollector:
    """Test copying device readings into the usage store."""

    def test_collect_records_known_readings(self, db_path, tracked_apps, clock):
        source = FakeUsageSource({
            "com.google.android.youtube": 42,
            "com.facebook.katana": 0,
        })
        repository = UsageRepository(db_path)
        collector = UsageCollector(source, repository, tracked_apps, clock)

        result = collector.collect("u1")

        assert result.recorded == {"youtube": 42, "facebook": 0}
        assert sorted(result.unknown) == ["instagram", "twitter"]
        assert not result.permission_denied
        assert repository.get_usage_for_day("u1", clock().date()) == {"youtube": 42, "facebook": 0}

    def test_missing_permission_writes_nothing(self, db_path, tracked_apps, clock):
        """Without usage access nothing is written, so nothing gets blocked."""
        source = FakeUsageSource({"com.google.android.youtube": 500}, permission=False)
        repository = UsageRepository(db_path)
        collector = UsageCollector(source, repository, tracked_apps, clock)

        result = collector.collect("u1")

        assert result.permission_denied
        assert result.unknown == tracked_apps.ids
        assert repository.get_usage_for_day("u1", clock().date()) == {}

    def test_lower_reading_keeps_last_known_value(self, db_path, tracked_apps, clock):
        source = FakeUsageSource({"com.google.android.youtube": 60})
        repository = UsageRepository(db_path)
        collector = UsageCollector(source, repository, tracked_apps, clock)
        collector.collect("u1")

        source.readings["com.google.android.youtube"] = 10
        result = collector.collect("u1")

        assert result.recorded["youtube"] == 60

    def test_negative_reading_is_unknown(self, db_path, tracked_apps, clock):
        source = FakeUsageSource({"com.google.android.youtube": -5})
        collector = UsageCollector(source, UsageRepository(db_path), tracked_apps, clock)

        result = collector.collect("u1")

        assert "youtube" in result.unknown
        assert "youtube" not in result.recorded

    def test_check_permission_raises(self, db_path, tracked_apps, clock):
        source = FakeUsageSource({}, permission=False)
        collector = UsageCollector(source, UsageRepository(db_path), tracked_apps, clock)

        with pytest.raises(PermissionDenied) as exc_info:
            collector.check_permission()
        assert exc_info.value.permission == "usage_access"
