"""Tests for Settings.validate_startup."""

import pytest

from simplecal.config import Settings


def make(**overrides) -> Settings:
    base = {"database_url": "sqlite://", "organizer_api_key": "k"}
    base.update(overrides)
    return Settings(_env_file=None, **base)


class TestValidateStartup:
    def test_defaults_are_valid(self):
        warnings = make().validate_startup()
        assert any("process memory" in w for w in warnings)

    def test_non_positive_ttl_is_fatal(self):
        with pytest.raises(ValueError, match="CLAIM_TTL_SECONDS"):
            make(claim_ttl_seconds=0).validate_startup()

    def test_unknown_backend_is_fatal(self):
        with pytest.raises(ValueError, match="not supported"):
            make(claim_backend="memcached").validate_startup()

    def test_redis_requires_url(self):
        with pytest.raises(ValueError, match="REDIS_URL"):
            make(claim_backend="redis", redis_url="").validate_startup()

    def test_redis_backend_has_no_memory_warning(self):
        warnings = make(claim_backend="redis").validate_startup()
        assert not any("process memory" in w for w in warnings)

    def test_missing_key_warns(self):
        warnings = make(organizer_api_key="", debug=False).validate_startup()
        assert any("locked in production" in w for w in warnings)
        warnings = make(organizer_api_key="", debug=True).validate_startup()
        assert any("open" in w for w in warnings)

    def test_sqlite_outside_debug_warns(self):
        warnings = make(debug=False).validate_startup()
        assert any("PostgreSQL" in w for w in warnings)

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CLAIM_TTL_SECONDS", "45")
        monkeypatch.setenv("CLAIM_BACKEND", "redis")
        s = Settings(_env_file=None)
        assert s.claim_ttl_seconds == 45
        assert s.claim_backend == "redis"
