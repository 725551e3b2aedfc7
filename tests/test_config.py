"""
Tests for configuration loading.
"""

import pytest

from domain_router.config import Settings, get_settings


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.host == "0.0.0.0"
        assert settings.port == 8000
        assert settings.platform_domain == "platform.tld"
        assert settings.verification_prefix == "_platform-verify"
        assert settings.max_domains_per_tenant == 5
        assert settings.routing_cache_max_entries == 10000

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("DOMAIN_ROUTER_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("DOMAIN_ROUTER_MAX_WORKERS", "3")
        monkeypatch.setenv("DOMAIN_ROUTER_EDGE_IPS", '["203.0.113.1", "203.0.113.2"]')

        settings = Settings()

        assert settings.log_level == "DEBUG"
        assert settings.max_workers == 3
        assert settings.edge_ips == ["203.0.113.1", "203.0.113.2"]

    def test_empty_redis_url_means_memory(self):
        assert Settings().redis_url == ""

    def test_validate_requires_credentials(self):
        settings = Settings(hosting_api_token="")
        with pytest.raises(ValueError):
            settings.validate_required()

        settings = Settings(
            hosting_api_token="",
            hosting_token_url="https://auth.test/token",
            hosting_client_id="client",
        )
        assert settings.validate_required()

    def test_validate_backoff(self):
        settings = Settings(backoff_base=600, backoff_max=60)
        with pytest.raises(ValueError):
            settings.validate_required()

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
