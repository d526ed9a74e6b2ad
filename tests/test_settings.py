"""
Tests for required-configuration validation.
"""

import pytest

from config.settings import Settings
from utils.errors import ConfigMissing

_COMPLETE = dict(
    database_url="postgresql+asyncpg://u:p@db/app",
    jobber_client_id="cid",
    jobber_client_secret="csecret",
    jobber_redirect_uri="https://app.test/jobber/callback",
    oauth_state_secret="state",
    app_base_url="https://app.test",
)


class TestRequire:
    def test_complete_config_passes(self):
        settings = Settings(_env_file=None, **_COMPLETE)
        assert settings.require() is settings
        assert settings.missing() == []

    def test_every_missing_name_is_reported(self):
        settings = Settings(
            _env_file=None,
            **{**_COMPLETE, "jobber_client_secret": "", "oauth_state_secret": ""},
        )
        with pytest.raises(ConfigMissing) as excinfo:
            settings.require()
        assert excinfo.value.names == ["JOBBER_CLIENT_SECRET", "OAUTH_STATE_SECRET"]
        assert "OAUTH_STATE_SECRET" in str(excinfo.value)

    def test_defaults(self):
        settings = Settings(_env_file=None, **_COMPLETE)
        assert settings.oauth_state_ttl_seconds == 600
        assert settings.token_refresh_window_seconds == 120
        assert settings.provider_timeout_seconds == 10.0
