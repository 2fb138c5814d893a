import pytest

from onenote_mcp.config import DEFAULT_CLIENT_ID, Settings

ENV_VARS = (
    "AZURE_CLIENT_ID",
    "ONENOTE_MCP_AUTHORITY",
    "ONENOTE_MCP_REDIRECT_PORT",
    "ONENOTE_MCP_AUTH_TIMEOUT",
    "ONENOTE_MCP_KEYRING_SERVICE",
    "ONENOTE_MCP_MIN_SPACING_MS",
    "ONENOTE_MCP_MAX_DELAY_MS",
    "ONENOTE_MCP_MAX_RETRIES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env(load_env_file=False)

        assert settings.client_id == DEFAULT_CLIENT_ID
        assert settings.uses_default_client_id
        assert settings.redirect_uri == "http://localhost:8400"
        assert settings.token_endpoint == (
            "https://login.microsoftonline.com/consumers/oauth2/v2.0/token"
        )
        assert settings.max_retries == 3

    def test_environment_overrides(self, monkeypatch):
        # Arrange
        monkeypatch.setenv("AZURE_CLIENT_ID", "my-app")
        monkeypatch.setenv("ONENOTE_MCP_AUTHORITY", "https://login.example.com/common/")
        monkeypatch.setenv("ONENOTE_MCP_REDIRECT_PORT", "9000")
        monkeypatch.setenv("ONENOTE_MCP_MAX_DELAY_MS", "5000")

        # Act
        settings = Settings.from_env(load_env_file=False)

        # Assert
        assert settings.client_id == "my-app"
        assert not settings.uses_default_client_id
        assert settings.redirect_uri == "http://localhost:9000"
        assert settings.authorization_endpoint == (
            "https://login.example.com/common/oauth2/v2.0/authorize"
        )
        assert settings.max_delay_ms == 5000.0

    def test_invalid_numbers_fall_back_to_defaults(self, monkeypatch, caplog):
        monkeypatch.setenv("ONENOTE_MCP_REDIRECT_PORT", "eighty")

        settings = Settings.from_env(load_env_file=False)

        assert settings.redirect_port == 8400
        assert "ONENOTE_MCP_REDIRECT_PORT" in caplog.text

    def test_redirect_path_is_appended(self):
        settings = Settings(redirect_path="/callback")

        assert settings.redirect_uri == "http://localhost:8400/callback"
