"""
Tests for Settings in tavern.register.app.config and the provider catalogue
in tavern.register.oauth.providers
"""

import pytest
from pydantic import ValidationError

from tavern.register.app.config import Settings
from tavern.register.oauth.providers import (
    OAuthProvider,
    configured_providers,
    list_providers,
)

REQUIRED = {
    "remote_base_url": "http://tavern.internal:8000/",
    "remote_admin_handle": "admin",
    "remote_admin_password": "secret",
}


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in (
        "REMOTE_BASE_URL",
        "REMOTE_ADMIN_HANDLE",
        "REMOTE_ADMIN_PASSWORD",
        "SILLYTAVERN_BASE_URL",
        "SILLYTAVERN_ADMIN_HANDLE",
        "SILLYTAVERN_ADMIN_PASSWORD",
        "GITHUB_CLIENT_ID",
        "GITHUB_CLIENT_SECRET",
        "DISCORD_CLIENT_ID",
        "DISCORD_CLIENT_SECRET",
        "LINUXDO_CLIENT_ID",
        "LINUXDO_CLIENT_SECRET",
        "REDIS_DSN",
        "REDIS_URL",
    ):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings(**REQUIRED)  # type: ignore

        assert settings.remote_base_url == "http://tavern.internal:8000"
        assert settings.http_port == 3070
        assert settings.state_ttl == 300
        assert settings.ticket_ttl == 300
        assert settings.sweep_interval == 60
        assert settings.remote_timeout == 15.0
        assert settings.registration_requires_oauth is True
        assert settings.redis_dsn is None
        assert settings.metrics_backend == "none"

    def test_remote_settings_required(self):
        with pytest.raises(ValidationError):
            Settings()  # type: ignore

    def test_legacy_environment_names(self, monkeypatch):
        monkeypatch.setenv("SILLYTAVERN_BASE_URL", "https://tavern.example.com/")
        monkeypatch.setenv("SILLYTAVERN_ADMIN_HANDLE", "root")
        monkeypatch.setenv("SILLYTAVERN_ADMIN_PASSWORD", "pw")

        settings = Settings()  # type: ignore

        assert settings.remote_base_url == "https://tavern.example.com"
        assert settings.remote_admin_handle == "root"

    @pytest.mark.parametrize("field", ["remote_admin_handle", "remote_admin_password"])
    def test_blank_admin_credentials(self, field):
        with pytest.raises(ValidationError):
            Settings(**{**REQUIRED, field: "   "})  # type: ignore

    def test_blank_base_url(self):
        with pytest.raises(ValidationError):
            Settings(**{**REQUIRED, "remote_base_url": " "})  # type: ignore

    def test_redis_dsn(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/2")

        settings = Settings(**REQUIRED)  # type: ignore

        assert settings.redis_dsn is not None
        assert str(settings.redis_dsn).startswith("redis://localhost:6379")


class TestProviders:
    def test_nothing_configured(self):
        settings = Settings(**REQUIRED)  # type: ignore

        assert configured_providers(settings) == {}
        assert list_providers(settings) == []

    def test_requires_id_and_secret(self):
        settings = Settings(
            **REQUIRED, github_client_id="id", discord_client_id="id", discord_client_secret="s"
        )  # type: ignore

        assert list(configured_providers(settings)) == ["discord"]

    def test_list_providers(self):
        settings = Settings(
            **REQUIRED,
            github_client_id="gid",
            github_client_secret="gsecret",
            linuxdo_client_id="lid",
            linuxdo_client_secret="lsecret",
        )  # type: ignore

        assert list_providers(settings) == [
            {"name": "github", "displayName": "GitHub"},
            {"name": "linuxdo", "displayName": "Linux.do"},
        ]

    def test_github_uses_token_scheme(self):
        settings = Settings(
            **REQUIRED, github_client_id="gid", github_client_secret="gsecret"
        )  # type: ignore

        github = configured_providers(settings)["github"]

        assert github.authorization_scheme == "token"
        assert github.scope == "read:user"
        assert github.client_secret == "gsecret"

    def test_linuxdo_endpoint_overrides(self):
        settings = Settings(
            **REQUIRED,
            linuxdo_client_id="lid",
            linuxdo_client_secret="lsecret",
            linuxdo_token_url="https://sso.example.com/token",
        )  # type: ignore

        linuxdo = configured_providers(settings)["linuxdo"]

        assert linuxdo.token_url == "https://sso.example.com/token"
        assert linuxdo.auth_url == "https://connect.linux.do/oauth2/authorize"
        assert linuxdo.authorization_scheme == "Bearer"


class TestProviderIdentity:
    def make_provider(self, name: str) -> OAuthProvider:
        return OAuthProvider(
            name=name,
            display_name=name,
            auth_url="https://a",
            token_url="https://t",
            userinfo_url="https://u",
            scope="s",
            client_id="id",
            client_secret="secret",
        )

    def test_github(self):
        identity = self.make_provider("github").identity({"id": 42, "login": "octocat"})

        assert identity.provider_id == "42"
        assert identity.display_name == "octocat"

    def test_discord_prefers_global_name(self):
        identity = self.make_provider("discord").identity(
            {"id": "80351110224678912", "username": "nelly", "global_name": "Nelly"}
        )

        assert identity.provider_id == "80351110224678912"
        assert identity.display_name == "Nelly"

    def test_linuxdo_user_id_fallback(self):
        identity = self.make_provider("linuxdo").identity({"user_id": 9, "username": "neo"})

        assert identity.provider_id == "9"
        assert identity.display_name == "neo"

    def test_missing_id(self):
        with pytest.raises(KeyError):
            self.make_provider("github").identity({"login": "ghost"})
