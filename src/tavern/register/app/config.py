"""
Configuration Module

This module defines the configuration for the registration service using
Pydantic settings, and the typed AppKeys through which request handlers and
background tasks reach shared resources.

The Settings class is loaded from environment variables. The remote account
service location and its administrator credentials have no defaults and must
be provided.

Key configuration areas include:
- Service networking and public URLs
- The remote account service and its administrator identity
- Database and optional Redis connections
- OAuth provider credentials
- Token lifetimes and background sweep cadence
- Monitoring and error reporting
"""

import asyncio
from typing import Final, Literal, Optional
import logging
from pydantic import (
    AliasChoices,
    Field,
    RedisDsn,
    field_validator,
)
from pydantic_settings import BaseSettings
from aiohttp import web
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from aiohttp import ClientSession
from redis import asyncio as redis

from tavern.register.app.metrics import MetricsClient
from tavern.register.model.health import HealthGauge
from tavern.register.oauth.state import StateTokenStore
from tavern.register.oauth.tickets import AuthorizationTicketStore
from tavern.register.remote.provisioning import RemoteProvisioningClient


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the registration service.

    Environment variables are mapped to fields automatically, with aliases for
    legacy variable names. For example, the remote account
    service can be set with either REMOTE_BASE_URL or SILLYTAVERN_BASE_URL.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and error details.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=3070)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    external_base_url: str = "http://localhost:3070"
    """
    Public base URL of this service, used to build OAuth redirect URIs.
    Set with EXTERNAL_BASE_URL environment variable.
    """

    register_page_url: str = "/register"
    """
    Page the OAuth callback redirects the browser to, with either a ticket or
    the already bound handle in the query string.
    Set with REGISTER_PAGE_URL environment variable.
    """

    registration_requires_oauth: bool = True
    """
    When false, POST /register without a ticket creates the account directly.
    Set with REGISTRATION_REQUIRES_OAUTH environment variable.
    """

    # Remote account service
    remote_base_url: str = Field(
        validation_alias=AliasChoices("remote_base_url", "sillytavern_base_url"),
    )
    """
    Base URL of the remote account service.
    Set with REMOTE_BASE_URL or SILLYTAVERN_BASE_URL environment variables.
    """

    remote_admin_handle: str = Field(
        validation_alias=AliasChoices(
            "remote_admin_handle", "sillytavern_admin_handle"
        ),
    )
    """
    Handle of the administrator account used to create accounts.
    Set with REMOTE_ADMIN_HANDLE or SILLYTAVERN_ADMIN_HANDLE environment variables.
    """

    remote_admin_password: str = Field(
        validation_alias=AliasChoices(
            "remote_admin_password", "sillytavern_admin_password"
        ),
    )
    """
    Password of the administrator account.
    Set with REMOTE_ADMIN_PASSWORD or SILLYTAVERN_ADMIN_PASSWORD environment variables.
    """

    remote_timeout: float = 15.0
    """
    Total timeout in seconds for each outbound call to the remote account
    service or an OAuth provider.
    Set with REMOTE_TIMEOUT environment variable.
    """

    # Storage
    database_url: str = Field(
        "sqlite+aiosqlite:///data/tavern-register.db",
        validation_alias=AliasChoices("database_url", "pg_dsn"),
    )
    """
    SQLAlchemy async connection string for identity bindings.
    Set with DATABASE_URL or PG_DSN environment variables.
    """

    redis_dsn: Optional[RedisDsn] = Field(
        None,
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )
    """
    Optional Redis connection string. When set, OAuth state tokens and
    authorization tickets are kept in Redis and shared between instances.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    # Lifetimes
    state_ttl: int = 300
    """Lifetime in seconds of an OAuth state token."""

    ticket_ttl: int = 300
    """Lifetime in seconds of an authorization ticket."""

    sweep_interval: int = 60
    """Seconds between sweeps of abandoned state tokens and tickets."""

    # OAuth providers
    github_client_id: Optional[str] = None
    github_client_secret: Optional[str] = None

    discord_client_id: Optional[str] = None
    discord_client_secret: Optional[str] = None

    linuxdo_client_id: Optional[str] = None
    linuxdo_client_secret: Optional[str] = None
    linuxdo_auth_url: Optional[str] = None
    linuxdo_token_url: Optional[str] = None
    linuxdo_userinfo_url: Optional[str] = None

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: Literal["telegraf", "none"] = "none"
    """
    Metrics backend. Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @field_validator("remote_base_url", "external_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        v = v.strip()
        if len(v) == 0:
            raise ValueError("must not be empty")
        return v.rstrip("/")

    @field_validator("remote_admin_handle", "remote_admin_password")
    @classmethod
    def require_non_blank(cls, v: str) -> str:
        if len(v.strip()) == 0:
            raise ValueError("must not be blank")
        return v


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client, present only when Redis is configured"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

StateTokenStoreAppKey: Final = web.AppKey("state_token_store", StateTokenStore)
"""AppKey for the OAuth state token store"""

TicketStoreAppKey: Final = web.AppKey("ticket_store", AuthorizationTicketStore)
"""AppKey for the authorization ticket store"""

ProvisioningClientAppKey: Final = web.AppKey(
    "provisioning_client", RemoteProvisioningClient
)
"""AppKey for the remote provisioning client"""

SweepTaskAppKey: Final = web.AppKey("sweep_task", asyncio.Task[None])
"""AppKey for the background task that sweeps expired state tokens and tickets"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""
