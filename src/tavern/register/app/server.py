import asyncio
import contextlib
import logging
import os
from time import time
from typing import (
    Optional,
)
from aiohttp import web
import aiohttp
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from tavern.register.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    ProvisioningClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    StateTokenStoreAppKey,
    SweepTaskAppKey,
    TicketStoreAppKey,
    TickHealthTaskAppKey,
)
from tavern.register.app.handlers.helpers import (
    error_body,
    internal_error_body,
    log_registration_error,
)
from tavern.register.app.handlers.internal import (
    handle_health,
    handle_internal_alive,
    handle_internal_ready,
)
from tavern.register.app.handlers.oauth import (
    handle_oauth_callback,
    handle_oauth_providers,
    handle_oauth_start,
    handle_ticket_cancel,
    handle_ticket_peek,
)
from tavern.register.app.handlers.register import handle_register
from tavern.register.app.metrics import create_metrics_client
from tavern.register.app.tasks import sweep_task, tick_health_task
from tavern.register.errors import RegistrationError
from tavern.register.model.base import Base
from tavern.register.model.health import HealthGauge
from tavern.register.oauth.state import MemoryStateTokenStore, RedisStateTokenStore
from tavern.register.oauth.tickets import (
    MemoryAuthorizationTicketStore,
    RedisAuthorizationTicketStore,
)
from tavern.register.remote.credentials import CredentialExchange
from tavern.register.remote.provisioning import RemoteProvisioningClient

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(settings.database_url)
    app[DatabaseAppKey] = engine
    if engine.dialect.name == "sqlite":
        # SQLite deployments have no migration step.
        database_dir = os.path.dirname(engine.url.database or "")
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    # Session cookies are passed explicitly per call and must never be shared
    # between registrations through a cookie jar.
    app[SessionAppKey] = aiohttp.ClientSession(
        trace_configs=[trace_config], cookie_jar=aiohttp.DummyCookieJar()
    )

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    if settings.redis_dsn is not None:
        redis_client = redis.Redis.from_url(str(settings.redis_dsn))
        app[RedisClientAppKey] = redis_client
        app[StateTokenStoreAppKey] = RedisStateTokenStore(
            redis_client, ttl=settings.state_ttl
        )
        app[TicketStoreAppKey] = RedisAuthorizationTicketStore(
            redis_client, ttl=settings.ticket_ttl
        )
    else:
        app[StateTokenStoreAppKey] = MemoryStateTokenStore(ttl=settings.state_ttl)
        app[TicketStoreAppKey] = MemoryAuthorizationTicketStore(
            ttl=settings.ticket_ttl
        )

    app[ProvisioningClientAppKey] = RemoteProvisioningClient(
        CredentialExchange(
            app[SessionAppKey],
            metrics_client,
            base_url=settings.remote_base_url,
            admin_handle=settings.remote_admin_handle,
            admin_password=settings.remote_admin_password,
            timeout=settings.remote_timeout,
        )
    )

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    app[SweepTaskAppKey] = asyncio.create_task(sweep_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()
    app[SweepTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[SweepTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    if RedisClientAppKey in app:
        await app[RedisClientAppKey].aclose()
    await app[MetricsClientAppKey].close()


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except RegistrationError as e:
        log_registration_error(e, request.path)
        if e.operator_facing:
            sentry_sdk.capture_exception(e)
            await request.app[HealthGaugeAppKey].womp()
        return web.json_response(status=e.http_status, data=error_body(e))
    except Exception as e:
        logger.exception("Unexpected error handling %s", request.path)
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].womp()
        return web.json_response(
            status=500,
            data=internal_error_body(e, request.app[SettingsAppKey].debug),
        )


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    resource = request.match_info.route.resource
    request_path = resource.canonical if resource is not None else request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "register.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "register.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "register.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()]
        )
    app = web.Application(middlewares=[statsd_middleware, error_middleware])

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    app.add_routes(
        [
            web.get("/health", handle_health),
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    app.add_routes(
        [
            web.get("/oauth/providers", handle_oauth_providers),
            web.get("/oauth/{provider}/start", handle_oauth_start),
            web.get("/oauth/{provider}/callback", handle_oauth_callback),
            web.get("/oauth/authorization/{ticket}", handle_ticket_peek),
            web.delete("/oauth/authorization/{ticket}", handle_ticket_cancel),
        ]
    )

    app.add_routes([web.post("/register", handle_register)])

    app.cleanup_ctx.append(background_tasks)

    return app
