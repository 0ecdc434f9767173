import asyncio
import logging
from typing import NoReturn, Tuple

from aiohttp import web
import sentry_sdk

from tavern.register.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
    StateTokenStoreAppKey,
    TicketStoreAppKey,
)
from tavern.register.app.metrics import MetricsClient
from tavern.register.oauth.state import StateTokenStore
from tavern.register.oauth.tickets import AuthorizationTicketStore

logger = logging.getLogger(__name__)


async def sweep_once(
    state_store: StateTokenStore,
    ticket_store: AuthorizationTicketStore,
    metrics_client: MetricsClient,
) -> Tuple[int, int]:
    """
    Remove abandoned state tokens and stale tickets.

    Returns (state_tokens_removed, tickets_removed).
    """
    expired_states_count = await state_store.sweep()
    stale_tickets_count = await ticket_store.sweep()

    if expired_states_count > 0 or stale_tickets_count > 0:
        logger.info(
            "Swept %d expired state tokens and %d stale authorization tickets",
            expired_states_count,
            stale_tickets_count,
        )

    metrics_client.increment(
        "register.task.sweep.expired_states_removed", expired_states_count
    )
    metrics_client.increment(
        "register.task.sweep.stale_tickets_removed", stale_tickets_count
    )
    return expired_states_count, stale_tickets_count


async def sweep_task(app: web.Application) -> NoReturn:
    """
    Background task that sweeps the state token and ticket stores.

    Consuming a token or finalizing a ticket removes it straight away; this
    task only collects flows that were abandoned part way through.
    """
    logger.info("Starting sweep task")

    settings = app[SettingsAppKey]
    state_store = app[StateTokenStoreAppKey]
    ticket_store = app[TicketStoreAppKey]
    metrics_client = app[MetricsClientAppKey]

    while True:
        try:
            await asyncio.sleep(settings.sweep_interval)
            await sweep_once(state_store, ticket_store, metrics_client)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Sweep task failed")


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.
    """
    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)
