"""
Tests for the background tasks in tavern.register.app.tasks
"""

import asyncio
import contextlib
from unittest.mock import patch

from aiohttp import web

from tavern.register.app.config import (
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
    StateTokenStoreAppKey,
    TicketStoreAppKey,
)
from tavern.register.app.tasks import sweep_once, sweep_task, tick_health_task
from tavern.register.model.health import HealthGauge
from tavern.register.oauth.state import MemoryStateTokenStore
from tavern.register.oauth.tickets import MemoryAuthorizationTicketStore, TicketClaim
from tests.test_helpers import FakeAccountService, make_settings


async def run_briefly(task_func, app: web.Application, seconds: float = 0.05) -> None:
    task = asyncio.create_task(task_func(app))
    await asyncio.sleep(seconds)
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class TestSweepOnce:
    async def test_removes_abandoned_entries(self, clock, metrics_client):
        state_store = MemoryStateTokenStore(ttl=300, clock=clock)
        ticket_store = MemoryAuthorizationTicketStore(ttl=300, clock=clock)
        await state_store.issue()
        await ticket_store.create(TicketClaim(provider="github", provider_id="1"))
        await ticket_store.create(TicketClaim(provider="github", provider_id="2"))
        clock.advance(301)
        live_state = await state_store.issue()

        assert await sweep_once(state_store, ticket_store, metrics_client) == (1, 2)
        assert await state_store.consume(live_state) is True
        assert (
            "register.task.sweep.expired_states_removed",
            1,
            {},
        ) in metrics_client.increments
        assert (
            "register.task.sweep.stale_tickets_removed",
            2,
            {},
        ) in metrics_client.increments

    async def test_nothing_to_remove(self, clock, metrics_client):
        state_store = MemoryStateTokenStore(ttl=300, clock=clock)
        ticket_store = MemoryAuthorizationTicketStore(ttl=300, clock=clock)
        await state_store.issue()

        assert await sweep_once(state_store, ticket_store, metrics_client) == (0, 0)


class TestSweepTask:
    def make_app(self, metrics_client, state_store, ticket_store) -> web.Application:
        app = web.Application()
        app[SettingsAppKey] = make_settings(FakeAccountService(), sweep_interval=0)
        app[MetricsClientAppKey] = metrics_client
        app[StateTokenStoreAppKey] = state_store
        app[TicketStoreAppKey] = ticket_store
        return app

    async def test_keeps_running_after_failure(self, clock, metrics_client):
        calls = []

        async def flaky_sweep() -> int:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

        state_store = MemoryStateTokenStore(ttl=300, clock=clock)
        state_store.sweep = flaky_sweep  # type: ignore
        ticket_store = MemoryAuthorizationTicketStore(ttl=300, clock=clock)
        app = self.make_app(metrics_client, state_store, ticket_store)

        with patch("tavern.register.app.tasks.sentry_sdk.capture_exception") as capture:
            await run_briefly(sweep_task, app)

        capture.assert_called_once()
        assert len(calls) > 1


class TestTickHealthTask:
    async def test_decays_gauge(self):
        app = web.Application()
        health_gauge = HealthGauge(value=5)
        app[HealthGaugeAppKey] = health_gauge

        await run_briefly(tick_health_task, app)

        assert health_gauge._value == 4
