"""
OAuth Handlers

This module implements the web request handlers for the OAuth side of
registration: listing providers, starting the provider redirect, handling
the provider callback, and looking up or cancelling an authorization ticket.

The handlers in this module provide the following endpoints:
- GET /oauth/providers - Providers with configured client credentials
- GET /oauth/{provider}/start - Redirect to the provider's authorize page
- GET /oauth/{provider}/callback - Provider redirect back with code and state
- GET /oauth/authorization/{ticket} - Identity claim carried by a ticket
- DELETE /oauth/authorization/{ticket} - Cancel a pending ticket

Failures raise RegistrationError subclasses; the error middleware turns them
into JSON responses.
"""

import logging
from typing import Optional

from aiohttp import web

from tavern.register.app.config import (
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    SettingsAppKey,
    StateTokenStoreAppKey,
    TicketStoreAppKey,
)
from tavern.register.errors import TicketInvalid
from tavern.register.oauth.flow import (
    cancel_ticket,
    oauth_callback,
    oauth_start,
    peek_ticket,
    with_query,
)
from tavern.register.oauth.providers import list_providers

logger = logging.getLogger(__name__)


async def handle_oauth_providers(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response({"providers": list_providers(settings)})


async def handle_oauth_start(request: web.Request):
    """
    Start the OAuth flow for a provider.

    Issues a single-use state token and redirects the browser to the
    provider's authorize endpoint.
    """
    settings = request.app[SettingsAppKey]
    state_store = request.app[StateTokenStoreAppKey]

    redirect_destination = await oauth_start(
        settings, state_store, request.match_info["provider"]
    )
    raise web.HTTPFound(redirect_destination)


async def handle_oauth_callback(request: web.Request):
    """
    Handle the provider's redirect back to this service.

    Query Parameters:
        code: Authorization code to exchange for an access token
        state: State token issued by the start handler

    Redirects the browser to the registration page with either a ticket for
    a new identity, or status=bound and the handle of an existing binding.
    """
    settings = request.app[SettingsAppKey]
    code: Optional[str] = request.query.get("code", None)
    state: Optional[str] = request.query.get("state", None)

    result = await oauth_callback(
        settings,
        request.app[SessionAppKey],
        request.app[MetricsClientAppKey],
        request.app[DatabaseSessionMakerAppKey],
        request.app[StateTokenStoreAppKey],
        request.app[TicketStoreAppKey],
        request.match_info["provider"],
        code,
        state,
    )

    if result.bound_handle is not None:
        raise web.HTTPFound(
            with_query(
                settings.register_page_url, status="bound", handle=result.bound_handle
            )
        )

    raise web.HTTPFound(
        with_query(settings.register_page_url, ticket=str(result.ticket_id))
    )


async def handle_ticket_peek(request: web.Request):
    ticket_store = request.app[TicketStoreAppKey]
    claim = await peek_ticket(ticket_store, request.match_info["ticket"])
    if claim is None:
        raise TicketInvalid()

    return web.json_response(
        {
            "success": True,
            "authorization": {
                "provider": claim.provider,
                "providerId": claim.provider_id,
                "displayName": claim.display_name,
            },
        }
    )


async def handle_ticket_cancel(request: web.Request):
    ticket_store = request.app[TicketStoreAppKey]
    cancelled = await cancel_ticket(ticket_store, request.match_info["ticket"])
    return web.json_response({"success": True, "cancelled": cancelled})
