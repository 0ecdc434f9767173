"""
OAuth Registration Broker

This module drives the flow that turns a third-party identity into an account
on the remote account service:

1. Start (`oauth_start`): issue a state token and build the provider's
   authorize URL.
2. Callback (`oauth_callback`): consume the state token, exchange the code for
   an access token, fetch the user's identity and either short-circuit to an
   existing binding or issue an authorization ticket.
3. Ticket lookup and cancellation (`peek_ticket`, `cancel_ticket`).
4. Registration (`register_with_ticket`): reserve the ticket, create the
   remote account, persist the binding and finalize the ticket.

No two users may claim the same third-party identity or the same remote
handle. The identity binding check before a ticket is issued rejects the
common case early; the unique constraints of the bindings table catch two
registrations racing past that check.
"""

import asyncio
from dataclasses import dataclass
import logging
from typing import Optional
from urllib.parse import urlencode, urlparse, parse_qsl, urlunparse

from aiohttp import ClientError, ClientSession, ClientTimeout, FormData, hdrs
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tavern.register.app.config import Settings
from tavern.register.app.metrics import MetricsClient
from tavern.register.errors import (
    AlreadyBound,
    BindingConflict,
    ProviderExchangeFailed,
    StateTokenInvalid,
    TicketInvalid,
    UnknownProvider,
)
from tavern.register.model.bindings import find_binding, upsert_binding
from tavern.register.oauth.providers import (
    OAuthProvider,
    ProviderIdentity,
    configured_providers,
)
from tavern.register.oauth.state import StateTokenStore
from tavern.register.oauth.tickets import AuthorizationTicketStore, TicketClaim
from tavern.register.remote.chain import ChainMiddlewareClient, StatsdMiddleware
from tavern.register.remote.provisioning import (
    CreatedAccount,
    RemoteProvisioningClient,
)

logger = logging.getLogger(__name__)


@dataclass
class CallbackResult:
    """Outcome of an OAuth callback: a new ticket or an existing binding."""

    ticket_id: Optional[str] = None
    bound_handle: Optional[str] = None


def get_provider(settings: Settings, provider_name: str) -> OAuthProvider:
    provider = configured_providers(settings).get(provider_name)
    if provider is None:
        raise UnknownProvider(f"OAuth provider {provider_name!r} is not configured")
    return provider


def redirect_uri(settings: Settings, provider: OAuthProvider) -> str:
    return f"{settings.external_base_url}/oauth/{provider.name}/callback"


def with_query(url: str, **params: str) -> str:
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


async def oauth_start(
    settings: Settings,
    state_store: StateTokenStore,
    provider_name: str,
) -> str:
    """Issue a state token and return the provider authorize URL."""
    provider = get_provider(settings, provider_name)
    state = await state_store.issue()
    return with_query(
        provider.auth_url,
        client_id=provider.client_id,
        redirect_uri=redirect_uri(settings, provider),
        scope=provider.scope,
        state=state,
        response_type="code",
    )


async def exchange_code(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    provider: OAuthProvider,
    code: str,
) -> ProviderIdentity:
    """Exchange an authorization code for the user's provider identity.

    Raises:
        ProviderExchangeFailed: If the token or user-info request fails or
            returns no access token or id.
    """
    chain_client = ChainMiddlewareClient(
        client_session=http_session,
        raise_for_status=False,
        timeout=ClientTimeout(total=settings.remote_timeout),
        middleware=[StatsdMiddleware(metrics_client, f"oauth.{provider.name}")],
    )

    data = FormData(
        {
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
            "code": code,
            "redirect_uri": redirect_uri(settings, provider),
            "grant_type": "authorization_code",
        }
    )

    try:
        async with chain_client.post(
            provider.token_url,
            data=data,
            headers={hdrs.ACCEPT: "application/json"},
        ) as (_, token_response):
            if not token_response.ok:
                raise ProviderExchangeFailed(
                    token_response.status, token_response.body_text()
                )

        access_token = token_response.body_get("access_token")
        if not access_token:
            raise ProviderExchangeFailed(
                message=f"{provider.name} returned no access token"
            )

        async with chain_client.get(
            provider.userinfo_url,
            headers={
                hdrs.ACCEPT: "application/json",
                hdrs.AUTHORIZATION: f"{provider.authorization_scheme} {access_token}",
                hdrs.USER_AGENT: "TavernRegister",
            },
        ) as (_, user_response):
            if not user_response.ok:
                raise ProviderExchangeFailed(
                    user_response.status, user_response.body_text()
                )
    except (ClientError, asyncio.TimeoutError) as e:
        raise ProviderExchangeFailed(
            message=f"{provider.name} request failed: {type(e).__name__}"
        ) from e

    if not isinstance(user_response.body, dict):
        raise ProviderExchangeFailed(
            message=f"{provider.name} returned a malformed user profile"
        )

    try:
        identity = provider.identity(user_response.body)
    except KeyError as e:
        raise ProviderExchangeFailed(
            message=f"{provider.name} returned no user id"
        ) from e

    if len(identity.provider_id) == 0:
        raise ProviderExchangeFailed(message=f"{provider.name} returned no user id")

    return identity


async def oauth_callback(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    database_session_maker: async_sessionmaker[AsyncSession],
    state_store: StateTokenStore,
    ticket_store: AuthorizationTicketStore,
    provider_name: str,
    code: Optional[str],
    state: Optional[str],
) -> CallbackResult:
    """Complete the provider redirect.

    Returns either a fresh ticket for an unbound identity, or the handle an
    identity is already bound to.
    """
    provider = get_provider(settings, provider_name)

    if not code or not state:
        raise StateTokenInvalid("Callback is missing code or state")

    if not await state_store.consume(state):
        raise StateTokenInvalid("State token is unknown, used or expired")

    identity = await exchange_code(
        settings, http_session, metrics_client, provider, code
    )

    binding = await find_binding(
        database_session_maker, provider.name, identity.provider_id
    )
    if binding is not None and binding.remote_handle:
        logger.info(
            "Identity %s:%s is already bound to %s",
            provider.name,
            identity.provider_id,
            binding.remote_handle,
        )
        return CallbackResult(bound_handle=binding.remote_handle)

    ticket_id = await ticket_store.create(
        TicketClaim(
            provider=provider.name,
            provider_id=identity.provider_id,
            display_name=identity.display_name,
        )
    )
    return CallbackResult(ticket_id=ticket_id)


async def peek_ticket(
    ticket_store: AuthorizationTicketStore, ticket_id: Optional[str]
) -> Optional[TicketClaim]:
    if not ticket_id:
        return None
    return await ticket_store.peek(ticket_id)


async def cancel_ticket(
    ticket_store: AuthorizationTicketStore, ticket_id: Optional[str]
) -> bool:
    if not ticket_id:
        return False
    cancelled = await ticket_store.cancel(ticket_id)
    if cancelled:
        logger.info("Authorization ticket cancelled")
    return cancelled


async def register_with_ticket(
    provisioning_client: RemoteProvisioningClient,
    database_session_maker: async_sessionmaker[AsyncSession],
    ticket_store: AuthorizationTicketStore,
    ticket_id: Optional[str],
    handle: str,
    display_name: Optional[str],
    password: Optional[str] = None,
) -> CreatedAccount:
    """Create the remote account for a ticket's identity and bind it.

    Raises:
        TicketInvalid: The ticket is absent, used, expired or already being
            submitted.
        AlreadyBound: The identity already has a remote handle.
        BindingConflict: A concurrent registration claimed the identity or
            the handle first.
    """
    if not ticket_id:
        raise TicketInvalid()

    # Reserving takes the ticket out of circulation, so a second submission
    # of the same ticket cannot create another account.
    claim = await ticket_store.reserve(ticket_id)
    if claim is None:
        raise TicketInvalid()

    try:
        binding = await find_binding(
            database_session_maker, claim.provider, claim.provider_id
        )
        if binding is not None and binding.remote_handle:
            await ticket_store.finalize(ticket_id)
            raise AlreadyBound(
                f"Identity {claim.provider}:{claim.provider_id} is bound to {binding.remote_handle}"
            )

        account = await provisioning_client.create_account(
            handle=handle,
            display_name=display_name or claim.display_name,
            password=password,
        )
    except AlreadyBound:
        raise
    except Exception:
        # No account was created, the user may submit the ticket again.
        await ticket_store.release(ticket_id)
        raise

    try:
        await upsert_binding(
            database_session_maker, claim.provider, claim.provider_id, account.handle
        )
    except BindingConflict:
        await ticket_store.finalize(ticket_id)
        logger.error(
            "Remote account %s was created but could not be bound to %s:%s",
            account.handle,
            claim.provider,
            claim.provider_id,
        )
        raise

    await ticket_store.finalize(ticket_id)
    logger.info(
        "Registered %s for %s:%s", account.handle, claim.provider, claim.provider_id
    )
    return account
