"""Administrator credential exchange with the remote account service.

Creating an account requires an administrator session on the remote service.
The session is obtained with a three step handshake:

1. ``GET /csrf-token`` returns an anti-forgery token and usually a fresh
   session cookie.
2. ``POST /api/users/login`` authenticates the configured administrator with
   that token. The session cookie set by this response is the admin session.
3. ``GET /api/users/me`` confirms the session belongs to an administrator.

Nothing is cached between calls. Every provisioning call runs the handshake
again so no long-lived administrator session is held by this process.
"""

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Iterable, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, hdrs

from tavern.register.app.metrics import MetricsClient
from tavern.register.errors import (
    AdminLoginFailed,
    AdminSessionInvalid,
    MissingSessionCredential,
    NotAnAdministrator,
    RemoteServiceUnreachable,
)
from tavern.register.remote.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    SessionCredentialMiddleware,
    StatsdMiddleware,
)

logger = logging.getLogger(__name__)

CSRF_TOKEN_PATH = "/csrf-token"
LOGIN_PATH = "/api/users/login"
ME_PATH = "/api/users/me"

ANTI_FORGERY_DISABLED = "disabled"
"""Token value the remote service returns when its CSRF protection is off."""


@dataclass(repr=False)
class SessionCredential:
    """A session cookie and the anti-forgery token minted for it.

    Owned by a single in-flight exchange and never persisted.
    """

    credential: Optional[str]
    anti_forgery_token: str


def is_session_token(token: str) -> bool:
    """Whether a ``name=value`` cookie pair identifies a session."""
    name = token.split("=", 1)[0].strip().lower()
    return "session-" in name or ".sig" in name


def extract_session_credential(header_values: Iterable[str]) -> Optional[str]:
    """Build a Cookie header value from Set-Cookie headers.

    Only session cookies are kept, in order of appearance and without
    duplicates. Returns None when no session cookie is present.
    """
    session_parts: list[str] = []

    for raw_cookie in header_values:
        if not isinstance(raw_cookie, str):
            continue

        token = raw_cookie.strip().split(";")[0].strip()
        if len(token) == 0:
            continue

        if is_session_token(token) and token not in session_parts:
            session_parts.append(token)

    if len(session_parts) == 0:
        return None

    return "; ".join(session_parts)


class CredentialExchange:
    """Obtains a verified administrator session on the remote account service."""

    def __init__(
        self,
        http_session: ClientSession,
        metrics_client: MetricsClient,
        base_url: str,
        admin_handle: str,
        admin_password: str,
        timeout: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http_session = http_session
        self._metrics_client = metrics_client
        self._admin_handle = admin_handle
        self._admin_password = admin_password
        self._timeout = ClientTimeout(total=timeout)

    async def send(
        self,
        method: str,
        path: str,
        credential: Optional[str] = None,
        anti_forgery_token: Optional[str] = None,
        **kwargs: Any,
    ) -> ChainResponse:
        """Send one request to the remote service.

        Raises:
            RemoteServiceUnreachable: On connection failure or timeout.
        """
        chain_client = ChainMiddlewareClient(
            client_session=self._http_session,
            raise_for_status=False,
            timeout=self._timeout,
            middleware=[
                StatsdMiddleware(self._metrics_client, "remote"),
                SessionCredentialMiddleware(credential, anti_forgery_token),
            ],
        )
        headers = {hdrs.ACCEPT: "application/json"}
        try:
            async with chain_client.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            ) as (_, chain_response):
                return chain_response
        except (ClientError, asyncio.TimeoutError) as e:
            logger.error("Remote request %s %s failed: %r", method, path, e)
            raise RemoteServiceUnreachable(
                f"{method} {path} failed: {type(e).__name__}"
            ) from e

    async def fetch_anti_forgery_token(
        self, existing_credential: Optional[str] = None
    ) -> SessionCredential:
        """Fetch an anti-forgery token, forwarding an existing session if any.

        A session cookie set by the response replaces the one carried in.
        """
        response = await self.send(
            hdrs.METH_GET, CSRF_TOKEN_PATH, credential=existing_credential
        )
        if not response.ok:
            raise MissingSessionCredential(
                f"Anti-forgery token request failed: {response.status}"
            )

        token = str(response.body_get("token", "") or "")
        credential = (
            extract_session_credential(response.set_cookie_headers())
            or existing_credential
        )

        if credential is None and token != ANTI_FORGERY_DISABLED:
            raise MissingSessionCredential(
                "Anti-forgery token response carried no session cookie"
            )

        return SessionCredential(credential=credential, anti_forgery_token=token)

    async def authenticate_as_admin(self) -> SessionCredential:
        """Log in as the configured administrator and verify its rights."""
        session = await self.fetch_anti_forgery_token()

        response = await self.send(
            hdrs.METH_POST,
            LOGIN_PATH,
            credential=session.credential,
            anti_forgery_token=session.anti_forgery_token,
            json={
                "handle": self._admin_handle,
                "password": self._admin_password,
            },
        )
        if not response.ok:
            logger.error(
                "Administrator login as %s rejected: %s", self._admin_handle, response.status
            )
            raise AdminLoginFailed(response.status, response.body_text())

        # Only the session set by the login response is an admin session.
        credential = extract_session_credential(response.set_cookie_headers())
        if credential is None:
            raise MissingSessionCredential(
                "Administrator login succeeded but set no session cookie"
            )

        session = SessionCredential(
            credential=credential, anti_forgery_token=session.anti_forgery_token
        )
        await self.assert_admin(session.credential)
        return session

    async def assert_admin(self, credential: Optional[str]) -> None:
        response = await self.send(hdrs.METH_GET, ME_PATH, credential=credential)
        if not response.ok:
            raise AdminSessionInvalid(response.status)

        if not response.body_get("admin", False):
            raise NotAnAdministrator(
                f"Account {self._admin_handle} has no administrator rights"
            )
