"""Account creation on the remote account service."""

from dataclasses import dataclass
import logging
import re
import unicodedata
from typing import Optional

from aiohttp import hdrs

from tavern.register.errors import (
    CreateAccountFailed,
    HandleAlreadyExists,
    InvalidHandle,
    InvalidRegistration,
)
from tavern.register.remote.credentials import CredentialExchange

logger = logging.getLogger(__name__)

CREATE_PATH = "/api/users/create"

MAX_HANDLE_LENGTH = 64

_SEPARATOR_RUNS = re.compile(r"[^a-z0-9]+")


def normalize_handle(handle: Optional[str]) -> str:
    """Convert free-form input into the remote service's handle format.

    Lowercases and strips accents, then collapses each run of non-alphanumeric
    characters into one ``-``. Separators are trimmed from both ends and the
    length is capped.

    Raises:
        InvalidHandle: If nothing usable remains.
    """
    decomposed = unicodedata.normalize("NFKD", str(handle or "").strip().lower())
    deburred = "".join(c for c in decomposed if not unicodedata.combining(c))
    normalized = _SEPARATOR_RUNS.sub("-", deburred)
    normalized = normalized.strip("-")[:MAX_HANDLE_LENGTH].rstrip("-")
    if len(normalized) == 0:
        raise InvalidHandle(f"Handle {handle!r} has no usable characters")
    return normalized


@dataclass
class CreatedAccount:
    handle: str
    display_name: str


class RemoteProvisioningClient:
    """Creates accounts with a freshly authenticated administrator session.

    Failed attempts are never retried here; the create call is not
    idempotent on the remote side.
    """

    def __init__(self, credential_exchange: CredentialExchange) -> None:
        self.credential_exchange = credential_exchange

    @property
    def base_url(self) -> str:
        return self.credential_exchange.base_url

    async def create_account(
        self,
        handle: str,
        display_name: str,
        password: Optional[str] = None,
    ) -> CreatedAccount:
        normalized_handle = normalize_handle(handle)
        display_name = (display_name or "").strip()
        if len(display_name) == 0:
            raise InvalidRegistration("A display name is required")

        admin_session = await self.credential_exchange.authenticate_as_admin()
        # The remote service only accepts a token minted after login.
        create_session = await self.credential_exchange.fetch_anti_forgery_token(
            admin_session.credential
        )

        payload = {"handle": normalized_handle, "name": display_name}
        if password:
            payload["password"] = password

        response = await self.credential_exchange.send(
            hdrs.METH_POST,
            CREATE_PATH,
            credential=create_session.credential,
            anti_forgery_token=create_session.anti_forgery_token,
            json=payload,
        )

        if response.status == 409:
            raise HandleAlreadyExists(f"Handle {normalized_handle} already exists")

        if not response.ok:
            logger.error(
                "Creating account %s failed: %s %s",
                normalized_handle,
                response.status,
                response.body_text(),
            )
            raise CreateAccountFailed(response.status, response.body_text())

        remote_handle = response.body_get("handle")
        if not remote_handle:
            logger.warning(
                "Remote service reported no handle for %s, using the requested one",
                normalized_handle,
            )
            remote_handle = normalized_handle

        logger.info("Created remote account %s", remote_handle)
        return CreatedAccount(handle=str(remote_handle), display_name=display_name)
