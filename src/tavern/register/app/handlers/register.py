import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web
from pydantic import BaseModel, ValidationError, field_validator

from tavern.register.app.config import (
    DatabaseSessionMakerAppKey,
    ProvisioningClientAppKey,
    SettingsAppKey,
    TicketStoreAppKey,
)
from tavern.register.errors import InvalidRegistration
from tavern.register.oauth.flow import register_with_ticket

logger = logging.getLogger(__name__)


class RegistrationForm(BaseModel):
    ticket: Optional[str] = None
    handle: str
    name: str
    password: Optional[str] = None

    @field_validator("handle", "name")
    def required_short_text(cls, v: str) -> str:
        v = v.strip()
        if len(v) == 0:
            raise ValueError("must not be empty")
        if len(v) > 64:
            raise ValueError("must be at most 64 characters")
        return v

    @field_validator("password")
    def password_check(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if len(v) > 128:
            raise ValueError("must be at most 128 characters")
        return v or None

    @field_validator("ticket")
    def ticket_check(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


async def read_registration_form(request: web.Request) -> RegistrationForm:
    try:
        if request.content_type == "application/json":
            data: Dict[str, Any] = await request.json()
        else:
            data = dict(await request.post())
        return RegistrationForm.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "form"
        raise InvalidRegistration(f"{field}: {first.get('msg', 'invalid')}") from e
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        raise InvalidRegistration("Invalid JSON") from e


async def handle_register(request: web.Request) -> web.Response:
    """
    Handle a registration form submission.

    With a ticket, the account is created for the ticket's identity and the
    identity is bound to the new handle. Without one, the account is created
    directly, unless registration requires OAuth.
    """
    settings = request.app[SettingsAppKey]
    provisioning_client = request.app[ProvisioningClientAppKey]

    form = await read_registration_form(request)

    if form.ticket is not None:
        account = await register_with_ticket(
            provisioning_client,
            request.app[DatabaseSessionMakerAppKey],
            request.app[TicketStoreAppKey],
            form.ticket,
            form.handle,
            form.name,
            form.password,
        )
    elif settings.registration_requires_oauth:
        raise InvalidRegistration("ticket: An authorization ticket is required")
    else:
        account = await provisioning_client.create_account(
            handle=form.handle,
            display_name=form.name,
            password=form.password,
        )

    return web.json_response(
        status=201,
        data={
            "success": True,
            "handle": account.handle,
            "loginUrl": f"{settings.remote_base_url}/login",
        },
    )
