"""OAuth provider catalogue.

Describes the authorization, token and user-info endpoints of each supported
provider and how its user-info payload maps onto a stable identity.
"""

from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel


class ProviderIdentity(BaseModel):
    """Identity reported by a provider's user-info endpoint."""

    provider_id: str
    display_name: str = ""


def _github_identity(data: Dict[str, Any]) -> ProviderIdentity:
    return ProviderIdentity(
        provider_id=str(data["id"]),
        display_name=data.get("name") or data.get("login") or "",
    )


def _discord_identity(data: Dict[str, Any]) -> ProviderIdentity:
    return ProviderIdentity(
        provider_id=str(data["id"]),
        display_name=data.get("global_name") or data.get("username") or "",
    )


def _linuxdo_identity(data: Dict[str, Any]) -> ProviderIdentity:
    provider_id = data.get("id") or data.get("user_id")
    if provider_id is None:
        raise KeyError("id")
    return ProviderIdentity(
        provider_id=str(provider_id),
        display_name=data.get("name") or data.get("username") or "",
    )


class OAuthProvider(BaseModel):
    name: str
    display_name: str
    auth_url: str
    token_url: str
    userinfo_url: str
    scope: str
    authorization_scheme: str = "Bearer"
    """Scheme of the Authorization header sent to the user-info endpoint."""

    client_id: str
    client_secret: str

    def identity(self, data: Dict[str, Any]) -> ProviderIdentity:
        """Map a user-info payload onto an identity.

        Raises:
            KeyError: If the payload has no usable id.
        """
        return IDENTITY_MAPPERS[self.name](data)


IDENTITY_MAPPERS: Dict[str, Callable[[Dict[str, Any]], ProviderIdentity]] = {
    "github": _github_identity,
    "discord": _discord_identity,
    "linuxdo": _linuxdo_identity,
}

PROVIDER_DEFAULTS: Dict[str, Dict[str, str]] = {
    "github": {
        "display_name": "GitHub",
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user",
        "authorization_scheme": "token",
    },
    "discord": {
        "display_name": "Discord",
        "auth_url": "https://discord.com/api/oauth2/authorize",
        "token_url": "https://discord.com/api/oauth2/token",
        "userinfo_url": "https://discord.com/api/users/@me",
        "scope": "identify",
    },
    "linuxdo": {
        "display_name": "Linux.do",
        "auth_url": "https://connect.linux.do/oauth2/authorize",
        "token_url": "https://connect.linux.do/oauth2/token",
        "userinfo_url": "https://connect.linux.do/api/user",
        "scope": "read",
    },
}


def configured_providers(settings) -> Dict[str, OAuthProvider]:
    """Return the providers that have both a client id and a client secret."""
    providers: Dict[str, OAuthProvider] = {}
    for name, defaults in PROVIDER_DEFAULTS.items():
        client_id: Optional[str] = getattr(settings, f"{name}_client_id", None)
        client_secret: Optional[str] = getattr(settings, f"{name}_client_secret", None)
        if not client_id or not client_secret:
            continue

        values = dict(defaults)
        for endpoint in ("auth_url", "token_url", "userinfo_url"):
            override = getattr(settings, f"{name}_{endpoint}", None)
            if override:
                values[endpoint] = override

        providers[name] = OAuthProvider(
            name=name, client_id=client_id, client_secret=client_secret, **values
        )
    return providers


def list_providers(settings) -> List[Dict[str, str]]:
    return [
        {"name": provider.name, "displayName": provider.display_name}
        for provider in configured_providers(settings).values()
    ]
