"""Error kinds raised by the provisioning core.

Every error is terminal for the request that raised it; nothing here is
retried automatically. Each kind carries the HTTP status the web layer
answers with, a stable error code, and whether the failure is
operator-facing (a 5xx with full detail in the logs) or user-facing (a 4xx
with a safe message).
"""

from typing import Optional


class RegistrationError(Exception):
    """Base class for all provisioning and OAuth broker failures."""

    http_status: int = 500
    code: str = "error-register-1999"
    safe_message: str = "Unexpected error, please try again later"
    operator_facing: bool = True
    retryable: bool = False

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(f"{self.code} {message or self.safe_message}")
        self.detail = message or self.safe_message


class InvalidHandle(RegistrationError):
    http_status = 400
    code = "error-register-1000"
    safe_message = "The handle cannot be converted into a valid account identifier"
    operator_facing = False


class InvalidRegistration(RegistrationError):
    http_status = 400
    code = "error-register-1001"
    safe_message = "The registration form is incomplete or invalid"
    operator_facing = False

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message)
        # Validation messages describe the user's own input.
        if message:
            self.safe_message = message


class HandleAlreadyExists(RegistrationError):
    http_status = 409
    code = "error-register-1002"
    safe_message = "An account with this handle already exists"
    operator_facing = False


class StateTokenInvalid(RegistrationError):
    http_status = 400
    code = "error-oauth-1100"
    safe_message = "The OAuth state is invalid or has expired, please try again"
    operator_facing = False


class TicketInvalid(RegistrationError):
    http_status = 404
    code = "error-oauth-1101"
    safe_message = "The authorization has expired or does not exist, please authorize again"
    operator_facing = False


class UnknownProvider(RegistrationError):
    http_status = 404
    code = "error-oauth-1102"
    safe_message = "This OAuth provider is not available"
    operator_facing = False


class AlreadyBound(RegistrationError):
    http_status = 409
    code = "error-oauth-1103"
    safe_message = "This account is already bound to a registered handle"
    operator_facing = False


class BindingConflict(RegistrationError):
    http_status = 409
    code = "error-oauth-1104"
    safe_message = "This identity or handle was claimed concurrently, please restart the authorization"
    operator_facing = False
    retryable = True


class ProviderExchangeFailed(RegistrationError):
    http_status = 502
    code = "error-oauth-1105"
    safe_message = "Third-party login failed, please try again later"

    def __init__(self, status: Optional[int] = None, body: str = "", message: Optional[str] = None) -> None:
        super().__init__(message or f"OAuth provider responded with {status}: {body}")
        self.status = status
        self.body = body


class AdminLoginFailed(RegistrationError):
    http_status = 502
    code = "error-remote-2000"
    safe_message = "The account service rejected the administrator login"

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Administrator login failed: {status} {body}")
        self.status = status
        self.body = body


class AdminSessionInvalid(RegistrationError):
    http_status = 502
    code = "error-remote-2001"
    safe_message = "The account service did not accept the administrator session"

    def __init__(self, status: int) -> None:
        super().__init__(f"Administrator session check failed: {status}")
        self.status = status


class NotAnAdministrator(RegistrationError):
    http_status = 502
    code = "error-remote-2002"
    safe_message = "The configured administrator account has no administrator rights"


class MissingSessionCredential(RegistrationError):
    http_status = 502
    code = "error-remote-2003"
    safe_message = "The account service did not return a session credential"


class CreateAccountFailed(RegistrationError):
    http_status = 502
    code = "error-remote-2004"
    safe_message = "The account service failed to create the account"

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Create account request failed: {status} {body}")
        self.status = status
        self.body = body


class RemoteServiceUnreachable(RegistrationError):
    http_status = 504
    code = "error-remote-2005"
    safe_message = "The account service could not be reached"
