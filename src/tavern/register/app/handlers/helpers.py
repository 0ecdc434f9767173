import logging
import traceback
from typing import Any, Dict

from tavern.register.errors import RegistrationError

logger = logging.getLogger(__name__)


def error_body(error: RegistrationError) -> Dict[str, Any]:
    """JSON body for a failed request. Only the safe message is exposed."""
    body: Dict[str, Any] = {
        "success": False,
        "error": error.code,
        "message": error.safe_message,
    }
    if error.retryable:
        body["retryable"] = True
    return body


def internal_error_body(error: Exception, debug: bool) -> Dict[str, Any]:
    if debug:
        return {
            "success": False,
            "error": "Internal Server Error",
            "error_type": type(error).__name__,
            "error_message": str(error),
            "traceback": traceback.format_exc(),
        }
    return {"success": False, "error": "Internal Server Error"}


def log_registration_error(error: RegistrationError, path: str) -> None:
    if error.operator_facing:
        logger.error(
            "%s failed with %s: %s", path, type(error).__name__, error.detail
        )
    else:
        logger.info("%s rejected with %s: %s", path, type(error).__name__, error.detail)
