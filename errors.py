"""
Error types raised by the backend adapters and the view services.

Each kind maps to one category of user-visible failure: authentication,
data fetches, storage operations and pre-flight validation. Services catch
these at their own boundary and turn them into inline messages.
"""


class KohinaError(Exception):
    """Base class for errors that can be shown to the user."""

    default_message = "An error occurred. Please try again later."

    def __init__(self, message: str | None = None, code: str | None = None):
        self.message = message or self.default_message
        self.code = code
        super().__init__(self.message)


class AuthError(KohinaError):
    default_message = "Authentication failed."


class DataError(KohinaError):
    default_message = "Failed to load data."


class AlreadyExistsError(DataError):
    """A row with the same unique key already exists."""

    default_message = "The record already exists."


class NotFoundError(DataError):
    default_message = "Not found."


class StorageError(KohinaError):
    default_message = "Storage request failed."


class FieldValidationError(KohinaError):
    """A form field failed a client-side check before any request was made."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message, code=f"validation/{field}")


_FRIENDLY_MESSAGES = {
    "auth/email-already-in-use": "An account with this email already exists.",
    "auth/invalid-email": "Please enter a valid email address.",
    "auth/user-disabled": "This account has been disabled.",
    "auth/user-not-found": "Invalid email or password.",
    "auth/wrong-password": "Invalid email or password.",
    "auth/too-many-requests": "Too many unsuccessful login attempts. Please try again later.",
    "storage/unauthorized": "You don't have permission to access this resource.",
    "storage/quota-exceeded": "Storage quota exceeded.",
    "storage/not-found": "The requested file could not be found.",
    "storage/already-exists": "A file with this name already exists.",
}


def friendly_message(error: Exception) -> str:
    """
    Map an error to a message that is safe to show to the user.

    Args:
        error: Any exception raised while serving a request

    Returns:
        str: Known error codes map to a fixed message; other Kohina errors
        keep their own message; anything else gets a generic message
    """
    code = getattr(error, "code", None)
    if code in _FRIENDLY_MESSAGES:
        return _FRIENDLY_MESSAGES[code]
    if isinstance(error, KohinaError):
        return error.message
    return KohinaError.default_message
