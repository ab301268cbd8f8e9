"""Classified outcomes of backend calls and upload preconditions."""


class NetworkServiceError(Exception):
    """Base class for every classified backend failure."""

    message = "Unknown error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class InvalidURL(NetworkServiceError):
    message = "Invalid URL"


class InvalidResponse(NetworkServiceError):
    message = "Invalid response"


class Unauthorized(NetworkServiceError):
    message = "Unauthorized, please log in again"


class Forbidden(NetworkServiceError):
    message = "Forbidden"


class ClientError(NetworkServiceError):
    def __init__(self, code: int):
        self.code = code
        super().__init__(f"Client error ({code})")


class ServerError(NetworkServiceError):
    def __init__(self, code: int):
        self.code = code
        super().__init__(f"Server error ({code})")


class ApiError(NetworkServiceError):
    """Server-supplied human-readable reason for a 4xx."""


class DecodingError(NetworkServiceError):
    message = "Could not decode response"


class NetworkError(NetworkServiceError):
    """Transport-level failure: connection refused, timeout, DNS."""

    def __init__(self, message: str):
        super().__init__(f"Network error: {message}")


class UnknownError(NetworkServiceError):
    pass


class UploadValidationError(ValueError):
    """An upload precondition failed; nothing was sent."""


class UploadCancelled(Exception):
    """The upload was cancelled by the caller."""


class TemplateNotEditable(ValueError):
    """System prompt templates cannot be changed or deleted."""
