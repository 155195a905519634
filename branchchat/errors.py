# branchchat/errors.py

"""
Domain errors raised by the chat core.

Everything derives from ChatError so the HTTP layer can map the whole
family with a single exception handler.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by branchchat."""

    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class NotAuthenticated(ChatError):
    status_code = 401


class Unauthorized(ChatError):
    """The caller does not own the resource."""
    status_code = 403


class NotFound(ChatError):
    status_code = 404


class VersionNotFound(NotFound):
    pass


class ResponseNotFound(NotFound):
    pass


class UnknownProvider(ChatError):
    status_code = 422

    def __init__(self, model: str):
        super().__init__(f"Unable to determine provider for model: {model}")
        self.model = model


class ProviderError(ChatError):
    """An upstream provider call failed."""
    status_code = 502

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ProviderTransportError(ProviderError):
    """Connection drop, timeout, rate limit or 5xx. Worth retrying."""


class ProviderRejection(ProviderError):
    """Auth, permission or malformed request. Never retried."""


class InvalidModelCount(ChatError):
    status_code = 422


class MinimumResponsesRequired(ChatError):
    status_code = 422


class InvalidOperation(ChatError):
    status_code = 422


class NoActiveBranch(ChatError):
    status_code = 500


class ImageGenerationFailed(ChatError):
    status_code = 502


class VideoGenerationFailed(ChatError):
    status_code = 502
