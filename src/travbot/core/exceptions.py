"""Custom exceptions for the travbot engine."""

from __future__ import annotations


class TravbotError(Exception):
    """Base exception for all engine errors."""


class NetworkError(TravbotError):
    """Raised when a request keeps failing after the retry ceiling."""

    def __init__(self, message: str, page: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.page = page
        self.attempts = attempts


class SessionExpiredError(TravbotError):
    """Raised when a response shows the login page instead of game content."""


class AuthenticationError(TravbotError):
    """Raised when the server rejects the login. Message is the server's reason."""


class ExtractionError(TravbotError):
    """Raised when an action cannot find a structural element it depends on."""


class ConfigError(TravbotError):
    """Raised when configuration or the selector table is invalid."""
