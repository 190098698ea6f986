"""Exception types raised across component boundaries."""

from typing import Optional


class MemdockError(Exception):
    """Base class for memdock errors."""


class ApiError(MemdockError):
    """The remote memory store answered with a non-2xx status."""

    def __init__(self, status: int, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"{self.message} (HTTP {self.status})"


class CacheError(MemdockError):
    """The local cache file could not be written."""


class AdmissionError(MemdockError):
    """A write was refused before reaching storage."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SupersededError(MemdockError):
    """A search was cancelled because a newer one replaced it."""
