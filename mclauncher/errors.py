"""Exceptions raised by the install and launch engine.

Every error carries a human-readable message with the context (URL, path,
version id) accumulated along the way, ``str(error)`` is what gets shown
to the user and persisted on a failed instance.
"""
from typing import Optional


class LauncherError(Exception):
    """Root of every error raised by mclauncher."""


# --- Installation ---

class InstallError(LauncherError):
    """Installing a version (descriptor, client, libraries, assets) failed."""


class NetworkError(InstallError):
    """A request failed, returned a non-2xx status or the connection broke."""

    def __init__(self, message: str, url: Optional[str] = None,
                 status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.url = url
        self.status = status
        self.body = body


class IntegrityError(InstallError):
    """Downloaded bytes don't match the expected size or hash."""


class SchemaError(InstallError):
    """A JSON document doesn't have the expected shape."""


# --- Loaders ---

class LoaderError(LauncherError):
    """Resolving or installing a component loader failed."""


class LoaderNetworkError(LoaderError):
    """The loader profile could not be fetched, even after catalog fallback."""


class BaseMismatchError(LoaderError):
    """The loader profile targets another base version than requested."""

    def __init__(self, expected: str, found: Optional[str]):
        super().__init__(f"profile inheritsFrom mismatch: expected {expected}, found {found}")
        self.expected = expected
        self.found = found


# --- Processes ---

class ProcessError(LauncherError):
    """The game process could not be spawned."""
