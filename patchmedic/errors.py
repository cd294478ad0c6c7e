"""Exception types shared by the watcher, the transfer layer and the patch manager.

Nothing here escapes the public flows of PatchManager: they convert every
exception into a string attached to the published progress payload.
"""

from __future__ import annotations


class PatchError(Exception):
    """Base class for repair failures."""


class PatchConfigError(PatchError):
    """Missing install path, missing log file, unknown profile or no web root."""


class DownloadError(PatchError):
    """A single file could not be fetched from the CDN."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{message} ({url})")
        self.url = url


class PatchCancelled(PatchError):
    """The running repair was cancelled by the user."""

    def __init__(self, message: str = "Cancelled by user"):
        super().__init__(message)
