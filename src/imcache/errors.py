"""Exception taxonomy for IMCache.

Missing or expired keys are not errors: ``get`` returns ``None`` and
``update`` returns ``False``. The exceptions below only travel inside the
remote invalidation path, where the channel manager catches and logs them.
"""

from __future__ import annotations


class IMCacheError(Exception):
    """Base class for cache errors."""


class TransportUnavailableError(IMCacheError):
    """A remote invalidation channel could not be opened."""

    def __init__(self, address: str, reason: str = "") -> None:
        self.address = address
        self.reason = reason
        message = f"Transport unavailable for {address}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class MalformedMessageError(IMCacheError, ValueError):
    """An inbound invalidation message could not be decoded."""
