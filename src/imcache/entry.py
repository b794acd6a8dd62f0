"""Cache entry record."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from imcache.selectors import Plain, Selector


def now_ms() -> float:
    """Current wall-clock time in milliseconds."""
    return time.time() * 1000.0


@dataclass
class CacheEntry:
    """A single cached value with its lifetime and dependency metadata.

    ``created_at`` is captured when the entry is set and never changes.
    ``ttl_ms`` of ``None`` or ``0`` means the entry never expires.
    """

    logical_key: str
    internal_key: str
    value: Any
    created_at: float
    ttl_ms: int | None = None
    depends_on: tuple[Selector, ...] = field(default_factory=tuple)
    remote_channel_address: str | None = None
    dirty: bool = False

    @property
    def expires_at(self) -> float | None:
        """Absolute expiry time in milliseconds, or None if it never expires."""
        if not self.ttl_ms:
            return None
        return self.created_at + self.ttl_ms

    def is_live(self, now: float) -> bool:
        expires_at = self.expires_at
        return expires_at is None or now < expires_at

    def remaining_ms(self, now: float) -> float | None:
        """Milliseconds left before expiry (clamped at zero)."""
        expires_at = self.expires_at
        if expires_at is None:
            return None
        return max(0.0, expires_at - now)

    def replace_value(self, value: Any) -> None:
        """Swap the value and mark the entry dirty; lifetime is untouched."""
        self.value = value
        self.dirty = True

    def to_dict(self) -> dict[str, Any]:
        """Snapshot used by size estimation and debugging output."""
        return {
            "key": self.logical_key,
            "value": self.value,
            "timestamp": self.created_at,
            "expire": self.ttl_ms or 0,
            "dependsOn": [_describe(selector) for selector in self.depends_on],
            "remote": self.remote_channel_address,
            "changed": self.dirty,
        }


def _describe(selector: Selector) -> str:
    if isinstance(selector, Plain):
        return selector.key
    return selector.regex.pattern
