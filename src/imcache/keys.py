"""Key derivation for IMCache.

Key format: {prefix}:{hash32}

Where:
- prefix: "imcache" by default (keeps internal keys out of the way of any
  other string keys a caller might mix into the same mapping)
- hash32: 32-bit signed string hash of the logical key

Collisions are not detected. Two logical keys with the same hash share one
internal key and overwrite each other.
"""

from __future__ import annotations

_INT32_MASK = 0xFFFFFFFF
_INT32_SIGN = 0x80000000


def hash32(value: str) -> int:
    """Deterministic 32-bit signed hash (``h = h * 31 + code``, wrapped).

    Characters outside the Basic Multilingual Plane are hashed as their
    UTF-16 surrogate pair so keys hash identically across runtimes.
    """
    result = 0
    for unit in _utf16_units(value):
        result = (result * 31 + unit) & _INT32_MASK
    if result & _INT32_SIGN:
        result -= 1 << 32
    return result


def _utf16_units(value: str) -> list[int]:
    data = value.encode("utf-16-le", "surrogatepass")
    return [int.from_bytes(data[i : i + 2], "little") for i in range(0, len(data), 2)]


class CacheKeys:
    """Internal key generator following a consistent naming convention."""

    PREFIX = "imcache"

    @classmethod
    def derive(
        cls, logical_key: str, namespace: str | None = None, prefix: str | None = None
    ) -> str:
        """Internal key for a logical key.

        ``namespace`` is hashed together with the logical key so that the same
        logical key under different namespaces maps to different entries.
        """
        material = logical_key if namespace is None else f"{logical_key}{namespace}"
        return f"{prefix or cls.PREFIX}:{hash32(material)}"
        try:
            return int(tail)
        except ValueError:
            return None


def derive_key(logical_key: str, namespace: str | None = None) -> str:
    """Shorthand for :meth:`CacheKeys.derive` with the default prefix."""
    return CacheKeys.derive(logical_key, namespace)
