"""Approximate memory footprint estimation.

The numbers are rough, in the same spirit as a browser-side cache: strings
count two bytes per character, numbers eight, booleans four, containers the
sum of their keys and items. Only used for diagnostics output.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

KB = 1024
MB = 1024 * KB
GB = 1024 * MB


def estimate_bytes(obj: Any) -> int:
    """Estimate the size of ``obj`` in bytes.

    Traversal is iterative and tracks container identity, so self-referencing
    values are counted once instead of recursing forever.
    """
    total = 0
    stack: list[Any] = [obj]
    seen: set[int] = set()

    while stack:
        item = stack.pop()
        if item is None:
            continue
        if isinstance(item, bool):
            total += 4
        elif isinstance(item, (int, float)):
            total += 8
        elif isinstance(item, str):
            total += len(item) * 2
        elif isinstance(item, (bytes, bytearray)):
            total += len(item)
        elif isinstance(item, Mapping):
            if id(item) in seen:
                continue
            seen.add(id(item))
            for key, value in item.items():
                stack.append(key)
                stack.append(value)
        elif isinstance(item, (list, tuple, set, frozenset)):
            if id(item) in seen:
                continue
            seen.add(id(item))
            stack.extend(item)
        else:
            total += len(str(item)) * 2

    return total


def format_byte_size(size: int) -> str:
    """Render a byte count as a short human-readable string."""
    if size < KB:
        return f"{size} b"
    if size < MB:
        return f"{size / KB:.3f} KB"
    if size < GB:
        return f"{size / MB:.3f} MB"
    return f"{size / GB:.3f} GB"


def calculate_size(obj: Any) -> str:
    """Estimate and format in one step."""
    return format_byte_size(estimate_bytes(obj))
