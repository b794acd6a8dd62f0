"""Selectors used to address cache entries by logical key.

A selector is one of two closed variants:
- Plain: a single logical key, compared verbatim
- Pattern: a compiled regular expression searched in each logical key

Callers may pass a bare ``str`` or ``re.Pattern`` anywhere a selector is
accepted; :func:`as_selector` normalizes them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Plain:
    """Selects the entry whose logical key equals ``key``."""

    key: str

    def matches(self, logical_key: str) -> bool:
        return logical_key == self.key


@dataclass(frozen=True)
class Pattern:
    """Selects every entry whose logical key matches ``regex``."""

    regex: re.Pattern[str]

    @classmethod
    def compile(cls, source: str, flags: int = 0) -> Pattern:
        """Compile ``source`` into a pattern selector.

        Raises:
            re.error: If ``source`` is not a valid regular expression.
        """
        return cls(re.compile(source, flags))

    def matches(self, logical_key: str) -> bool:
        return self.regex.search(logical_key) is not None


Selector = Union[Plain, Pattern]
SelectorLike = Union[str, re.Pattern[str], Plain, Pattern]


def as_selector(value: SelectorLike) -> Selector:
    """Normalize a selector-like value into a :data:`Selector` variant."""
    if isinstance(value, (Plain, Pattern)):
        return value
    if isinstance(value, str):
        return Plain(value)
    if isinstance(value, re.Pattern):
        return Pattern(value)
    raise TypeError(f"Unsupported selector type: {type(value).__name__}")
