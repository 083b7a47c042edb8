"""Tag-based device filtering.

A filter is built once at startup from the configured patterns. Each pattern
selects one Tailscale tag name (without the ``tag:`` prefix); a device matches
when any of its tags matches any pattern.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .models import Device

TAG_PREFIX = "tag:"


class InvalidTagPatternError(ValueError):
    """Raised when a tag pattern is not a valid regular expression."""

    def __init__(self, pattern: str, error: re.error) -> None:
        super().__init__(f"invalid tag pattern {pattern!r}: {error}")
        self.pattern = pattern
        self.error = error


@dataclass(frozen=True)
class TagFilter:
    """Compiled tag predicate.

    ``regex`` is ``None`` for the match-all filter built from an empty pattern list.
    """

    patterns: tuple[str, ...]
    regex: re.Pattern[str] | None

    @property
    def matches_all(self) -> bool:
        return self.regex is None

    def match_tags(self, tags: Iterable[str]) -> bool:
        """Check a raw tag list (``tag:<name>`` entries) against the filter."""
        if self.regex is None:
            return True
        return self.regex.search(",".join(tags)) is not None

    def match(self, device: Device) -> bool:
        """Check whether the device carries at least one selected tag."""
        return self.match_tags(device.tags)


def build_tag_filter(patterns: Sequence[str] = ()) -> TagFilter:
    """Compile tag patterns into a single filter.

    Caller-given ``^``/``$`` anchors are trimmed and every pattern is
    re-anchored so it has to match one complete ``tag:<name>`` entry of the
    comma-joined tag list.

    Args:
        patterns: Regular expressions selecting tag names.

    Returns:
        The compiled filter. An empty sequence yields a filter matching every device.

    Raises:
        InvalidTagPatternError: On the first pattern that does not compile.
    """
    if not patterns:
        return TagFilter(patterns=(), regex=None)

    alternatives: list[str] = []
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise InvalidTagPatternError(pattern, e) from e
        alternatives.append(f"({pattern.strip('^$')})")

    combined = f"{TAG_PREFIX}({'|'.join(alternatives)})(,|$)"
    try:
        regex = re.compile(combined)
    except re.error as e:
        # Trimming anchors can break an escape such as a trailing "\$"
        raise InvalidTagPatternError(combined, e) from e
    return TagFilter(patterns=tuple(patterns), regex=regex)
