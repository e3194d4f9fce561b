from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Optional

CHUNK_MARKER = "_part_"


class MemoryTag(str, Enum):
    """Canonical provenance labels for memory records."""

    USER_INPUT = "user_input"
    AI_OUTPUT = "ai_output"
    MANUAL = "manual"
    SUMMARY = "summary"
    UNKNOWN = "unknown"


class LegacyRole(str, Enum):
    """Coarse role marker carried by records written before tags existed."""

    USER = "user"
    AI = "ai"

    def to_tag(self) -> MemoryTag:
        return MemoryTag.USER_INPUT if self is LegacyRole.USER else MemoryTag.AI_OUTPUT


DEFAULT_ALLOWED_TAGS: frozenset[str] = frozenset(
    {MemoryTag.USER_INPUT.value, MemoryTag.MANUAL.value, MemoryTag.SUMMARY.value}
)


def legacy_role_for_tag(tag: str) -> Optional[str]:
    """Reverse mapping written alongside modern tags for old readers."""

    base = base_tag(tag)
    if base == MemoryTag.USER_INPUT.value:
        return LegacyRole.USER.value
    if base == MemoryTag.AI_OUTPUT.value:
        return LegacyRole.AI.value
    return None


def tag_from_legacy_role(role: Optional[str]) -> str:
    normalized = (role or "").strip().lower()
    try:
        return LegacyRole(normalized).to_tag().value
    except ValueError:
        return MemoryTag.UNKNOWN.value


def effective_tag(tag: Optional[str], role: Optional[str] = None) -> str:
    """Normalize a stored tag, falling back to the legacy role marker."""

    cleaned = (tag or "").strip()
    if cleaned:
        return cleaned
    return tag_from_legacy_role(role)


def chunk_tag(base: str, index: int, total: int) -> str:
    """Tag for the ``index``-th (1-based) of ``total`` chunks."""

    if total <= 1:
        return base
    return f"{base}{CHUNK_MARKER}{index}"


def base_tag(tag: str) -> str:
    """Strip a ``_part_<n>`` suffix, if any."""

    head, marker, tail = tag.rpartition(CHUNK_MARKER)
    if marker and head and tail.isdigit():
        return head
    return tag


def tag_allowed(tag: str, allowed_tags: Iterable[str]) -> bool:
    """Return True when ``tag`` passes the allow-list.

    An empty allow-list admits everything; chunk variants match on their base.
    """

    allowed = set(allowed_tags)
    if not allowed:
        return True
    if tag in allowed:
        return True
    return any(tag.startswith(f"{item}{CHUNK_MARKER}") for item in allowed)


def is_ai_output(tag: str) -> bool:
    return tag == MemoryTag.AI_OUTPUT.value or tag.startswith(
        f"{MemoryTag.AI_OUTPUT.value}{CHUNK_MARKER}"
    )
