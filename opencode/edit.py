"""Exact string replacement engine for the edit_file tool."""

from __future__ import annotations


def count_occurrences(content: str, old_string: str) -> int:
    """Count non-overlapping occurrences of old_string in content."""
    if not old_string:
        return 0
    return content.count(old_string)


def replace(content: str, old_string: str, new_string: str) -> tuple[str, int]:
    """Replace every occurrence of old_string with new_string.

    Returns (new_content, occurrences_replaced).

    Raises ValueError:
      - "old_string must not be empty" if old_string is empty
      - "not found" if old_string does not occur in content
    """
    if not old_string:
        raise ValueError("old_string must not be empty")

    count = count_occurrences(content, old_string)
    if count == 0:
        raise ValueError("not found")

    return content.replace(old_string, new_string), count
