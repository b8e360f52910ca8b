"""String replacement engine for the edit tool.

Only exact matches are accepted: an edit must name a fragment that occurs
exactly once in the file.
"""

from __future__ import annotations

from .errors import AmbiguousPattern, InvalidArguments, PatternNotFound


def count_occurrences(content: str, fragment: str) -> int:
    """Count non-overlapping exact occurrences of fragment in content."""
    if not fragment:
        return 0
    return content.count(fragment)


def replace(content: str, old: str, new: str, path: str = "<content>") -> str:
    """Replace the single occurrence of old with new in content.

    Raises:
      InvalidArguments if old is empty
      PatternNotFound if old does not occur
      AmbiguousPattern if old occurs more than once
    """
    if not old:
        raise InvalidArguments("old_content must not be empty")

    count = count_occurrences(content, old)
    if count == 0:
        raise PatternNotFound(path)
    if count > 1:
        raise AmbiguousPattern(path, count)
    return content.replace(old, new, 1)
