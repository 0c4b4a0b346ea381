"""Tracked-change segments between original and effective clause text."""

import re
from difflib import SequenceMatcher
from typing import Optional

from .models import TrackedChange

_TOKEN_RE = re.compile(r"\s+|\w+|[^\w\s]")


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text)


def _merge(changes: list[TrackedChange]) -> list[TrackedChange]:
    merged: list[TrackedChange] = []
    for c in changes:
        if not c.text:
            continue
        if merged and merged[-1].type == c.type and merged[-1].finding_id == c.finding_id:
            merged[-1] = TrackedChange(c.type, merged[-1].text + c.text, c.finding_id)
        else:
            merged.append(c)
    return merged


def diff_text(original: Optional[str], new: Optional[str], finding_id: Optional[str] = None) -> list[TrackedChange]:
    """Word-level diff of two texts as ordered delete/insert/equal segments.

    A replaced run is emitted as delete followed by insert.
    """
    if not original and not new:
        return []
    if not original:
        return [TrackedChange("insert", new, finding_id)]
    if not new:
        return [TrackedChange("delete", original, finding_id)]
    if original == new:
        return [TrackedChange("equal", original)]

    a, b = _tokenize(original), _tokenize(new)
    changes: list[TrackedChange] = []
    for tag, i1, i2, j1, j2 in SequenceMatcher(None, a, b, autojunk=False).get_opcodes():
        if tag == "equal":
            changes.append(TrackedChange("equal", "".join(a[i1:i2])))
        else:
            if i2 > i1:
                changes.append(TrackedChange("delete", "".join(a[i1:i2]), finding_id))
            if j2 > j1:
                changes.append(TrackedChange("insert", "".join(b[j1:j2]), finding_id))
    return _merge(changes)


def compose_replacements(original: str, spans: list[tuple[int, int, str, Optional[str]]]) -> tuple[str, list[TrackedChange]]:
    """Apply non-overlapping (start, end, replacement, finding_id) spans to the original text.

    Returns the effective text and the tracked changes: equal runs between
    spans, and a delete(excerpt) + insert(replacement) pair per span.
    """
    if not spans:
        return original, ([TrackedChange("equal", original)] if original else [])

    text_parts: list[str] = []
    changes: list[TrackedChange] = []
    cursor = 0
    for start, end, replacement, finding_id in sorted(spans, key=lambda s: s[0]):
        if start > cursor:
            text_parts.append(original[cursor:start])
            changes.append(TrackedChange("equal", original[cursor:start]))
        text_parts.append(replacement)
        changes.append(TrackedChange("delete", original[start:end], finding_id))
        changes.append(TrackedChange("insert", replacement, finding_id))
        cursor = end
    if cursor < len(original):
        text_parts.append(original[cursor:])
        changes.append(TrackedChange("equal", original[cursor:]))
    return "".join(text_parts), _merge(changes)


def apply_tracked_changes(changes: list[TrackedChange]) -> str:
    """Rebuild the effective text: equal + insert segments."""
    return "".join(c.text for c in changes if c.type != "delete")


def original_from_tracked_changes(changes: list[TrackedChange]) -> str:
    """Rebuild the original text: equal + delete segments."""
    return "".join(c.text for c in changes if c.type != "insert")


def has_tracked_changes(changes: list[TrackedChange]) -> bool:
    return any(c.type != "equal" for c in changes)


def count_tracked_changes(changes: list[TrackedChange]) -> dict:
    inserts = sum(1 for c in changes if c.type == "insert")
    deletes = sum(1 for c in changes if c.type == "delete")
    return {"insertCount": inserts, "deleteCount": deletes, "totalChanges": inserts + deletes}
