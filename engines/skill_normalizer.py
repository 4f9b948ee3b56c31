"""Canonicalisation of raw skill labels attached to IST events."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, FrozenSet, Optional, Tuple

__all__ = [
    "RawSkills",
    "SkillsShape",
    "coerce_raw_skills",
    "normalize_event_skills",
    "normalize_skill",
    "skill_slug",
]

_ASCII_ALNUM_RE = re.compile(r"[a-z0-9]")


class SkillsShape(Enum):
    ABSENT = "absent"
    INVALID_SHAPE = "invalid_shape"
    SEQUENCE = "sequence"


@dataclass(frozen=True)
class RawSkills:
    """The ``skills`` field of an event, classified by shape."""

    shape: SkillsShape
    entries: Tuple[Any, ...] = ()


def normalize_skill(raw: Any) -> Optional[str]:
    """Return the canonical key for ``raw`` or ``None`` when it is not a usable label.

    The label is stripped, internal whitespace runs collapse to one space and the
    result is lowercased. Non-strings and labels without an ASCII letter or digit
    (``"!!!"``, ``"   "``, ``"½"``) are rejected.
    """
    if not isinstance(raw, str):
        return None
    collapsed = " ".join(raw.split())
    if not collapsed:
        return None
    lowered = collapsed.lower()
    if not _ASCII_ALNUM_RE.search(lowered):
        return None
    return lowered


def coerce_raw_skills(value: Any) -> RawSkills:
    if value is None:
        return RawSkills(SkillsShape.ABSENT)
    # Strings and mappings are iterable but never a list of labels.
    if isinstance(value, (list, tuple)):
        return RawSkills(SkillsShape.SEQUENCE, tuple(value))
    return RawSkills(SkillsShape.INVALID_SHAPE)


def normalize_event_skills(value: Any) -> FrozenSet[str]:
    """Distinct canonical skills of one event; malformed entries are dropped."""
    raw = value if isinstance(value, RawSkills) else coerce_raw_skills(value)
    if raw.shape is not SkillsShape.SEQUENCE:
        return frozenset()
    normalized = set()
    for entry in raw.entries:
        key = normalize_skill(entry)
        if key:
            normalized.add(key)
    return frozenset(normalized)


def skill_slug(canonical: str) -> str:
    return canonical.replace(" ", "-")
