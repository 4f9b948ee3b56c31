"""Teacher-facing IST class reports.

The report is a pure function of the events handed in: it never touches the
event store and never raises on malformed events. ``share`` is defined as
``count(skill) / total skill assignments`` where one assignment is one
(event, skill) pair after per-event de-duplication. It is *not* a share of
events, so the UI should label it "% of all skill assignments".
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from engines.skill_normalizer import normalize_event_skills
from schemas import SkillStat, TeacherClassReport, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_SKILLS = 10
DEFAULT_GAP_THRESHOLD = 0.02

__all__ = [
    "DEFAULT_GAP_THRESHOLD",
    "DEFAULT_MAX_SKILLS",
    "compute_teacher_class_report",
]


def _event_value(event: Any, attribute: str, key: str) -> Any:
    if isinstance(event, Mapping):
        if key in event:
            return event.get(key)
        return event.get(attribute)
    return getattr(event, attribute, None)


def _coerce_max_skills(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_MAX_SKILLS
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_MAX_SKILLS


def _coerce_threshold(value: Any) -> float:
    if isinstance(value, bool):
        return DEFAULT_GAP_THRESHOLD
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        return DEFAULT_GAP_THRESHOLD
    if math.isnan(threshold):
        return DEFAULT_GAP_THRESHOLD
    return threshold


def compute_teacher_class_report(
    events: Iterable[Any],
    course_id: str,
    *,
    max_skills: int = DEFAULT_MAX_SKILLS,
    gap_threshold: float = DEFAULT_GAP_THRESHOLD,
    now: Optional[datetime] = None,
) -> TeacherClassReport:
    """Aggregate ``events`` of ``course_id`` into a :class:`TeacherClassReport`.

    Events may be :class:`schemas.IstEvent` instances or raw mappings using
    either ``courseId`` or ``course_id``. Events of other courses are ignored.
    ``top_skills`` is ordered by count (desc) then skill (asc) and truncated to
    ``max_skills``; ``gaps`` holds every skill whose share is below
    ``gap_threshold`` ordered by share (asc) then skill (asc).
    """
    limit = _coerce_max_skills(max_skills)
    threshold = _coerce_threshold(gap_threshold)
    generated_at = now or utcnow()

    total_events = 0
    events_with_skills = 0
    frequencies: Counter[str] = Counter()

    try:
        candidates = iter(events or ())
    except TypeError:
        candidates = iter(())

    for event in candidates:
        if _event_value(event, "course_id", "courseId") != course_id:
            continue
        total_events += 1
        skills = normalize_event_skills(_event_value(event, "skills", "skills"))
        if not skills:
            continue
        events_with_skills += 1
        frequencies.update(skills)

    if not frequencies:
        return TeacherClassReport(
            course_id=course_id,
            total_events=total_events,
            events_with_skills=events_with_skills,
            unique_skills_count=0,
            total_skill_assignments=0,
            gap_threshold=threshold,
            top_skills=[],
            gaps=[],
            generated_at=generated_at,
        )

    total_assignments = sum(frequencies.values())
    stats = [
        SkillStat(skill=skill, count=count, share=count / total_assignments)
        for skill, count in frequencies.items()
    ]

    top_skills = sorted(stats, key=lambda stat: (-stat.count, stat.skill))[: max(0, limit)]
    gaps = sorted(
        (stat for stat in stats if stat.share < threshold),
        key=lambda stat: (stat.share, stat.skill),
    )

    logger.debug(
        "IST class report for %s: %d events, %d with skills, %d unique skills, %d gaps",
        course_id,
        total_events,
        events_with_skills,
        len(frequencies),
        len(gaps),
    )

    return TeacherClassReport(
        course_id=course_id,
        total_events=total_events,
        events_with_skills=events_with_skills,
        unique_skills_count=len(frequencies),
        total_skill_assignments=total_assignments,
        gap_threshold=threshold,
        top_skills=top_skills,
        gaps=gaps,
        generated_at=generated_at,
    )
