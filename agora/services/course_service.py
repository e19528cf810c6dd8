"""
agora.services.course_service — Lesson Completion
==================================================

Lessons of a course unlock in ``order_num`` order.  Completing a lesson
marks progress and awards ``lesson.points`` (or the configured default)
through the Reputation Ledger, keyed ``lesson:<lesson_id>:<user_id>`` so
a repeated completion never pays twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agora.constants import POINTS_LESSON_DEFAULT
from agora.database.engine import get_session
from agora.database.models import Course, Lesson, LessonProgress
from agora.engine.cache import ConfigCache, get_default_cache
from agora.engine.principal import Principal, load_actor
from agora.errors import NotFoundError, ValidationError
from agora.services import reputation_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CourseProgress:
    course_id: int
    completed: int
    total: int

    @property
    def percent(self) -> int:
        return round(self.completed / self.total * 100) if self.total else 0


def _completed_ids(session: Session, user_id: int, course_id: int) -> set[int]:
    return set(session.scalars(
        select(LessonProgress.lesson_id)
        .join(Lesson, Lesson.id == LessonProgress.lesson_id)
        .where(
            LessonProgress.user_id == user_id,
            LessonProgress.completed.is_(True),
            Lesson.course_id == course_id,
        )
    ).all())


def is_unlocked(session: Session, user_id: int, lesson: Lesson) -> bool:
    """The first lesson is always open; later ones need the previous one done."""
    previous_id = session.scalar(
        select(Lesson.id)
        .where(Lesson.course_id == lesson.course_id, Lesson.order_num < lesson.order_num)
        .order_by(Lesson.order_num.desc(), Lesson.id.desc())
        .limit(1)
    )
    if previous_id is None:
        return True
    return previous_id in _completed_ids(session, user_id, lesson.course_id)


def complete_lesson(
    engine: Engine,
    principal: Principal,
    lesson_id: int,
    *,
    cache: ConfigCache | None = None,
) -> int:
    """Mark *lesson_id* complete for the principal; returns their new total."""
    cache = cache or get_default_cache()
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        lesson = session.get(Lesson, lesson_id)
        if lesson is None:
            raise NotFoundError("Lesson", lesson_id)
        if not is_unlocked(session, actor.id, lesson):
            raise ValidationError(
                "Complete the previous lesson first", "lesson_locked",
            )

        progress = session.get(LessonProgress, (actor.id, lesson.id))
        if progress is None:
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(LessonProgress(
                        user_id=actor.id, lesson_id=lesson.id,
                        completed=True, completed_at=func.now(),
                    ))
                    session.flush()
            except IntegrityError:
                logger.debug("Lesson %d already tracked for user %d", lesson.id, actor.id)
        elif not progress.completed:
            progress.completed = True
            progress.completed_at = func.now()

        points = lesson.points
        if points is None:
            points = cache.get_int("reputation.points_lesson_default", POINTS_LESSON_DEFAULT)
        total = reputation_service.apply_event(
            session, actor.id, points, "lesson",
            source_key=f"lesson:{lesson.id}:{actor.id}", cache=cache,
        )
        logger.info("User %d completed lesson %d → %d pts", actor.id, lesson.id, total)
        return total


def get_course_progress(engine: Engine, principal: Principal, course_id: int) -> CourseProgress:
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        if session.get(Course, course_id) is None:
            raise NotFoundError("Course", course_id)
        total = session.scalar(
            select(func.count(Lesson.id)).where(Lesson.course_id == course_id)
        ) or 0
        completed = len(_completed_ids(session, actor.id, course_id))
        return CourseProgress(course_id=course_id, completed=completed, total=total)
