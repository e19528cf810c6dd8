"""
agora.services.reconciliation_service — Counter Reconciliation
===============================================================

Periodic job that validates every derived value against its ground-truth
rows and corrects drift if found.

How it works:
    1. Compare ``posts.likes_count`` with ``COUNT(*)`` of ``post_likes``.
    2. Compare ``posts.comments_count`` with ``COUNT(*)`` of ``comments``
       on the post (all depths).
    3. Compare ``comments.replies_count`` with its direct children.
    4. Compare ``users.points_balance`` with ``SUM(delta)`` of
       ``reputation_events`` and re-derive ``points`` and ``level``.
    5. Log all corrections for audit.

Corrections are written as ``UPDATE … SET c = (SELECT COUNT(*) …)`` so
the store recomputes the truth at write time; an engagement that lands
between the check and the fix is still counted.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, case, func, select, update
from sqlalchemy.orm import aliased

from agora.constants import level_for_points, level_thresholds
from agora.database.engine import get_session
from agora.database.models import Comment, Post, PostLike, ReputationEvent, User
from agora.engine.cache import ConfigCache
from agora.services.reputation_service import level_expression

logger = logging.getLogger(__name__)


def _likes_truth():
    return (
        select(func.count()).select_from(PostLike)
        .where(PostLike.post_id == Post.id)
        .scalar_subquery()
    )


def _comments_truth():
    return (
        select(func.count()).select_from(Comment)
        .where(Comment.post_id == Post.id)
        .scalar_subquery()
    )


def _replies_truth():
    child = aliased(Comment)
    return (
        select(func.count()).select_from(child)
        .where(child.parent_id == Comment.id)
        .scalar_subquery()
    )


def _balance_truth():
    return (
        select(func.coalesce(func.sum(ReputationEvent.delta), 0))
        .where(ReputationEvent.user_id == User.id)
        .scalar_subquery()
    )


def reconcile_counters(engine: Engine, cache: ConfigCache | None = None) -> dict:
    """Validate derived counters and reputation totals, and fix drift.

    Returns ``{"checked": N, "corrected": M, "corrections": [...],
    "timestamp": ...}``.
    """
    thresholds = level_thresholds(cache)
    corrections: list[dict] = []
    checked = 0

    with get_session(engine) as session:
        # Posts: likes_count and comments_count
        likes_truth = _likes_truth()
        comments_truth = _comments_truth()
        post_rows = session.execute(
            select(
                Post.id,
                Post.likes_count,
                Post.comments_count,
                likes_truth.label("likes_actual"),
                comments_truth.label("comments_actual"),
            )
        ).all()
        for row in post_rows:
            checked += 2
            for counter, stored, actual, truth in (
                ("post.likes_count", row.likes_count, row.likes_actual, _likes_truth()),
                ("post.comments_count", row.comments_count, row.comments_actual, _comments_truth()),
            ):
                if stored == actual:
                    continue
                corrections.append({
                    "entity": "post",
                    "entity_id": row.id,
                    "counter": counter,
                    "stored": stored,
                    "actual": actual,
                    "diff": actual - stored,
                })
                column = counter.split(".", 1)[1]
                session.execute(
                    update(Post).where(Post.id == row.id)
                    .values({column: truth})
                    .execution_options(synchronize_session=False)
                )

        # Comments: replies_count
        reply_rows = session.execute(
            select(Comment.id, Comment.replies_count, _replies_truth().label("actual"))
        ).all()
        for row in reply_rows:
            checked += 1
            if row.replies_count == row.actual:
                continue
            corrections.append({
                "entity": "comment",
                "entity_id": row.id,
                "counter": "comment.replies_count",
                "stored": row.replies_count,
                "actual": row.actual,
                "diff": row.actual - row.replies_count,
            })
            session.execute(
                update(Comment).where(Comment.id == row.id)
                .values(replies_count=_replies_truth())
                .execution_options(synchronize_session=False)
            )

        # Users: points_balance, points, level
        user_rows = session.execute(
            select(
                User.id, User.points, User.points_balance, User.level,
                _balance_truth().label("balance_actual"),
            )
        ).all()
        for row in user_rows:
            checked += 1
            balance = int(row.balance_actual)
            points = max(0, balance)
            level = level_for_points(points, thresholds)
            if (row.points_balance, row.points, row.level) == (balance, points, level):
                continue
            corrections.append({
                "entity": "user",
                "entity_id": row.id,
                "counter": "user.points",
                "stored": row.points,
                "actual": points,
                "diff": points - row.points,
                "level": {"stored": row.level, "actual": level},
            })
            balance_truth = _balance_truth()
            points_truth = case((balance_truth < 0, 0), else_=balance_truth)
            session.execute(
                update(User).where(User.id == row.id)
                .values(
                    points_balance=balance_truth,
                    points=points_truth,
                    level=level_expression(points_truth, thresholds),
                )
                .execution_options(synchronize_session=False)
            )

    if corrections:
        logger.warning(
            "Counter reconciliation: corrected %d/%d values: %s",
            len(corrections), checked, corrections,
        )
    else:
        logger.info("Counter reconciliation: all %d values match", checked)

    return {
        "checked": checked,
        "corrected": len(corrections),
        "corrections": corrections,
        "timestamp": datetime.now(UTC).isoformat(),
    }
