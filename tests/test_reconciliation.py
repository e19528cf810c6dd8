"""
tests/test_reconciliation.py — Counter Reconciliation Tests
============================================================
Drift is introduced by writing counters directly, then corrected from the
ground-truth rows.
"""

from __future__ import annotations

import logging

from conftest import fetch, make_post, make_user
from sqlalchemy import update

from agora.database.engine import get_session
from agora.database.models import Comment, Post, User
from agora.services import feed_service, thread_service
from agora.services.reconciliation_service import reconcile_counters


def _seed_activity(engine):
    author = make_user(engine, "author")
    fan = make_user(engine, "fan")
    post_id = make_post(engine, author)
    feed_service.toggle_like(engine, fan, post_id)
    top = thread_service.add_comment(engine, fan, post_id, "hi")
    thread_service.add_comment(engine, author, post_id, "hello", top.id)
    return author, fan, post_id, top.id


class TestReconcile:
    def test_clean_store_needs_no_corrections(self, db_engine, caplog):
        _seed_activity(db_engine)

        with caplog.at_level(logging.INFO, logger="agora.services.reconciliation_service"):
            report = reconcile_counters(db_engine)

        assert report["corrected"] == 0
        assert report["checked"] > 0
        assert "timestamp" in report
        assert "all" in caplog.text

    def test_drifted_counters_are_fixed(self, db_engine, caplog):
        author, fan, post_id, top_id = _seed_activity(db_engine)
        with get_session(db_engine) as session:
            session.execute(
                update(Post).where(Post.id == post_id).values(likes_count=7, comments_count=0)
            )
            session.execute(update(Comment).where(Comment.id == top_id).values(replies_count=5))
            session.execute(
                update(User).where(User.id == fan.user_id)
                .values(points=100, points_balance=100, level=2)
            )

        with caplog.at_level(logging.WARNING, logger="agora.services.reconciliation_service"):
            report = reconcile_counters(db_engine)

        assert report["corrected"] == 4
        counters = {c["counter"] for c in report["corrections"]}
        assert counters == {
            "post.likes_count", "post.comments_count", "comment.replies_count", "user.points",
        }
        post = fetch(db_engine, Post, post_id)
        assert post.likes_count == 1
        assert post.comments_count == 2
        assert fetch(db_engine, Comment, top_id).replies_count == 1
        fan_row = fetch(db_engine, User, fan.user_id)
        assert fan_row.points == 5   # like +2, comment +3
        assert fan_row.level == 1
        assert "corrected 4" in caplog.text

    def test_second_run_is_clean(self, db_engine):
        _, _, post_id, _ = _seed_activity(db_engine)
        with get_session(db_engine) as session:
            session.execute(update(Post).where(Post.id == post_id).values(likes_count=3))

        assert reconcile_counters(db_engine)["corrected"] == 1
        assert reconcile_counters(db_engine)["corrected"] == 0
