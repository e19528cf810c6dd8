"""
tests/test_admin_service.py — Audit Log & Admin-Only Operations
================================================================
Role changes, account removal that keeps other members' counters exact,
deny-list listing, and live settings updates.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from conftest import count_rows, fetch, make_post, make_user
from sqlalchemy import select
from sqlalchemy.orm import Session

from agora.database.models import AdminLog, Comment, Post, PostLike, User
from agora.engine.cache import get_default_cache
from agora.errors import AuthorizationError, NotFoundError, ValidationError
from agora.services import admin_service, feed_service, moderation_service, thread_service


@pytest.fixture
def admin(db_engine):
    return make_user(db_engine, "admin", role="admin")


class TestChangeRole:
    def test_admin_promotes_member(self, db_engine, admin):
        member = make_user(db_engine, "member")
        user = admin_service.change_role(db_engine, admin, member.user_id, "moderator")

        assert user.role == "moderator"
        with Session(db_engine) as session:
            log = session.scalar(select(AdminLog).where(AdminLog.action_type == "ROLE_CHANGE"))
            assert log.actor_id == admin.user_id
            assert log.before_snapshot["role"] == "member"
            assert log.after_snapshot["role"] == "moderator"
            assert "points_balance" not in log.after_snapshot

    def test_moderator_cannot_change_roles(self, db_engine):
        mod = make_user(db_engine, "mod", role="moderator")
        member = make_user(db_engine, "member")
        with pytest.raises(AuthorizationError):
            admin_service.change_role(db_engine, mod, member.user_id, "admin")
        assert fetch(db_engine, User, member.user_id).role == "member"

    def test_admin_cannot_change_own_role(self, db_engine, admin):
        with pytest.raises(AuthorizationError):
            admin_service.change_role(db_engine, admin, admin.user_id, "member")

    def test_unknown_role(self, db_engine, admin):
        member = make_user(db_engine, "member")
        with pytest.raises(ValidationError):
            admin_service.change_role(db_engine, admin, member.user_id, "owner")

    def test_missing_user(self, db_engine, admin):
        with pytest.raises(NotFoundError):
            admin_service.change_role(db_engine, admin, 9999, "moderator")


class TestDeleteUser:
    def test_removes_engagement_on_other_posts(self, db_engine, admin):
        host = make_user(db_engine, "host")
        leaver = make_user(db_engine, "leaver")
        post_id = make_post(db_engine, host)

        feed_service.toggle_like(db_engine, leaver, post_id)
        feed_service.toggle_like(db_engine, host, post_id)
        host_comment = thread_service.add_comment(db_engine, host, post_id, "question?")
        thread_service.add_comment(db_engine, leaver, post_id, "answer", host_comment.id)
        thread_service.add_comment(db_engine, leaver, post_id, "also")
        own_post = feed_service.create_post(db_engine, leaver, "Mine", "content")
        thread_service.add_comment(db_engine, host, own_post.id, "nice")

        admin_service.delete_user(db_engine, admin, leaver.user_id, reason="kick")

        post = fetch(db_engine, Post, post_id)
        assert post.likes_count == 1
        assert post.comments_count == 1
        assert fetch(db_engine, Comment, host_comment.id).replies_count == 0
        assert fetch(db_engine, Post, own_post.id) is None
        assert count_rows(db_engine, PostLike) == 1
        assert fetch(db_engine, User, leaver.user_id) is None
        # host: like +2, question +3; the comment on the removed post is revoked
        assert fetch(db_engine, User, host.user_id).points == 5
        assert count_rows(db_engine, AdminLog, AdminLog.action_type == "DELETE") == 1

    def test_email_may_register_again(self, db_engine, admin):
        leaver = make_user(db_engine, "leaver")
        admin_service.delete_user(db_engine, admin, leaver.user_id)

        result = moderation_service.register_user(db_engine, leaver.email)
        assert result.approval_status == "pending"

    def test_requires_admin(self, db_engine):
        mod = make_user(db_engine, "mod", role="moderator")
        member = make_user(db_engine, "member")
        with pytest.raises(AuthorizationError):
            admin_service.delete_user(db_engine, mod, member.user_id)


class TestDenyList:
    def test_list_banned_emails(self, db_engine, admin):
        for name in ("a", "b"):
            member = make_user(db_engine, name)
            moderation_service.ban_user(
                db_engine, admin, member.user_id, permanent=True, reason="abuse",
            )

        emails = {row.email for row in admin_service.list_banned_emails(db_engine, admin)}
        assert emails == {"a@example.com", "b@example.com"}

    def test_list_requires_admin(self, db_engine):
        mod = make_user(db_engine, "mod", role="moderator")
        with pytest.raises(AuthorizationError):
            admin_service.list_banned_emails(db_engine, mod)


class TestSettings:
    def test_update_setting_refreshes_cache(self, db_engine, admin, cache):
        admin_service.update_setting(
            db_engine, admin, "reputation.points_post", 7, cache=cache,
        )
        assert cache.get_int("reputation.points_post") == 7

        author = make_user(db_engine, "author")
        feed_service.create_post(db_engine, author, "T", "C", cache=cache)
        assert fetch(db_engine, User, author.user_id).points == 7

    def test_every_passed_cache_is_reloaded(self, db_engine, admin):
        default = get_default_cache()
        with patch.object(default, "reload") as reload:
            admin_service.update_setting(
                db_engine, admin, "reputation.points_like", 4, cache=default,
            )
        reload.assert_called_once_with()

    def test_unknown_setting(self, db_engine, admin):
        with pytest.raises(NotFoundError):
            admin_service.update_setting(db_engine, admin, "reputation.nope", 1)
