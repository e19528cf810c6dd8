"""
tests/test_feed_service.py — Posts & Likes Tests
=================================================
Like/unlike bookkeeping, idempotent retries, concurrent likes against a
file-backed store, and post deletion cascades.
"""

from __future__ import annotations

import threading

import pytest
from conftest import count_rows, fetch, make_post, make_user

from agora.database.models import Comment, Post, PostLike, User
from agora.errors import AuthorizationError, NotFoundError, ValidationError
from agora.services import feed_service, moderation_service, thread_service


@pytest.fixture
def author(db_engine):
    return make_user(db_engine, "author")


@pytest.fixture
def post_id(db_engine, author):
    return make_post(db_engine, author)


class TestToggleLike:
    def test_like_then_unlike(self, db_engine, post_id):
        fan = make_user(db_engine, "fan")

        liked = feed_service.toggle_like(db_engine, fan, post_id)
        assert liked.liked is True
        assert liked.likes_count == 1
        assert fetch(db_engine, User, fan.user_id).points == 2

        unliked = feed_service.toggle_like(db_engine, fan, post_id)
        assert unliked.liked is False
        assert unliked.likes_count == 0
        assert fetch(db_engine, User, fan.user_id).points == 0
        assert count_rows(db_engine, PostLike) == 0

    def test_count_matches_like_rows(self, db_engine, post_id):
        fans = [make_user(db_engine, f"fan{i}") for i in range(3)]
        for fan in fans:
            feed_service.toggle_like(db_engine, fan, post_id)
        feed_service.toggle_like(db_engine, fans[0], post_id)

        assert fetch(db_engine, Post, post_id).likes_count == 2
        assert count_rows(db_engine, PostLike, PostLike.post_id == post_id) == 2

    def test_missing_post(self, db_engine, author):
        with pytest.raises(NotFoundError):
            feed_service.toggle_like(db_engine, author, 9999)

    def test_banned_member_cannot_like(self, db_engine, post_id):
        admin = make_user(db_engine, "admin", role="admin")
        fan = make_user(db_engine, "fan")
        moderation_service.ban_user(db_engine, admin, fan.user_id, reason="spam")

        with pytest.raises(AuthorizationError):
            feed_service.toggle_like(db_engine, fan, post_id)
        assert fetch(db_engine, Post, post_id).likes_count == 0


class TestSetLike:
    def test_repeated_like_is_noop(self, db_engine, post_id):
        fan = make_user(db_engine, "fan")
        for _ in range(3):
            result = feed_service.set_like(db_engine, fan, post_id, True)

        assert result.liked is True
        assert result.likes_count == 1
        assert fetch(db_engine, User, fan.user_id).points == 2

    def test_unlike_without_like_is_noop(self, db_engine, post_id):
        fan = make_user(db_engine, "fan")
        result = feed_service.set_like(db_engine, fan, post_id, False)

        assert result.likes_count == 0
        assert fetch(db_engine, User, fan.user_id).points == 0


class TestConcurrentLikes:
    def test_two_members_like_at_once(self, file_engine):
        author = make_user(file_engine, "author")
        post_id = make_post(file_engine, author)
        fans = [make_user(file_engine, "a"), make_user(file_engine, "b")]
        barrier = threading.Barrier(len(fans))
        errors: list[Exception] = []

        def like(principal):
            try:
                barrier.wait()
                feed_service.toggle_like(file_engine, principal, post_id)
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=like, args=(fan,)) for fan in fans]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert fetch(file_engine, Post, post_id).likes_count == 2
        assert count_rows(file_engine, PostLike) == 2

    def test_retried_like_from_many_threads_counts_once(self, file_engine):
        author = make_user(file_engine, "author")
        post_id = make_post(file_engine, author)
        fan = make_user(file_engine, "fan")
        barrier = threading.Barrier(5)

        def like():
            barrier.wait()
            feed_service.set_like(file_engine, fan, post_id, True)

        threads = [threading.Thread(target=like) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert fetch(file_engine, Post, post_id).likes_count == 1
        assert fetch(file_engine, User, fan.user_id).points == 2


    def test_mixed_likes_and_unlikes(self, file_engine):
        """Each member runs its own sequence; the count equals the members
        whose last action was a like."""
        author = make_user(file_engine, "author")
        post_id = make_post(file_engine, author)
        plans = [
            [True],
            [True, False],
            [True, False, True],
            [False, True, False],
            [True, True],
            [False],
        ]
        fans = [make_user(file_engine, f"fan{i}") for i in range(len(plans))]
        barrier = threading.Barrier(len(fans))
        errors: list[Exception] = []

        def run(principal, actions):
            try:
                barrier.wait()
                for liked in actions:
                    feed_service.set_like(file_engine, principal, post_id, liked)
            except Exception as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=run, args=(fan, actions))
            for fan, actions in zip(fans, plans)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        expected = sum(1 for actions in plans if actions[-1])
        assert fetch(file_engine, Post, post_id).likes_count == expected
        assert count_rows(file_engine, PostLike) == expected
        for fan, actions in zip(fans, plans):
            assert fetch(file_engine, User, fan.user_id).points == (2 if actions[-1] else 0)

class TestPosts:
    def test_create_post_awards_points(self, db_engine, author):
        post = feed_service.create_post(db_engine, author, "Intro", "Hi all")

        assert post.likes_count == 0
        assert fetch(db_engine, User, author.user_id).points == 5

    def test_post_after_delete_gets_fresh_id_and_award(self, db_engine, author):
        first = feed_service.create_post(db_engine, author, "One", "Hi all")
        feed_service.delete_post(db_engine, author, first.id)

        second = feed_service.create_post(db_engine, author, "Two", "Hi again")

        assert second.id != first.id
        assert fetch(db_engine, User, author.user_id).points == 5
        feed_service.delete_post(db_engine, author, second.id)
        assert fetch(db_engine, User, author.user_id).points == 0

    def test_create_post_requires_content(self, db_engine, author):
        with pytest.raises(ValidationError):
            feed_service.create_post(db_engine, author, "Intro", "  ")

    def test_delete_post_cascades_and_revokes(self, db_engine, author):
        post = feed_service.create_post(db_engine, author, "Intro", "Hi all")
        fan = make_user(db_engine, "fan")
        feed_service.toggle_like(db_engine, fan, post.id)
        top = thread_service.add_comment(db_engine, fan, post.id, "welcome")
        thread_service.add_comment(db_engine, author, post.id, "thanks", top.id)

        feed_service.delete_post(db_engine, author, post.id)

        assert fetch(db_engine, Post, post.id) is None
        assert count_rows(db_engine, Comment) == 0
        assert count_rows(db_engine, PostLike) == 0
        assert fetch(db_engine, User, author.user_id).points == 0
        # Like award stays with the liker; comment award is revoked.
        assert fetch(db_engine, User, fan.user_id).points == 2

    def test_only_owner_or_staff_delete(self, db_engine, author, post_id):
        stranger = make_user(db_engine, "stranger")
        with pytest.raises(AuthorizationError):
            feed_service.delete_post(db_engine, stranger, post_id)

        admin = make_user(db_engine, "admin", role="admin")
        feed_service.delete_post(db_engine, admin, post_id)
        assert fetch(db_engine, Post, post_id) is None

    def test_get_post(self, db_engine, post_id):
        assert feed_service.get_post(db_engine, post_id).id == post_id
        with pytest.raises(NotFoundError):
            feed_service.get_post(db_engine, 9999)
