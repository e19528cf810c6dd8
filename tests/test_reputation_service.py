"""
tests/test_reputation_service.py — Reputation Ledger Tests
===========================================================
Point events, the never-negative displayed total, level derivation from
the threshold table, and business-key idempotency.
"""

from __future__ import annotations

import pytest
from conftest import count_rows, fetch, make_user

from agora.constants import level_for_points
from agora.database.engine import get_session
from agora.database.models import ReputationEvent, User
from agora.errors import AuthorizationError, NotFoundError, ValidationError
from agora.services import reputation_service


@pytest.fixture
def member(db_engine):
    return make_user(db_engine, "member")


def _apply(engine, user_id, delta, reason="test", **kwargs) -> int:
    with get_session(engine) as session:
        return reputation_service.apply_event(session, user_id, delta, reason, **kwargs)


class TestApplyEvent:
    def test_returns_new_total(self, db_engine, member):
        assert _apply(db_engine, member.user_id, 5, "post") == 5
        assert _apply(db_engine, member.user_id, 3, "comment") == 8

        user = fetch(db_engine, User, member.user_id)
        assert user.points == 8
        assert user.points_balance == 8
        assert count_rows(db_engine, ReputationEvent) == 2

    def test_level_follows_thresholds(self, db_engine, member, cache):
        _apply(db_engine, member.user_id, 99, cache=cache)
        assert fetch(db_engine, User, member.user_id).level == 1

        _apply(db_engine, member.user_id, 1, cache=cache)
        assert fetch(db_engine, User, member.user_id).level == 2

        _apply(db_engine, member.user_id, 400, cache=cache)
        assert fetch(db_engine, User, member.user_id).level == level_for_points(500)

    def test_custom_thresholds_from_cache(self, db_engine, member, cache):
        cache.set_local("reputation.level_thresholds", [0, 10, 20])
        _apply(db_engine, member.user_id, 25, cache=cache)
        assert fetch(db_engine, User, member.user_id).level == 3

    def test_total_never_negative(self, db_engine, member):
        _apply(db_engine, member.user_id, 2, "like")
        assert _apply(db_engine, member.user_id, -5, "penalty") == 0

        user = fetch(db_engine, User, member.user_id)
        assert user.points == 0
        assert user.points_balance == -3

    def test_total_matches_ledger_after_dipping_below_zero(self, db_engine, member):
        for delta in (2, -5, 3, 4):
            _apply(db_engine, member.user_id, delta)

        with get_session(db_engine) as session:
            ledger = reputation_service.get_ledger_total(session, member.user_id)
        assert ledger == max(0, 2 - 5 + 3 + 4)
        assert fetch(db_engine, User, member.user_id).points == ledger

    def test_unknown_user(self, db_engine):
        with pytest.raises(NotFoundError):
            _apply(db_engine, 424242, 5)
        assert count_rows(db_engine, ReputationEvent) == 0

    def test_unknown_user_with_source_key(self, db_engine):
        with pytest.raises(NotFoundError):
            _apply(db_engine, 424242, 5, source_key="post:1")


class TestIdempotency:
    def test_same_source_key_applies_once(self, db_engine, member):
        first = _apply(db_engine, member.user_id, 10, "lesson", source_key="lesson:1:1")
        second = _apply(db_engine, member.user_id, 10, "lesson", source_key="lesson:1:1")

        assert first == second == 10
        assert count_rows(
            db_engine, ReputationEvent, ReputationEvent.source_key == "lesson:1:1",
        ) == 1

    def test_duplicate_key_leaves_outer_transaction_usable(self, db_engine, member):
        _apply(db_engine, member.user_id, 5, source_key="post:1")
        with get_session(db_engine) as session:
            reputation_service.apply_event(
                session, member.user_id, 5, "post", source_key="post:1",
            )
            reputation_service.apply_event(session, member.user_id, 2, "like")

        assert fetch(db_engine, User, member.user_id).points == 7

    def test_unkeyed_events_always_apply(self, db_engine, member):
        _apply(db_engine, member.user_id, 2, "like")
        _apply(db_engine, member.user_id, 2, "like")
        assert fetch(db_engine, User, member.user_id).points == 4


class TestRevoke:
    def test_revoke_reverses_once(self, db_engine, member):
        _apply(db_engine, member.user_id, 3, "comment", source_key="comment:7")
        with get_session(db_engine) as session:
            assert reputation_service.revoke_event(session, "comment:7", "comment_deleted") == 0
            assert reputation_service.revoke_event(session, "comment:7", "comment_deleted") == 0

        assert count_rows(db_engine, ReputationEvent) == 2
        assert fetch(db_engine, User, member.user_id).points == 0

    def test_revoke_unknown_key(self, db_engine, member):
        with get_session(db_engine) as session:
            assert reputation_service.revoke_event(session, "comment:404", "gone") is None


class TestHistory:
    def test_most_recent_first(self, db_engine, member):
        for reason in ("post", "comment", "like"):
            _apply(db_engine, member.user_id, 1, reason)

        with get_session(db_engine) as session:
            history = reputation_service.get_history(session, member.user_id, limit=2)
            reasons = [event.reason for event in history]
        assert reasons == ["like", "comment"]


class TestLeaderboard:
    def test_ranked_by_points_then_registration(self, db_engine, member):
        top = make_user(db_engine, "top")
        tied = make_user(db_engine, "tied")
        _apply(db_engine, top.user_id, 50)
        _apply(db_engine, member.user_id, 10)
        _apply(db_engine, tied.user_id, 10)

        board = reputation_service.get_leaderboard(db_engine, member, limit=3)

        assert [entry.user_id for entry in board] == [top.user_id, member.user_id, tied.user_id]
        assert [entry.rank for entry in board] == [1, 2, 3]
        assert board[0].points == 50
        assert board[0].level == level_for_points(50)

    @pytest.mark.parametrize("limit", [0, 101])
    def test_limit_out_of_range(self, db_engine, member, limit):
        with pytest.raises(ValidationError):
            reputation_service.get_leaderboard(db_engine, member, limit=limit)

    def test_pending_member_cannot_view(self, db_engine):
        pending = make_user(db_engine, "pending", approval_status="pending")
        with pytest.raises(AuthorizationError):
            reputation_service.get_leaderboard(db_engine, pending)
