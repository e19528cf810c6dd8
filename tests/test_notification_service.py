"""
tests/test_notification_service.py — Notification Inbox Tests
==============================================================
Delivery through the sinks, failure isolation, and the per-member inbox.
"""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest
from conftest import count_rows, make_user

from agora.database.models import Notification
from agora.errors import NotFoundError
from agora.services import notification_service
from agora.services.notification_service import DatabaseNotificationSink


@pytest.fixture
def member(db_engine):
    return make_user(db_engine, "member")


@pytest.fixture
def sink(db_engine):
    return DatabaseNotificationSink(db_engine)


class TestSend:
    def test_failing_sink_is_logged_not_raised(self, caplog):
        broken = MagicMock()
        broken.notify.side_effect = RuntimeError("smtp down")

        with caplog.at_level(logging.ERROR, logger="agora.services.notification_service"):
            assert notification_service.welcome(broken, 7) is False
        assert "Failed to send" in caplog.text

    def test_no_sink(self):
        assert notification_service.welcome(None, 7) is False


class TestInbox:
    def test_newest_first(self, db_engine, member, sink):
        notification_service.welcome(sink, member.user_id)
        notification_service.approved(sink, member.user_id)

        inbox = notification_service.list_notifications(db_engine, member)

        assert [n.type for n in inbox] == ["approval", "welcome"]
        assert not any(n.read for n in inbox)

    def test_pending_member_reads_welcome(self, db_engine, sink):
        pending = make_user(db_engine, "pending", approval_status="pending")
        notification_service.welcome(sink, pending.user_id)

        inbox = notification_service.list_notifications(db_engine, pending)
        assert [n.type for n in inbox] == ["welcome"]

    def test_mark_read(self, db_engine, member, sink):
        notification_service.welcome(sink, member.user_id)
        (note,) = notification_service.list_notifications(db_engine, member)

        assert notification_service.mark_read(db_engine, member, note.id) is True
        assert notification_service.mark_read(db_engine, member, note.id) is False
        assert notification_service.list_notifications(db_engine, member, unread_only=True) == []

    def test_mark_all_read(self, db_engine, member, sink):
        other = make_user(db_engine, "other")
        notification_service.welcome(sink, member.user_id)
        notification_service.approved(sink, member.user_id)
        notification_service.welcome(sink, other.user_id)

        assert notification_service.mark_all_read(db_engine, member) == 2
        assert notification_service.mark_all_read(db_engine, member) == 0
        assert len(notification_service.list_notifications(
            db_engine, other, unread_only=True,
        )) == 1

    def test_cannot_touch_another_members_inbox(self, db_engine, member, sink):
        other = make_user(db_engine, "other")
        notification_service.welcome(sink, other.user_id)
        (note,) = notification_service.list_notifications(db_engine, other)

        with pytest.raises(NotFoundError):
            notification_service.mark_read(db_engine, member, note.id)
        with pytest.raises(NotFoundError):
            notification_service.delete_notification(db_engine, member, note.id)
        assert count_rows(db_engine, Notification) == 1

    def test_delete(self, db_engine, member, sink):
        notification_service.welcome(sink, member.user_id)
        (note,) = notification_service.list_notifications(db_engine, member)

        notification_service.delete_notification(db_engine, member, note.id)

        assert count_rows(db_engine, Notification) == 0
