"""
agora.services.notification_service — Fire-and-Forget Notification Sink
========================================================================

Notifications are a side channel.  They are sent only after the primary
transaction has committed, in their own session, and a failure is logged
and swallowed: a lost "your account was approved" message must never roll
back the approval itself.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import Engine, select, update

from agora.database.engine import get_session
from agora.database.models import Notification
from agora.engine.principal import Principal, load_actor
from agora.errors import NotFoundError

if TYPE_CHECKING:
    from agora.config import AgoraConfig

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(
        self,
        user_id: int,
        kind: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> None: ...


class DatabaseNotificationSink:
    """Writes to the ``notifications`` table the inbox UI reads from."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def notify(
        self,
        user_id: int,
        kind: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> None:
        with get_session(self.engine) as session:
            session.add(Notification(
                user_id=user_id, type=kind, title=title, message=message, link=link,
            ))


class NullNotificationSink:
    def notify(self, user_id, kind, title, message, link=None) -> None:
        return None


def send(
    sink: NotificationSink | None,
    user_id: int,
    kind: str,
    title: str,
    message: str,
    link: str | None = "/feed",
) -> bool:
    """Deliver through *sink*; returns ``False`` (and logs) on failure."""
    if sink is None:
        return False
    try:
        sink.notify(user_id, kind, title, message, link)
    except Exception:
        logger.exception("Failed to send %r notification to user %d", kind, user_id)
        return False
    return True


# ---------------------------------------------------------------------------
# Message catalogue
# ---------------------------------------------------------------------------
def welcome(sink: NotificationSink | None, user_id: int) -> bool:
    return send(
        sink, user_id, "welcome",
        "Welcome to the community!",
        "Get started by introducing yourself in the community feed.",
    )


def approved(sink: NotificationSink | None, user_id: int) -> bool:
    return send(
        sink, user_id, "approval",
        "Account Approved!",
        "Your account has been approved. Welcome to the community! "
        "Get started by introducing yourself in the community feed.",
    )


def rejected(sink: NotificationSink | None, user_id: int, reason: str | None) -> bool:
    return send(
        sink, user_id, "rejection",
        "Account Not Approved",
        f"Your account application was not approved. Reason: {reason or 'not given'}. "
        "Please contact an administrator for more information.",
    )


def sink_from_config(engine: Engine, cfg: AgoraConfig) -> NotificationSink:
    """Database sink, or a no-op sink when notifications are switched off."""
    if not cfg.notifications_enabled:
        return NullNotificationSink()
    return DatabaseNotificationSink(engine)


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------
# Pending members can read their inbox; the welcome message lands there.
def list_notifications(
    engine: Engine,
    principal: Principal,
    *,
    unread_only: bool = False,
) -> list[Notification]:
    """The caller's notifications, newest first."""
    with get_session(engine) as session:
        actor = load_actor(session, principal, require_approved=False)
        stmt = select(Notification).where(Notification.user_id == actor.id)
        if unread_only:
            stmt = stmt.where(Notification.read.is_(False))
        return list(session.scalars(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        ).all())


def mark_read(engine: Engine, principal: Principal, notification_id: int) -> bool:
    """Mark one of the caller's notifications read.

    Returns ``False`` if it was already read.  Another member's notification
    is reported as missing.
    """
    with get_session(engine) as session:
        actor = load_actor(session, principal, require_approved=False)
        row = session.get(Notification, notification_id)
        if row is None or row.user_id != actor.id:
            raise NotFoundError("Notification", notification_id)
        if row.read:
            return False
        row.read = True
        return True


def mark_all_read(engine: Engine, principal: Principal) -> int:
    """Returns how many unread notifications were marked."""
    with get_session(engine) as session:
        actor = load_actor(session, principal, require_approved=False)
        result = session.execute(
            update(Notification)
            .where(Notification.user_id == actor.id, Notification.read.is_(False))
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


def delete_notification(engine: Engine, principal: Principal, notification_id: int) -> None:
    with get_session(engine) as session:
        actor = load_actor(session, principal, require_approved=False)
        row = session.get(Notification, notification_id)
        if row is None or row.user_id != actor.id:
            raise NotFoundError("Notification", notification_id)
        session.delete(row)
