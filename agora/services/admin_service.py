"""
agora.services.admin_service — Audit Log & Admin-Only Mutations
================================================================

Every staff mutation follows the pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after JSON
  5. Commit

Also hosts the admin-only operations that are not approval transitions:
role changes, removing an account ("kick member"), deny-list edits and
tuning-setting updates.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, delete, select
from sqlalchemy.orm import Session

from agora.constants import Role, normalize_email
from agora.database.engine import get_session
from agora.database.models import (
    AdminLog,
    BannedEmail,
    Comment,
    Post,
    PostLike,
    Setting,
    User,
)
from agora.engine.cache import ConfigCache, get_default_cache
from agora.engine.principal import Principal, get_user_or_404, load_actor, require_admin
from agora.errors import AuthorizationError, NotFoundError, ValidationError
from agora.services import counter_service, feed_service, thread_service
from agora.services.counter_service import POST_LIKES

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------
_SNAPSHOT_EXCLUDE = frozenset({"points_balance"})


def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        if col.name in _SNAPSHOT_EXCLUDE:
            continue
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def log_admin_action(
    session: Session,
    *,
    actor_id: int,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))


# ---------------------------------------------------------------------------
# Role changes
# ---------------------------------------------------------------------------
def set_role(session: Session, actor: User, user: User, new_role: str | Role) -> User:
    """Change *user*'s role inside the caller's transaction.

    Only admins may assign roles, and never on their own row.
    """
    try:
        role = Role(new_role)
    except ValueError:
        raise ValidationError(f"Unknown role: {new_role!r}", "unknown_role") from None

    require_admin(actor)
    if user.id == actor.id:
        raise AuthorizationError("Admins cannot change their own role")
    if user.role == role.value:
        return user

    before = row_to_dict(user)
    user.role = role.value
    session.flush()
    log_admin_action(
        session,
        actor_id=actor.id,
        action_type="ROLE_CHANGE",
        target_table="users",
        target_id=str(user.id),
        before=before,
        after=row_to_dict(user),
    )
    logger.info("Admin %d set role of user %d to %s", actor.id, user.id, role)
    return user


def change_role(
    engine: Engine,
    principal: Principal,
    target_user_id: int,
    new_role: str | Role,
) -> User:
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        user = get_user_or_404(session, target_user_id)
        return set_role(session, actor, user, new_role)

# ---------------------------------------------------------------------------
# Account removal ("kick member")
# ---------------------------------------------------------------------------
def _remove_user_engagement(session: Session, user: User, cache: ConfigCache) -> None:
    """Unwind the user's likes and comments on other members' posts so the
    counters on those posts stay exact, then drop the user's own posts."""
    liked_post_ids = session.scalars(
        select(PostLike.post_id)
        .join(Post, Post.id == PostLike.post_id)
        .where(PostLike.user_id == user.id, Post.user_id != user.id)
    ).all()
    session.execute(
        delete(PostLike).where(PostLike.user_id == user.id)
        .execution_options(synchronize_session=False)
    )
    for post_id in liked_post_ids:
        counter_service.adjust(session, post_id, POST_LIKES, -1)

    # Delete top-most comments first; descendants go with their subtree.
    comments = session.scalars(
        select(Comment)
        .join(Post, Post.id == Comment.post_id)
        .where(Comment.user_id == user.id, Post.user_id != user.id)
        .order_by(Comment.id)
    ).all()
    removed: set[int] = set()
    for comment in comments:
        if comment.id in removed:
            continue
        impact = thread_service.remove_subtree(session, comment, cache)
        removed.update(impact.removed_ids)

    for post in session.scalars(select(Post).where(Post.user_id == user.id)).all():
        feed_service.remove_post(session, post, cache)


def delete_user(
    engine: Engine,
    principal: Principal,
    target_user_id: int,
    *,
    reason: str | None = None,
    cache: ConfigCache | None = None,
) -> None:
    """Admin-only.  Removes the account and its content; the email may
    register again unless it is on the deny-list."""
    cache = cache or get_default_cache()
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        require_admin(actor)
        if target_user_id == actor.id:
            raise AuthorizationError("Admins cannot delete their own account")
        user = get_user_or_404(session, target_user_id)
        before = row_to_dict(user)

        _remove_user_engagement(session, user, cache)
        session.delete(user)
        session.flush()
        log_admin_action(
            session,
            actor_id=actor.id,
            action_type="DELETE",
            target_table="users",
            target_id=str(target_user_id),
            before=before,
            after=None,
            reason=reason,
        )
        logger.info("Admin %d deleted user %d", actor.id, target_user_id)


# ---------------------------------------------------------------------------
# Deny-list
# ---------------------------------------------------------------------------
def list_banned_emails(engine: Engine, principal: Principal) -> list[BannedEmail]:
    with get_session(engine) as session:
        require_admin(load_actor(session, principal))
        return list(session.scalars(
            select(BannedEmail).order_by(BannedEmail.banned_at.desc(), BannedEmail.id.desc())
        ).all())


def unban_email(engine: Engine, principal: Principal, email: str) -> bool:
    """Admin-only.  Returns ``True`` if the email was on the deny-list."""
    email = normalize_email(email)
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        require_admin(actor)
        row = session.scalar(select(BannedEmail).where(BannedEmail.email == email))
        if row is None:
            return False
        log_admin_action(
            session,
            actor_id=actor.id,
            action_type="DELETE",
            target_table="banned_emails",
            target_id=email,
            before=row_to_dict(row),
            after=None,
        )
        session.delete(row)
        logger.info("Admin %d removed %s from the deny-list", actor.id, email)
        return True


# ---------------------------------------------------------------------------
# Tuning settings
# ---------------------------------------------------------------------------
def update_setting(
    engine: Engine,
    principal: Principal,
    key: str,
    value: Any,
    *,
    cache: ConfigCache | None = None,
) -> Setting:
    """Admin-only.  Updates an existing setting and refreshes *cache*."""
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        require_admin(actor)
        row = session.get(Setting, key)
        if row is None:
            raise NotFoundError("Setting", key)
        before = row_to_dict(row)
        row.value_json = json.dumps(value)
        session.flush()
        log_admin_action(
            session,
            actor_id=actor.id,
            action_type="UPDATE",
            target_table="settings",
            target_id=key,
            before=before,
            after=row_to_dict(row),
        )

    if cache is not None:
        cache.reload()
    return row
