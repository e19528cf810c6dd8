"""
agora.services.thread_service — Thread Manager
===============================================

Owns the parent/child comment graph of each post and keeps the Counter
Ledger consistent while the graph changes.

Comments of a post are treated as an arena indexed by id.  Parent chains
are validated acyclic when a reply is inserted, and deletes run in two
phases:

    1. Resolve the full descendant set from the arena (nothing mutated yet).
    2. Delete the subtree, subtract its exact size from the post's
       ``comments_count`` and 1 from the direct parent's ``replies_count``.

Structural changes on one post serialise on the post row lock.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Engine, delete, select
from sqlalchemy.orm import Session

from agora.constants import POINTS_COMMENT
from agora.database.engine import get_session
from agora.database.models import Comment, Post
from agora.engine.cache import ConfigCache, get_default_cache
from agora.engine.principal import Principal, is_staff, load_actor
from agora.errors import (
    AuthorizationError,
    CommentCycleError,
    ConflictError,
    CrossPostParentError,
    NotFoundError,
    ValidationError,
)
from agora.services import counter_service, reputation_service
from agora.services.counter_service import COMMENT_REPLIES, POST_COMMENTS

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeletionImpact:
    """What a comment delete removed and where the counters ended up."""

    comment_id: int
    post_id: int
    parent_id: int | None
    removed_ids: tuple[int, ...]
    post_comments_count: int
    parent_replies_count: int | None = None


@dataclass
class CommentNode:
    id: int
    user_id: int
    content: str
    replies_count: int
    created_at: datetime | None
    replies: list[CommentNode] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Arena helpers
# ---------------------------------------------------------------------------
def _lock_post(session: Session, post_id: int) -> Post:
    post = session.get(Post, post_id, with_for_update=True)
    if post is None:
        raise NotFoundError("Post", post_id)
    return post


def _children_index(session: Session, post_id: int) -> dict[int | None, list[int]]:
    """parent_id → child ids for every comment on *post_id*."""
    rows = session.execute(
        select(Comment.id, Comment.parent_id)
        .where(Comment.post_id == post_id)
        .order_by(Comment.id)
    ).all()
    index: dict[int | None, list[int]] = {}
    for row in rows:
        index.setdefault(row.parent_id, []).append(row.id)
    return index


def collect_subtree(session: Session, comment: Comment) -> list[int]:
    """Ids of *comment* and all its descendants, root first."""
    index = _children_index(session, comment.post_id)
    ordered: list[int] = []
    seen: set[int] = set()
    queue = deque([comment.id])
    while queue:
        cid = queue.popleft()
        if cid in seen:
            raise CommentCycleError(cid)
        seen.add(cid)
        ordered.append(cid)
        queue.extend(index.get(cid, ()))
    return ordered


def assert_acyclic(session: Session, comment: Comment) -> None:
    """Walk the parent chain of *comment* up to a root."""
    seen: set[int] = set()
    current: Comment | None = comment
    while current is not None:
        if current.id in seen:
            raise CommentCycleError(current.id)
        seen.add(current.id)
        if current.parent_id is None:
            return
        current = session.get(Comment, current.parent_id)


def remove_subtree(
    session: Session,
    comment: Comment,
    cache: ConfigCache,
) -> DeletionImpact:
    """Phase 1 + phase 2 of a comment delete, inside the caller's transaction.

    The post lock is taken first and *comment* is re-read under it, so a
    delete that already removed the row raises :class:`NotFoundError`
    instead of subtracting from the counters a second time.
    """
    comment_id = comment.id
    _lock_post(session, comment.post_id)
    current = session.get(Comment, comment_id, populate_existing=True)
    if current is None:
        raise NotFoundError("Comment", comment_id)

    removed = collect_subtree(session, current)
    post_id = current.post_id
    parent_id = current.parent_id

    result = session.execute(
        delete(Comment)
        .where(Comment.id.in_(removed))
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != len(removed):
        raise ConflictError(
            f"Comment {comment_id} subtree changed during delete: "
            f"expected {len(removed)} rows, removed {result.rowcount}",
            "concurrent_delete",
            retryable=True,
        )

    post_count = counter_service.adjust(session, post_id, POST_COMMENTS, -len(removed))
    parent_count = None
    if parent_id is not None:
        parent_count = counter_service.adjust(session, parent_id, COMMENT_REPLIES, -1).value

    if cache.get_bool("reputation.revoke_on_delete", True):
        for cid in removed:
            reputation_service.revoke_event(
                session, f"comment:{cid}", "comment_deleted", cache=cache,
            )

    return DeletionImpact(
        comment_id=removed[0],
        post_id=post_id,
        parent_id=parent_id,
        removed_ids=tuple(removed),
        post_comments_count=post_count.value,
        parent_replies_count=parent_count,
    )


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------
def add_comment(
    engine: Engine,
    principal: Principal,
    post_id: int,
    content: str,
    parent_id: int | None = None,
    *,
    cache: ConfigCache | None = None,
) -> Comment:
    """Add a top-level comment or a reply to *parent_id* on *post_id*.

    In one transaction: insert the row, bump the parent's ``replies_count``
    (replies only), bump the post's ``comments_count`` and award the author
    comment points keyed to the new comment's id.
    """
    cache = cache or get_default_cache()
    content = (content or "").strip()
    if not content:
        raise ValidationError("Comment content is required", "empty_content")

    with get_session(engine) as session:
        actor = load_actor(session, principal)
        _lock_post(session, post_id)

        if parent_id is not None:
            parent = session.get(Comment, parent_id)
            if parent is None:
                raise NotFoundError("Comment", parent_id)
            if parent.post_id != post_id:
                raise CrossPostParentError(parent_id, post_id)
            assert_acyclic(session, parent)

        comment = Comment(
            post_id=post_id, user_id=actor.id, parent_id=parent_id, content=content,
        )
        session.add(comment)
        session.flush()

        if parent_id is not None:
            counter_service.adjust(session, parent_id, COMMENT_REPLIES, 1)
        counter_service.adjust(session, post_id, POST_COMMENTS, 1)

        reputation_service.apply_event(
            session,
            actor.id,
            cache.get_int("reputation.points_comment", POINTS_COMMENT),
            "comment",
            source_key=f"comment:{comment.id}",
            cache=cache,
        )
        logger.info(
            "User %d commented %d on post %d (parent=%s)",
            actor.id, comment.id, post_id, parent_id,
        )
        return comment


def delete_comment(
    engine: Engine,
    principal: Principal,
    comment_id: int,
    *,
    cache: ConfigCache | None = None,
) -> DeletionImpact:
    """Delete *comment_id* and every descendant.

    Allowed for the comment's author and for moderators/admins.
    """
    cache = cache or get_default_cache()
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        comment = session.get(Comment, comment_id)
        if comment is None:
            raise NotFoundError("Comment", comment_id)
        if comment.user_id != actor.id and not is_staff(actor):
            raise AuthorizationError("Only the author or a moderator can delete this comment")

        impact = remove_subtree(session, comment, cache)
        logger.info(
            "User %d deleted comment %d (%d rows) on post %d",
            actor.id, comment_id, len(impact.removed_ids), impact.post_id,
        )
        return impact


def get_thread(engine: Engine, post_id: int) -> list[CommentNode]:
    """Top-level comments of *post_id* with nested replies, oldest first."""
    with get_session(engine) as session:
        if session.get(Post, post_id) is None:
            raise NotFoundError("Post", post_id)
        rows = session.scalars(
            select(Comment).where(Comment.post_id == post_id).order_by(Comment.id)
        ).all()

    nodes = {
        c.id: CommentNode(
            id=c.id,
            user_id=c.user_id,
            content=c.content,
            replies_count=c.replies_count,
            created_at=c.created_at,
        )
        for c in rows
    }
    roots: list[CommentNode] = []
    for c in rows:
        if c.parent_id is None or c.parent_id not in nodes:
            roots.append(nodes[c.id])
        else:
            nodes[c.parent_id].replies.append(nodes[c.id])
    return roots
