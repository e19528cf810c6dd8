"""
agora.services.feed_service — Posts & Likes
============================================

A like is a ``(post_id, user_id)`` row; ``posts.likes_count`` is the
cardinality of those rows for the post.  The counter only moves when a row
was really inserted or really deleted, so a retried or duplicated like is a
no-op and the invariant holds under any interleaving.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Engine, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agora.constants import POINTS_LIKE, POINTS_POST
from agora.database.engine import get_session
from agora.database.models import Comment, Post, PostLike
from agora.engine.cache import ConfigCache, get_default_cache
from agora.engine.principal import Principal, is_staff, load_actor
from agora.errors import AuthorizationError, NotFoundError, ValidationError
from agora.services import counter_service, reputation_service
from agora.services.counter_service import POST_LIKES

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LikeResult:
    liked: bool
    likes_count: int


# ---------------------------------------------------------------------------
# Like primitives (run inside the caller's transaction)
# ---------------------------------------------------------------------------
def _insert_like(session: Session, post_id: int, user_id: int, cache: ConfigCache) -> bool:
    """Insert the like row; ``False`` if it already existed."""
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(PostLike(post_id=post_id, user_id=user_id))
            session.flush()
    except IntegrityError:
        return False

    counter_service.adjust(session, post_id, POST_LIKES, 1)
    reputation_service.apply_event(
        session, user_id, cache.get_int("reputation.points_like", POINTS_LIKE),
        "like", cache=cache,
    )
    return True


def _delete_like(session: Session, post_id: int, user_id: int, cache: ConfigCache) -> bool:
    """Delete the like row; ``False`` if there was none."""
    result = session.execute(
        delete(PostLike)
        .where(PostLike.post_id == post_id, PostLike.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False

    counter_service.adjust(session, post_id, POST_LIKES, -1)
    reputation_service.apply_event(
        session, user_id, -cache.get_int("reputation.points_like", POINTS_LIKE),
        "unlike", cache=cache,
    )
    return True


def _get_post_or_404(session: Session, post_id: int) -> Post:
    post = session.get(Post, post_id)
    if post is None:
        raise NotFoundError("Post", post_id)
    return post


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------
def toggle_like(
    engine: Engine,
    principal: Principal,
    post_id: int,
    *,
    cache: ConfigCache | None = None,
) -> LikeResult:
    """Like *post_id* if the principal has not, otherwise unlike it."""
    cache = cache or get_default_cache()
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        _get_post_or_404(session, post_id)

        if _delete_like(session, post_id, actor.id, cache):
            liked = False
        else:
            # A concurrent duplicate insert loses on the primary key and
            # leaves the post liked, which is what both callers asked for.
            _insert_like(session, post_id, actor.id, cache)
            liked = True

        count = counter_service.read(session, post_id, POST_LIKES)
        logger.info("User %d %s post %d → %d likes",
                    actor.id, "liked" if liked else "unliked", post_id, count)
        return LikeResult(liked=liked, likes_count=count)


def set_like(
    engine: Engine,
    principal: Principal,
    post_id: int,
    liked: bool,
    *,
    cache: ConfigCache | None = None,
) -> LikeResult:
    """Put the like into the requested state; repeating the call is a no-op."""
    cache = cache or get_default_cache()
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        _get_post_or_404(session, post_id)
        if liked:
            _insert_like(session, post_id, actor.id, cache)
        else:
            _delete_like(session, post_id, actor.id, cache)
        return LikeResult(
            liked=liked, likes_count=counter_service.read(session, post_id, POST_LIKES),
        )


def create_post(
    engine: Engine,
    principal: Principal,
    title: str,
    content: str,
    category: str = "general",
    *,
    cache: ConfigCache | None = None,
) -> Post:
    cache = cache or get_default_cache()
    title = (title or "").strip()
    content = (content or "").strip()
    if not title or not content:
        raise ValidationError("Post title and content are required", "empty_content")

    with get_session(engine) as session:
        actor = load_actor(session, principal)
        post = Post(user_id=actor.id, title=title, content=content, category=category)
        session.add(post)
        session.flush()
        reputation_service.apply_event(
            session, actor.id, cache.get_int("reputation.points_post", POINTS_POST),
            "post", source_key=f"post:{post.id}", cache=cache,
        )
        logger.info("User %d created post %d", actor.id, post.id)
        return post


def remove_post(session: Session, post: Post, cache: ConfigCache) -> None:
    """Delete *post* with its likes and comments inside the caller's transaction."""
    comment_ids = session.scalars(
        select(Comment.id).where(Comment.post_id == post.id)
    ).all()

    if cache.get_bool("reputation.revoke_on_delete", True):
        for cid in comment_ids:
            reputation_service.revoke_event(
                session, f"comment:{cid}", "comment_deleted", cache=cache,
            )
        reputation_service.revoke_event(
            session, f"post:{post.id}", "post_deleted", cache=cache,
        )

    session.execute(
        delete(PostLike).where(PostLike.post_id == post.id)
        .execution_options(synchronize_session=False)
    )
    session.execute(
        delete(Comment).where(Comment.post_id == post.id)
        .execution_options(synchronize_session="fetch")
    )
    session.delete(post)
    session.flush()


def delete_post(
    engine: Engine,
    principal: Principal,
    post_id: int,
    *,
    cache: ConfigCache | None = None,
) -> None:
    """Delete a post; allowed for its owner and for moderators/admins."""
    cache = cache or get_default_cache()
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        post = session.get(Post, post_id, with_for_update=True)
        if post is None:
            raise NotFoundError("Post", post_id)
        if post.user_id != actor.id and not is_staff(actor):
            raise AuthorizationError("Only the owner or a moderator can delete this post")
        remove_post(session, post, cache)
        logger.info("User %d deleted post %d", actor.id, post_id)


def get_post(engine: Engine, post_id: int) -> Post:
    with get_session(engine) as session:
        return _get_post_or_404(session, post_id)
