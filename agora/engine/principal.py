"""
agora.engine.principal — Explicit Actor Context
================================================

The identity provider hands the core an authenticated user id and email.
That :class:`Principal` is passed into every operation; there is no
ambient "current user".  Role, approval and ban state are always re-read
from the store inside the operation's own transaction, so a role change
or ban takes effect on the very next call.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from agora.constants import STAFF_ROLES, AccessState, ApprovalStatus, Role
from agora.database.models import User, UserBan
from agora.errors import AuthorizationError, NotFoundError


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller as supplied by the identity provider."""

    user_id: int
    email: str | None = None


# ---------------------------------------------------------------------------
# Role / approval predicates
# ---------------------------------------------------------------------------
def requires_approval(user: User) -> bool:
    """Approval gating applies to members only.

    Moderators and admins bypass the pending queue entirely; the first
    admin account depends on this to bootstrap the community.
    """
    return Role(user.role) == Role.MEMBER


def is_approved(user: User) -> bool:
    if not requires_approval(user):
        return True
    return ApprovalStatus(user.approval_status) == ApprovalStatus.APPROVED


def is_staff(user: User) -> bool:
    return Role(user.role) in STAFF_ROLES


def is_admin(user: User) -> bool:
    return Role(user.role) == Role.ADMIN


def access_state(session: Session, user_id: int) -> AccessState:
    active_ban = session.scalar(
        select(UserBan.id).where(UserBan.user_id == user_id, UserBan.active.is_(True))
    )
    return AccessState.BANNED if active_ban is not None else AccessState.ACTIVE


# ---------------------------------------------------------------------------
# Actor loading
# ---------------------------------------------------------------------------
def load_actor(
    session: Session,
    principal: Principal,
    *,
    require_approved: bool = True,
) -> User:
    """Load the acting user and require full privileges.

    Raises :class:`AuthorizationError` when the account is gone, banned,
    or (unless *require_approved* is false) still awaiting approval.
    """
    user = session.get(User, principal.user_id)
    if user is None:
        raise AuthorizationError("Unknown principal")
    if access_state(session, user.id) == AccessState.BANNED:
        raise AuthorizationError("Account is banned")
    if require_approved and not is_approved(user):
        raise AuthorizationError(f"Account is {user.approval_status}")
    return user


def require_staff(user: User) -> None:
    if not is_staff(user):
        raise AuthorizationError("Moderator or admin role required")


def require_admin(user: User) -> None:
    if not is_admin(user):
        raise AuthorizationError("Admin role required")


def get_user_or_404(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user
