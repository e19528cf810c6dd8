"""
agora.services.moderation_service — Member Lifecycle State Machine
===================================================================

Three independent tags describe a member:

* ``approval_status`` — pending → approved, pending → rejected,
  rejected → approved.  Approved is never reverted; removing an approved
  member is a ban.
* access state — ``banned`` while an active ``user_bans`` row exists
  (reversible "kick").
* email block — ``deny_listed`` while the email is in ``banned_emails``.
  The deny-list outlives the account and blocks re-registration.

Approval gating applies to members only (see
:func:`agora.engine.principal.requires_approval`).

Transitions are compare-and-swap updates, so two moderators approving the
same member concurrently produce exactly one transition; the loser gets an
:class:`~agora.errors.InvalidTransitionError`.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agora.constants import (
    APPROVAL_TRANSITIONS,
    EDITABLE_PROFILE_FIELDS,
    PRIVILEGED_PROFILE_FIELDS,
    AccessState,
    ApprovalStatus,
    EmailBlock,
    Role,
    normalize_email,
)
from agora.database.engine import get_session
from agora.database.models import BannedEmail, User, UserBan
from agora.engine.principal import (
    Principal,
    access_state,
    get_user_or_404,
    is_admin,
    is_approved,
    is_staff,
    load_actor,
    require_admin,
    require_staff,
    requires_approval,
)
from agora.errors import (
    AuthorizationError,
    DenyListedEmailError,
    DuplicateRegistrationError,
    InvalidTransitionError,
    PrivilegedFieldError,
    ValidationError,
)
from agora.services import notification_service
from agora.services.admin_service import log_admin_action, row_to_dict, set_role
from agora.services.notification_service import DatabaseNotificationSink, NotificationSink

logger = logging.getLogger(__name__)


class Access(enum.StrEnum):
    FULL_ACCESS = "full_access"
    PENDING_APPROVAL = "pending_approval"
    REJECTED = "rejected"
    BANNED = "banned"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class RegistrationResult:
    user_id: int
    email: str
    role: str
    approval_status: str
    bootstrapped: bool = False


@dataclass(frozen=True, slots=True)
class AccessDecision:
    user_id: int
    access: Access
    role: str | None = None
    approval_status: str | None = None

    @property
    def full_access(self) -> bool:
        return self.access == Access.FULL_ACCESS


def email_block(session: Session, email: str) -> EmailBlock:
    row = session.scalar(
        select(BannedEmail.id).where(BannedEmail.email == normalize_email(email))
    )
    return EmailBlock.DENY_LISTED if row is not None else EmailBlock.ALLOWED


def _sink(engine: Engine, sink: NotificationSink | None) -> NotificationSink:
    return sink if sink is not None else DatabaseNotificationSink(engine)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------
def register_user(
    engine: Engine,
    email: str,
    profile: dict[str, Any] | None = None,
    *,
    sink: NotificationSink | None = None,
) -> RegistrationResult:
    """Create the account for a freshly authenticated identity.

    The deny-list is checked before any row is written.  New members start
    ``pending``; the very first account becomes an approved admin so the
    community can be bootstrapped.
    """
    email = normalize_email(email or "")
    if "@" not in email:
        raise ValidationError("A valid email is required", "invalid_email")

    profile = dict(profile or {})
    unknown = set(profile) - EDITABLE_PROFILE_FIELDS - PRIVILEGED_PROFILE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown profile fields: {sorted(unknown)}", "unknown_field")

    privileged = {
        key for key in PRIVILEGED_PROFILE_FIELDS & set(profile)
        if not (key == "role" and profile[key] == Role.MEMBER)
    }

    with get_session(engine) as session:
        if email_block(session, email) == EmailBlock.DENY_LISTED:
            logger.warning("Registration refused for deny-listed email %s", email)
            raise DenyListedEmailError(email)

        bootstrapped = session.scalar(select(func.count(User.id))) == 0
        if privileged and not bootstrapped:
            raise PrivilegedFieldError(privileged)

        if session.scalar(select(User.id).where(User.email == email)) is not None:
            raise DuplicateRegistrationError("email")

        name = (profile.get("name") or email.split("@", 1)[0]).strip()
        username = (profile.get("username") or email.split("@", 1)[0]).strip()
        if session.scalar(select(User.id).where(User.username == username)) is not None:
            raise DuplicateRegistrationError("username")

        user = User(
            email=email,
            name=name,
            username=username,
            avatar=profile.get("avatar"),
            bio=profile.get("bio"),
            role=Role.ADMIN.value if bootstrapped else Role.MEMBER.value,
            approval_status=(
                ApprovalStatus.APPROVED.value if bootstrapped
                else ApprovalStatus.PENDING.value
            ),
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(user)
                session.flush()
        except IntegrityError:
            # Lost a race with a concurrent registration of the same identity.
            raise DuplicateRegistrationError("email") from None

        result = RegistrationResult(
            user_id=user.id,
            email=email,
            role=user.role,
            approval_status=user.approval_status,
            bootstrapped=bootstrapped,
        )

    logger.info(
        "Registered user %d (%s) as %s/%s%s",
        result.user_id, email, result.role, result.approval_status,
        " [bootstrap]" if bootstrapped else "",
    )
    notification_service.welcome(_sink(engine, sink), result.user_id)
    return result


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------
def _transition_approval(
    session: Session,
    actor: User,
    user: User,
    decision: ApprovalStatus,
    reason: str | None,
) -> None:
    if not requires_approval(user):
        raise ValidationError(
            "Approval does not apply to moderator or admin accounts",
            "approval_not_applicable",
        )
    current = ApprovalStatus(user.approval_status)
    if (current, decision) not in APPROVAL_TRANSITIONS:
        raise InvalidTransitionError(current.value, decision.value)

    before = row_to_dict(user)
    swapped = session.execute(
        update(User)
        .where(User.id == user.id, User.approval_status == current.value)
        .values(approval_status=decision.value)
        .returning(User.id)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()
    if swapped is None:
        actual = session.scalar(select(User.approval_status).where(User.id == user.id))
        raise InvalidTransitionError(actual, decision.value)

    session.refresh(user)
    log_admin_action(
        session,
        actor_id=actor.id,
        action_type="APPROVAL",
        target_table="users",
        target_id=str(user.id),
        before=before,
        after=row_to_dict(user),
        reason=reason,
    )
    logger.info(
        "User %d moved user %d %s → %s", actor.id, user.id, current, decision,
    )


def _notify_decision(
    sink: NotificationSink, user_id: int, decision: ApprovalStatus, reason: str | None,
) -> None:
    if decision == ApprovalStatus.APPROVED:
        notification_service.approved(sink, user_id)
    elif decision == ApprovalStatus.REJECTED:
        notification_service.rejected(sink, user_id, reason)


def set_approval(
    engine: Engine,
    principal: Principal,
    target_user_id: int,
    decision: str | ApprovalStatus,
    reason: str | None = None,
    *,
    sink: NotificationSink | None = None,
) -> User:
    """Approve or reject a pending (or previously rejected) member."""
    try:
        decision = ApprovalStatus(decision)
    except ValueError:
        raise ValidationError(f"Unknown approval decision: {decision!r}", "unknown_decision") from None

    with get_session(engine) as session:
        actor = load_actor(session, principal)
        require_staff(actor)
        user = get_user_or_404(session, target_user_id)
        _transition_approval(session, actor, user, decision, reason)

    _notify_decision(_sink(engine, sink), user.id, decision, reason)
    return user


def list_approval_queue(
    engine: Engine,
    principal: Principal,
    *,
    include_rejected: bool = False,
) -> list[User]:
    """Members awaiting a decision, newest registrations first.

    With *include_rejected* the previously rejected members are listed too,
    since they can still be approved.
    """
    statuses = [ApprovalStatus.PENDING.value]
    if include_rejected:
        statuses.append(ApprovalStatus.REJECTED.value)

    with get_session(engine) as session:
        require_staff(load_actor(session, principal))
        return list(session.scalars(
            select(User)
            .where(User.role == Role.MEMBER.value, User.approval_status.in_(statuses))
            .order_by(User.created_at.desc(), User.id.desc())
        ).all())


# ---------------------------------------------------------------------------
# Bans
# ---------------------------------------------------------------------------
def _deny_list_email(session: Session, email: str, actor_id: int, reason: str) -> bool:
    """Insert *email* into the deny-list; ``False`` if it was already there."""
    if email_block(session, email) == EmailBlock.DENY_LISTED:
        return False
    try:
        with session.begin_nested():   # SAVEPOINT
            session.add(BannedEmail(email=email, banned_by=actor_id, reason=reason))
            session.flush()
    except IntegrityError:
        return False
    return True


def ban_user(
    engine: Engine,
    principal: Principal,
    target_user_id: int,
    *,
    permanent: bool = False,
    reason: str,
) -> UserBan:
    """Ban *target_user_id*.

    A plain ban ("kick") is reversible and open to moderators; a permanent
    ban is admin-only and also deny-lists the account's email.  Banning an
    already banned user reuses the active ban.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A ban reason is required", "reason_required")

    with get_session(engine) as session:
        actor = load_actor(session, principal)
        require_staff(actor)
        if permanent:
            require_admin(actor)
        if target_user_id == actor.id:
            raise AuthorizationError("You cannot ban yourself")
        user = get_user_or_404(session, target_user_id)
        if is_staff(user) and not is_admin(actor):
            raise AuthorizationError("Only admins can ban moderators or admins")

        ban = session.scalar(
            select(UserBan).where(UserBan.user_id == user.id, UserBan.active.is_(True))
        )
        if ban is None:
            ban = UserBan(
                user_id=user.id, banned_by=actor.id, reason=reason, permanent=permanent,
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(ban)
                    session.flush()
            except IntegrityError:
                # A concurrent ban won the one-active-ban index.
                ban = session.scalar(
                    select(UserBan).where(UserBan.user_id == user.id, UserBan.active.is_(True))
                )
        elif permanent and not ban.permanent:
            ban.permanent = True
            session.flush()

        deny_listed = permanent and _deny_list_email(session, user.email, actor.id, reason)

        log_admin_action(
            session,
            actor_id=actor.id,
            action_type="BAN_PERMANENT" if permanent else "BAN",
            target_table="users",
            target_id=str(user.id),
            before=None,
            after=row_to_dict(ban),
            reason=reason,
        )
        logger.info(
            "User %d banned user %d (permanent=%s, deny-listed=%s): %s",
            actor.id, user.id, permanent, deny_listed, reason,
        )
        return ban


def unban_user(engine: Engine, principal: Principal, target_user_id: int) -> int:
    """Lift every active ban on *target_user_id* and clear its deny-list entry.

    Lifting a permanent ban (or a deny-list entry) needs an admin.  Returns
    the number of bans deactivated.
    """
    with get_session(engine) as session:
        actor = load_actor(session, principal)
        require_staff(actor)
        user = get_user_or_404(session, target_user_id)

        permanent_ban = session.scalar(
            select(UserBan.id).where(
                UserBan.user_id == user.id,
                UserBan.active.is_(True),
                UserBan.permanent.is_(True),
            )
        )
        deny_listed = email_block(session, user.email) == EmailBlock.DENY_LISTED
        if permanent_ban is not None or deny_listed:
            require_admin(actor)

        lifted = session.execute(
            update(UserBan)
            .where(UserBan.user_id == user.id, UserBan.active.is_(True))
            .values(active=False, unbanned_at=func.now())
            .execution_options(synchronize_session=False)
        ).rowcount
        if deny_listed:
            session.execute(
                delete(BannedEmail).where(BannedEmail.email == user.email)
                .execution_options(synchronize_session=False)
            )

        if lifted or deny_listed:
            log_admin_action(
                session,
                actor_id=actor.id,
                action_type="UNBAN",
                target_table="users",
                target_id=str(user.id),
                before={"bans_lifted": lifted, "deny_listed": deny_listed},
                after=None,
            )
        logger.info("User %d lifted %d ban(s) on user %d", actor.id, lifted, user.id)
        return lifted


# ---------------------------------------------------------------------------
# Profile edits
# ---------------------------------------------------------------------------
def update_profile(
    engine: Engine,
    principal: Principal,
    target_user_id: int,
    changes: dict[str, Any],
    *,
    sink: NotificationSink | None = None,
) -> User:
    """Apply *changes* to a profile.

    Nobody may change ``role`` or ``approval_status`` on their own row; the
    whole write is rejected.  On other rows only admins may, and those
    fields go through the same rules as :func:`set_role` and
    :func:`set_approval`.
    """
    changes = dict(changes)
    unknown = set(changes) - EDITABLE_PROFILE_FIELDS - PRIVILEGED_PROFILE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown profile fields: {sorted(unknown)}", "unknown_field")
    privileged = PRIVILEGED_PROFILE_FIELDS & set(changes)
    decision = None

    with get_session(engine) as session:
        is_self = target_user_id == principal.user_id
        actor = load_actor(session, principal, require_approved=not is_self)
        if is_self:
            if privileged:
                raise PrivilegedFieldError(privileged)
        else:
            require_staff(actor)
            if privileged and not is_admin(actor):
                raise AuthorizationError("Only admins can change role or approval status")

        user = get_user_or_404(session, target_user_id)
        before = row_to_dict(user)

        try:
            with session.begin_nested():   # SAVEPOINT
                for key in EDITABLE_PROFILE_FIELDS & set(changes):
                    value = changes[key]
                    if isinstance(value, str):
                        value = value.strip()
                    if key in ("name", "username") and not value:
                        raise ValidationError(f"{key} cannot be empty", "empty_field")
                    setattr(user, key, value)
                session.flush()
        except IntegrityError:
            raise DuplicateRegistrationError("username") from None

        if "role" in changes:
            set_role(session, actor, user, changes["role"])
        if "approval_status" in changes:
            try:
                decision = ApprovalStatus(changes["approval_status"])
            except ValueError:
                raise ValidationError(
                    f"Unknown approval status: {changes['approval_status']!r}",
                    "unknown_decision",
                ) from None
            if decision != user.approval_status:
                _transition_approval(session, actor, user, decision, None)
            else:
                decision = None

        if not is_self:
            log_admin_action(
                session,
                actor_id=actor.id,
                action_type="UPDATE",
                target_table="users",
                target_id=str(user.id),
                before=before,
                after=row_to_dict(user),
            )

    if decision is not None:
        _notify_decision(_sink(engine, sink), user.id, decision, None)
    return user


# ---------------------------------------------------------------------------
# Authentication gate
# ---------------------------------------------------------------------------
def authenticate(engine: Engine, user_id: int) -> AccessDecision:
    """Decide what an authenticated identity may do right now.

    Full access requires an existing, non-banned account that is approved
    or exempt from approval by role.
    """
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            return AccessDecision(user_id=user_id, access=Access.UNKNOWN)

        if access_state(session, user.id) == AccessState.BANNED:
            access = Access.BANNED
        elif is_approved(user):
            access = Access.FULL_ACCESS
            session.execute(
                update(User).where(User.id == user.id)
                .values(last_active=func.now())
                .execution_options(synchronize_session=False)
            )
        elif user.approval_status == ApprovalStatus.REJECTED:
            access = Access.REJECTED
        else:
            access = Access.PENDING_APPROVAL

        logger.debug("authenticate(%d) → %s", user_id, access)
        return AccessDecision(
            user_id=user.id,
            access=access,
            role=user.role,
            approval_status=user.approval_status,
        )
