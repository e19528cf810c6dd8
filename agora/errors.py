"""
agora.errors — Error Taxonomy
==============================

Every failure the core surfaces to callers is an :class:`AgoraError`.
Subclasses fall into four kinds so callers can render them differently:

* ``validation``  — malformed input, rejected before any state change (400)
* ``forbidden``   — the actor's role does not permit the transition (403)
* ``conflict``    — the store refused the change (409); ``retryable`` says
  whether trying again can succeed
* ``transient``   — the store was unavailable; safe to retry (503)

``not_found`` (404) is reported separately from validation.
"""

from __future__ import annotations


class AgoraError(Exception):
    """Base error for the engagement core."""

    kind = "error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, code: str = "agora_error"):
        self.message = message
        self.code = code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class ValidationError(AgoraError):
    kind = "validation"
    http_status = 400

    def __init__(self, message: str, code: str = "validation_error"):
        super().__init__(message, code)


class CrossPostParentError(ValidationError):
    """Reply parent belongs to a different post."""

    def __init__(self, parent_id: int, post_id: int):
        super().__init__(
            f"Comment {parent_id} does not belong to post {post_id}",
            "cross_post_parent",
        )
        self.parent_id = parent_id
        self.post_id = post_id


class CommentCycleError(ValidationError):
    def __init__(self, comment_id: int):
        super().__init__(
            f"Comment {comment_id} is part of a parent cycle", "comment_cycle",
        )
        self.comment_id = comment_id


class PrivilegedFieldError(ValidationError):
    """A write tried to change role/approval_status where it is not allowed."""

    def __init__(self, fields: set[str] | frozenset[str]):
        super().__init__(
            f"Privileged fields cannot be changed in this write: {sorted(fields)}",
            "privileged_field",
        )
        self.fields = frozenset(fields)


class UnknownCounterError(ValidationError):
    def __init__(self, counter_name: str):
        super().__init__(f"Unknown counter: {counter_name!r}", "unknown_counter")
        self.counter_name = counter_name


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------
class NotFoundError(AgoraError):
    kind = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: object):
        super().__init__(f"{entity} {entity_id} not found", f"{entity.lower()}_not_found")
        self.entity = entity
        self.entity_id = entity_id


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------
class AuthorizationError(AgoraError):
    kind = "forbidden"
    http_status = 403

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message, "permission_denied")


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------
class ConflictError(AgoraError):
    kind = "conflict"
    http_status = 409

    def __init__(self, message: str, code: str = "conflict", *, retryable: bool = False):
        super().__init__(message, code)
        self.retryable = retryable


class DenyListedEmailError(ConflictError):
    """Registration attempted with a permanently blocked email."""

    def __init__(self, email: str):
        super().__init__(
            f"Email {email} is permanently blocked from registration",
            "email_deny_listed",
        )
        self.email = email


class DuplicateRegistrationError(ConflictError):
    def __init__(self, field: str):
        super().__init__(f"An account with this {field} already exists", "user_exists")
        self.field = field


class InvalidTransitionError(ConflictError):
    """Approval transition not allowed from the user's current state."""

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move approval_status from {current!r} to {requested!r}",
            "invalid_transition",
        )
        self.current = current
        self.requested = requested


# ---------------------------------------------------------------------------
# Transient infrastructure
# ---------------------------------------------------------------------------
class TransientStoreError(AgoraError):
    kind = "transient"
    http_status = 503
    retryable = True

    def __init__(self, message: str = "Store temporarily unavailable"):
        super().__init__(message, "store_unavailable")
