"""
Agora — Engagement Consistency Core for a Learning Community
==============================================================
Keeps derived engagement state (like counts, comment/reply counts,
reputation points and levels, member lifecycle status) consistent across
concurrent, independently-issued client mutations.  All coordination
happens in the database: counters move through single atomic statements,
multi-entity operations run in one transaction.

Package layout::

    agora/
    ├── __main__.py        # `python -m agora init-db | reconcile`
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Roles, statuses, leveling formula
    ├── errors.py          # Validation / forbidden / conflict / transient
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, sessions, retry, async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default tuning settings
    ├── engine/
    │   ├── cache.py       # In-memory settings cache
    │   └── principal.py   # Explicit actor context + role checks
    └── services/
        ├── counter_service.py        # Counter Ledger (atomic adjust)
        ├── reputation_service.py     # Reputation Ledger (points, levels)
        ├── thread_service.py         # Comment tree + cascading deletes
        ├── feed_service.py           # Posts + likes
        ├── moderation_service.py     # Approval / ban state machine
        ├── admin_service.py          # Audit log + admin-only mutations
        ├── course_service.py         # Lesson completion awards
        ├── notification_service.py   # Fire-and-forget notification sink
        └── reconciliation_service.py # Derived counter drift repair
"""

__version__ = "0.1.0"
