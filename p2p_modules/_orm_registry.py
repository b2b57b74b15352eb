"""
Module ORM Registry (``p2p_modules._orm_registry``).

Responsibility
--------------
Ensure all kernel and module SQLAlchemy ORM models are imported so that
``Base.metadata`` contains their table definitions before tables are
created.

Architecture position
---------------------
**Modules layer** -- utility.  Called by ``p2p_kernel.db.engine.create_tables``
and by the immutability listener registration.
"""


def import_all_orm_models() -> None:
    """Import kernel models and every module ORM file.  Idempotent."""
    # fmt: off
    import p2p_kernel.models  # noqa: F401  # audit_events
    import p2p_kernel.services.sequence_service  # noqa: F401  # sequence_counters
    import p2p_modules.requisition.orm  # noqa: F401  # requisitions, lines, approval records
    # fmt: on
