"""
Module ORM Registry (``commerce_modules._orm_registry``).

Ensures every module-level SQLAlchemy model is imported so that
``Base.metadata`` contains their table definitions before
``commerce_kernel.db.engine.create_tables()`` runs.
"""


def import_all_orm_models() -> None:
    """Import every ``commerce_modules.*.orm`` module. Idempotent."""
    # fmt: off
    import commerce_modules.billing.orm  # noqa: F401
    import commerce_modules.documents.orm  # noqa: F401
    import commerce_modules.governance.orm  # noqa: F401
    # fmt: on
