"""
Migration environment.

The database URL always comes from Settings (DATABASE_URL env / .env), the
same source the application uses; the value in alembic.ini is only a
placeholder. Run from the repository root: ``alembic upgrade head``.
"""
from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from backend.app.core.config import get_settings
from backend.app.db.base import Base
from backend.app.db.models import models_v1  # noqa: F401  (registers tables)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

DATABASE_URL = get_settings().DATABASE_URL
MIGRATION_OPTIONS = {
    "target_metadata": Base.metadata,
    # Numeric precision and enum changes must show up in autogenerate
    "compare_type": True,
    "compare_server_default": True,
}


def run_offline(url: str) -> None:
    """Emit SQL to stdout instead of executing it (``alembic upgrade head --sql``)."""
    context.configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"}, **MIGRATION_OPTIONS)
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    engine = create_engine(url, poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, **MIGRATION_OPTIONS)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline(DATABASE_URL)
else:
    run_online(DATABASE_URL)
