"""Alembic environment for the crmgate directory store.

The database URL comes from crmgate's own settings (``DATABASE_URL`` env or
``.env``), so migrations always target the same store the service uses.
``sqlalchemy.url`` in alembic.ini is only a last resort for bare checkouts.
"""

import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import create_engine, pool

sys.path.append(str(Path(__file__).resolve().parents[1]))

import crmgate.db.models  # noqa: F401, E402
from crmgate.core.config import settings  # noqa: E402
from crmgate.db.base import Base  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _database_url() -> str:
    return settings.DATABASE_URL or config.get_main_option("sqlalchemy.url")


def _configure(**kwargs) -> None:
    url = _database_url()
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        # SQLite cannot ALTER most constraints in place.
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_offline() -> None:
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            _configure(connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
