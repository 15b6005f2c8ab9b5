# alembic/env.py

import sys
from os.path import abspath, dirname
# Project root on the path so `app` imports resolve when run from alembic/
sys.path.insert(0, abspath(dirname(dirname(__file__))))

from logging.config import fileConfig
from sqlalchemy import engine_from_config
from sqlalchemy.pool import NullPool
from alembic import context

# --- Project metadata ---

# Settings know how to read .env
from app.core.config import settings
from app.db.session import Base
# Every model has to be imported to land in Base.metadata
from app.models.creator import Creator
from app.models.member import Member
from app.models.attribution import AttributionClick
from app.models.commission import Commission
from app.models.refund import Refund
from app.models.webhook_event import WebhookEvent
from app.models.remediation import RemediationAction

target_metadata = Base.metadata

# --- End of project metadata ---

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=settings.DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    # The URL always comes from settings, never from alembic.ini
    connectable = engine_from_config(
        {"sqlalchemy.url": settings.DATABASE_URL},
        prefix="sqlalchemy.",
        poolclass=NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata, compare_type=True
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
