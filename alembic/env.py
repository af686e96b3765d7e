from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import create_engine

from gatekeeper.config import DEFAULT_DATABASE_URL, env_str
from gatekeeper.core.db import metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# revisions are hand-written against these tables
target_metadata = metadata


def database_url() -> str:
    load_dotenv()
    url = config.get_main_option("sqlalchemy.url") or env_str("DATABASE_URL", DEFAULT_DATABASE_URL) or ""
    return url.replace("+asyncpg", "+psycopg")


def run_migrations_offline() -> None:
    context.configure(
        url=database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(database_url(), pool_pre_ping=True)
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
