from logging.config import fileConfig
import os
from typing import Any
from sqlalchemy import engine_from_config, pool
from alembic import context


config: Any = context.config  # type: ignore

config.set_section_option(
    config.config_ini_section,
    "sqlalchemy.url",
    os.getenv("DATABASE_URL", "sqlite:///./membella.db"),
)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Import all models here for Alembic to detect
from membella.database.database import Base
import membella.models  # noqa: F401

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(  # type: ignore
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
    )

    with context.begin_transaction():  # type: ignore
        context.run_migrations()  # type: ignore


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(  # type: ignore
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():  # type: ignore
            context.run_migrations()  # type: ignore


if context.is_offline_mode():  # type: ignore
    run_migrations_offline()
else:
    run_migrations_online()
