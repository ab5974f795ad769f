from __future__ import annotations

from logging.config import fileConfig
from typing import Any, cast
import logging

from alembic import context
from sqlalchemy import engine_from_config, pool

from stemflow.core.config import settings
from stemflow.models import Base
import stemflow.models  # noqa: F401 (registers stem job + asset tables)

config = context.config
if config.config_file_name is not None:
    try:
        fileConfig(config.config_file_name, disable_existing_loggers=False)
    except (KeyError, ValueError):
        logging.basicConfig(level=logging.INFO)

target_metadata = Base.metadata


def _database_url() -> str:
    # `alembic -x url=...` wins over DATABASE_URL_SYNC
    return context.get_x_argument(as_dictionary=True).get("url") or settings.DATABASE_URL_SYNC


def _configure_kwargs(url: str) -> dict[str, Any]:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        # sqlite cannot ALTER constraints in place
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(url),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _database_url()
    cfg = cast(dict[str, Any], config.get_section(config.config_ini_section) or {})
    cfg["sqlalchemy.url"] = url

    connectable = engine_from_config(cfg, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
