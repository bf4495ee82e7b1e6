from __future__ import annotations

from logging.config import fileConfig

from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context

from stockengine.app.core.config import settings
from stockengine.app.db.base import Base
from stockengine.app.db.models import models_v1  # noqa: F401  (tables enregistrées sur Base.metadata)

config = context.config

# appel programmatique (tests) : on ne touche pas à la config logging de l'appelant
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name)

# -x url=... > DATABASE_URL
url = context.get_x_argument(as_dictionary=True).get("url") or settings.DATABASE_URL
config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    dialect = kwargs["connection"].dialect.name if "connection" in kwargs else url.split(":", 1)[0]
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite ne sait pas ALTER une contrainte
        render_as_batch=dialect.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    # connexion fournie par l'appelant (tests), sinon moteur propre à la migration
    connection = config.attributes.get("connection")
    if connection is not None:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
        return

    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as conn:
        _configure(connection=conn)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
