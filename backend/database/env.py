import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, base_dir)

from database.base import Base, DATABASE_URL  # noqa: E402
from database import models  # noqa: E402,F401


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

CATALOG_TABLES = {"file", "file_variant"}


def get_url() -> str:
    return os.getenv("DATABASE_URL", DATABASE_URL)


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    # other services may share the database; only the catalog tables are managed here
    if type_ == "table":
        return name in CATALOG_TABLES
    return True


def _configure(connection=None, **kwargs) -> None:
    url = get_url()
    options = dict(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        # SQLite cannot ALTER columns in place
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )
    if connection is not None:
        context.configure(connection=connection, **options)
    else:
        context.configure(url=url, **options)


def run_migrations_offline() -> None:
    _configure(literal_binds=True, dialect_opts={"paramstyle": "named"})

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = get_url()
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        _configure(connection=connection)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
