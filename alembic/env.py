import warnings
from logging.config import fileConfig

from alembic import context
from sqlalchemy.exc import SAWarning

from kidledger.db import Base, BuildAdminConnectionUrl, CreateLedgerEngine
from kidledger.modules.ledger import models as ledger_models  # noqa: F401

config = context.config

# The API configures its own logging before calling RunMigrations.
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

warnings.filterwarnings("ignore", message="Unrecognized server version info", category=SAWarning)

target_metadata = Base.metadata


def _ledger_url() -> str:
    return config.get_main_option("sqlalchemy.url") or BuildAdminConnectionUrl()


def run_migrations_offline() -> None:
    context.configure(
        url=_ledger_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    ledger_engine = CreateLedgerEngine(_ledger_url())
    try:
        with ledger_engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        ledger_engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
