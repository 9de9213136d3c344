import logging
import threading
import time
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Connection

from kidledger.core.config import GetEnv
from kidledger.db import BuildAdminConnectionUrl

logger = logging.getLogger("ledger.migrations")

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def BuildAlembicConfig(url: str | None = None) -> Config:
    config_path = PROJECT_ROOT / "alembic.ini"
    if not config_path.exists():
        raise RuntimeError(f"alembic.ini not found under {PROJECT_ROOT}")

    alembic_cfg = Config(str(config_path))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    # ConfigParser treats "%" as interpolation; quoted passwords contain it.
    alembic_cfg.set_main_option("sqlalchemy.url", (url or BuildAdminConnectionUrl()).replace("%", "%%"))
    alembic_cfg.attributes["configure_logger"] = False
    return alembic_cfg


def HeadRevision() -> str | None:
    return ScriptDirectory.from_config(BuildAlembicConfig(url="sqlite://")).get_current_head()


def CurrentRevision(connection: Connection) -> str | None:
    return MigrationContext.configure(connection).get_current_revision()


def RunMigrations(revision: str = "head", url: str | None = None) -> None:
    """Upgrade the ledger tables to ``revision``.

    Alembic runs on a worker thread so a slow upgrade keeps reporting
    progress and can be abandoned once MIGRATIONS_TIMEOUT_SECONDS passes.
    """
    alembic_cfg = BuildAlembicConfig(url)
    timeout_seconds = int(GetEnv("MIGRATIONS_TIMEOUT_SECONDS", "600"))
    progress_seconds = max(int(GetEnv("MIGRATIONS_PROGRESS_LOG_SECONDS", "20")), 1)

    failures: list[BaseException] = []
    finished = threading.Event()

    def _upgrade() -> None:
        try:
            command.upgrade(alembic_cfg, revision)
        except Exception as exc:  # noqa: BLE001
            failures.append(exc)
        finally:
            finished.set()

    logger.info("upgrading ledger schema to %s", revision)
    started = time.monotonic()
    threading.Thread(target=_upgrade, name="ledger-migrations", daemon=True).start()

    while not finished.wait(timeout=progress_seconds):
        elapsed = int(time.monotonic() - started)
        if timeout_seconds > 0 and elapsed >= timeout_seconds:
            logger.error("ledger schema upgrade abandoned after %ss", elapsed)
            raise TimeoutError(f"migrations timed out after {elapsed}s")
        logger.info("ledger schema upgrade running for %ss", elapsed)

    if failures:
        logger.error("ledger schema upgrade failed", exc_info=failures[0])
        raise RuntimeError("migrations failed") from failures[0]
    logger.info("ledger schema at %s", revision)
