from urllib.parse import quote_plus

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from kidledger.core.config import GetEnv

LEDGER_SCHEMA = "ledger"

Base = declarative_base()
engine = None
SessionLocal = None


def _pool_setting(name: str, default: int) -> int:
    raw = GetEnv(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


def _build_sqlserver_url(login_env: str, password_env: str) -> str:
    settings = {
        "SQLSERVER_HOST": GetEnv("SQLSERVER_HOST"),
        "SQLSERVER_PORT": GetEnv("SQLSERVER_PORT"),
        "SQLSERVER_DB": GetEnv("SQLSERVER_DB"),
        "SQLSERVER_DRIVER": GetEnv("SQLSERVER_DRIVER"),
        login_env: GetEnv(login_env),
        password_env: GetEnv(password_env),
    }
    missing = [key for key, value in settings.items() if not value]
    if missing:
        raise RuntimeError(f"Missing database configuration: {', '.join(missing)}")

    return (
        f"mssql+pyodbc://{settings[login_env]}:{quote_plus(settings[password_env])}"
        f"@{settings['SQLSERVER_HOST']}:{settings['SQLSERVER_PORT']}/{settings['SQLSERVER_DB']}"
        f"?driver={quote_plus(settings['SQLSERVER_DRIVER'])}&Encrypt=yes&TrustServerCertificate=yes"
    )


def BuildUserConnectionUrl() -> str:
    return GetEnv("DATABASE_URL") or _build_sqlserver_url(
        "SQLSERVER_USER_LOGIN", "SQLSERVER_USER_PASSWORD"
    )


def BuildAdminConnectionUrl() -> str:
    """Connection used for schema changes; falls back to the application login."""
    admin_url = GetEnv("DATABASE_ADMIN_URL")
    if admin_url:
        return admin_url
    if GetEnv("DATABASE_URL"):
        return BuildUserConnectionUrl()
    return _build_sqlserver_url("SQLSERVER_ADMIN_LOGIN", "SQLSERVER_ADMIN_PASSWORD")


def CreateLedgerEngine(url: str) -> Engine:
    """Build an engine for ``url``.

    SQLite has no schemas, so the ``ledger`` schema is translated away and a
    single shared connection is used for in-memory databases.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            execution_options={"schema_translate_map": {LEDGER_SCHEMA: None}},
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=_pool_setting("SQLALCHEMY_POOL_SIZE", 10),
        max_overflow=_pool_setting("SQLALCHEMY_MAX_OVERFLOW", 20),
        pool_timeout=_pool_setting("SQLALCHEMY_POOL_TIMEOUT", 60),
    )


def BuildSessionFactory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


def _ensure_engine():
    global engine, SessionLocal
    if engine is None:
        engine = CreateLedgerEngine(BuildUserConnectionUrl())
        SessionLocal = BuildSessionFactory(engine)


def GetDb():
    if SessionLocal is None:
        _ensure_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
