import logging
import sqlite3

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.pool import StaticPool

from referral_pricing.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _is_sqlite_memory(url) -> bool:
    database = url.database
    if database in (None, "", ":memory:"):
        return True
    return url.query.get("mode") == "memory"


def build_engine(database_url: str, *, timeout_seconds: int = 30):
    """Create an engine with SQLite pragmas applied on every connection."""
    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    is_memory = is_sqlite and _is_sqlite_memory(url)

    connect_args = {}
    engine_kwargs: dict[str, object] = dict(pool_pre_ping=True)
    if is_sqlite:
        connect_args = {"check_same_thread": False, "timeout": timeout_seconds}
        if is_memory:
            engine_kwargs.update(poolclass=StaticPool)

    new_engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)

    if is_sqlite:
        busy_timeout_ms = int(timeout_seconds * 1000)

        @event.listens_for(new_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
                if not is_memory:
                    try:
                        cursor.execute("PRAGMA journal_mode=WAL")
                        cursor.execute("PRAGMA synchronous=NORMAL")
                    except sqlite3.DatabaseError:
                        logger.warning("Unable to enable WAL journal mode for %s", url.database)
            finally:
                cursor.close()

    return new_engine


app_settings: Settings = get_settings()
engine = build_engine(app_settings.DATABASE_URL, timeout_seconds=app_settings.DB_TIMEOUT_SECONDS)


def create_schema(bind=None) -> None:
    from referral_pricing.database.base import Base
    from referral_pricing.models import import_all_models

    import_all_models()
    Base.metadata.create_all(bind=bind or engine)
