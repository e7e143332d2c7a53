"""
Database engine configuration.

Every stream worker commits through its own session while request handlers
read through theirs, so the SQLite engine is tuned for concurrent writers:
a busy timeout instead of immediate "database is locked" errors, WAL for
file databases, and enforced foreign keys so message rows follow their
conversation.
"""

from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine

from streamchat.config import Settings, get_settings
from streamchat.core import get_logger

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Engine | None = None


def _sqlite_path(database_url: str) -> str | None:
    """Filesystem path of a SQLite URL, or None for in-memory databases."""
    db_path = database_url.split(":///", 1)[-1]
    if not db_path or db_path == ":memory:":
        return None
    return db_path[2:] if db_path.startswith("./") else db_path


def _create_sqlite_engine(settings: Settings) -> Engine:
    db_path = _sqlite_path(settings.database_url)
    if db_path is not None:
        db_dir = Path(db_path).parent
        if not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Created database directory", data={"path": str(db_dir)})

    engine = create_engine(
        settings.database_url,
        connect_args={
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
        },
        echo=settings.debug,
        pool_pre_ping=True,
    )
    use_wal = db_path is not None

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record) -> None:  # noqa: ANN001
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
            if use_wal:
                cursor.execute("PRAGMA journal_mode=WAL")
        finally:
            cursor.close()

    return engine


def get_engine() -> Engine:
    """Get or create the cached database engine."""
    global _engine

    if _engine is not None:
        return _engine

    settings = get_settings()
    if settings.is_sqlite:
        _engine = _create_sqlite_engine(settings)
    else:
        _engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
        )

    logger.info(
        "Database engine created",
        data={"dialect": _engine.dialect.name, "debug": settings.debug},
    )
    return _engine


def verify_database_connection() -> bool:
    """Return True when a trivial query succeeds."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as exc:
        logger.error("Database connection failed", data={"error": str(exc)})
        return False


def dispose_engine() -> None:
    """Dispose of the engine and release all connections."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Database engine disposed")
