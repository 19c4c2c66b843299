"""Engine and session lifecycle for the SQL score store and task ledger.

The engine is process-wide: init_database() builds it once at startup, the
stores open a short session per call through get_session(), and
close_database() disposes of it on shutdown.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from matchengine.logging import get_logger

from .exceptions import DatabaseConnectionError
from .schema import create_schema

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None

logger = get_logger(__name__, component="database")

# Seconds a SQLite writer waits for another worker's write lock
SQLITE_BUSY_TIMEOUT = 30


def init_database(database_url: str) -> None:
    """Connect to the database and create the tables if they are missing.

    Safe to call again: an engine from an earlier call is disposed first.
    File-backed SQLite databases get their parent directory created.

    Args:
        database_url: SQLAlchemy URL, e.g. "sqlite:///./data/match_engine.db"

    Raises:
        DatabaseConnectionError: If the URL is invalid or the database is unreachable
    """
    global _engine, _session_factory

    url = _parse_url(database_url)
    close_database()

    logger.info(
        "Initializing database",
        extra={"event": "database.initializing", "database_url": _redact_url(database_url)},
    )

    try:
        if _is_sqlite_file(url):
            _ensure_parent_directory(Path(url.database))

        engine = create_engine(url, **_engine_options(url))
        if url.get_backend_name() == "sqlite":
            event.listen(engine, "connect", _apply_sqlite_pragmas)

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        create_schema(engine)
    except Exception as e:
        logger.error(
            f"Failed to initialize database: {e}",
            exc_info=True,
            extra={"event": "database.init_failed", "database_url": _redact_url(database_url)},
        )
        raise DatabaseConnectionError(f"Failed to initialize database: {e}") from e

    _engine = engine
    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    logger.info(
        "Database ready",
        extra={"event": "database.initialised", "backend": url.get_backend_name()},
    )


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Session that commits on success and rolls back on error.

    Raises:
        DatabaseConnectionError: If init_database() has not been called

    Example:
        >>> with get_session() as session:
        ...     MatchScoreRepository(session).get("s-1", "o-1")
    """
    if _session_factory is None:
        raise DatabaseConnectionError("Database not initialized; call init_database() first")

    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.warning(
            f"Session rolled back: {e}",
            extra={"event": "database.session.rolled_back", "error_type": type(e).__name__},
        )
        raise
    finally:
        session.close()


def get_engine() -> Engine:
    """The active engine.

    Raises:
        DatabaseConnectionError: If init_database() has not been called
    """
    if _engine is None:
        raise DatabaseConnectionError("Database not initialized; call init_database() first")
    return _engine


def close_database() -> None:
    """Dispose of the engine; a no-op when nothing is open."""
    global _engine, _session_factory

    if _engine is None:
        return

    logger.info("Closing database connections", extra={"event": "database.closing"})
    _engine.dispose()
    _engine = None
    _session_factory = None


def _parse_url(database_url: str) -> URL:
    if not database_url or not isinstance(database_url, str):
        raise DatabaseConnectionError("Database URL must be a non-empty string")
    try:
        return make_url(database_url)
    except ArgumentError as e:
        raise DatabaseConnectionError(f"Invalid database URL: {e}") from e


def _is_sqlite_memory(url: URL) -> bool:
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def _is_sqlite_file(url: URL) -> bool:
    return url.get_backend_name() == "sqlite" and not _is_sqlite_memory(url)


def _ensure_parent_directory(db_file: Path) -> None:
    if not db_file.parent.exists():
        logger.info(
            f"Creating database directory: {db_file.parent}",
            extra={"event": "database.directory_created", "path": str(db_file.parent)},
        )
        db_file.parent.mkdir(parents=True, exist_ok=True)


def _engine_options(url: URL) -> Dict[str, Any]:
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}

    # Worker threads share the engine
    options: Dict[str, Any] = {
        "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
    }
    if _is_sqlite_memory(url):
        # Every connection to :memory: is a fresh database, so keep exactly one
        options["poolclass"] = StaticPool
    return options


def _apply_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT * 1000}")
    cursor.close()


def _redact_url(url: str) -> str:
    """Hide the password in a database URL before logging it."""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<unparseable database url>"
