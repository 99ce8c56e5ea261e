"""Database layer for the shared quota store. SQLite by default; set DATABASE_URL for MySQL (e.g. localhost:3306) or SQL Server.
Startup ensures required tables exist; on connection failure logs verbosely and falls back to SQLite or in-memory so the app can start."""
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool

from app import config as app_config

logger = logging.getLogger("converter.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("quota_records",)


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    if _is_mysql():
        return "MySQL"
    if _is_sqlite():
        return "SQLite"
    return "SQL Server"


def make_engine(url: str) -> Engine:
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    if ":memory:" in url:
        # a single connection shared by all threads
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        if _is_sqlite() and ":memory:" not in app_config.DATABASE_URL:
            db_file = app_config.DATABASE_URL.split("sqlite:///", 1)[-1]
            if db_file:
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        _engine = make_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def _create_tables(conn: Connection) -> None:
    dialect = conn.dialect.name
    if dialect == "mssql":
        conn.execute(text("""
            IF NOT EXISTS (SELECT * FROM sys.tables WHERE name = 'quota_records')
            CREATE TABLE quota_records (
                client_id NVARCHAR(512) PRIMARY KEY,
                request_count INT NOT NULL DEFAULT 0,
                window_start NVARCHAR(10) NOT NULL
            )
        """))
    elif dialect == "mysql":
        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS quota_records (
                client_id VARCHAR(512) PRIMARY KEY,
                request_count INT NOT NULL DEFAULT 0,
                window_start VARCHAR(10) NOT NULL
            )
        """))
    else:
        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS quota_records (
                client_id TEXT PRIMARY KEY,
                request_count INTEGER NOT NULL DEFAULT 0,
                window_start TEXT NOT NULL
            )
        """))
    conn.commit()


def ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        _create_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def _fallback_urls() -> list[tuple[str, str]]:
    """Where quota records can live if the configured database is unreachable."""
    urls = []
    if _is_mysql():
        urls.append(("SQLite file", f"sqlite:///{app_config.BASE_DIR / 'data' / 'converter.db'}"))
    # quota counts are per-process and reset on restart here
    urls.append(("in-memory SQLite", "sqlite:///:memory:"))
    return urls


def init_db() -> Engine:
    """Make sure quota_records exists. If the configured database cannot be reached, try the fallbacks in order."""
    global _engine
    kind = _db_kind()
    logger.info("Database init: preparing %s for quota storage", kind)
    try:
        engine = get_engine()
        ensure_tables(engine)
        logger.info("Database ready: %s", kind)
        return engine
    except OperationalError as e:
        logger.warning("Quota database unreachable (%s): %s. Trying fallbacks.", kind, e.orig, exc_info=True)

    fallbacks = _fallback_urls()
    for i, (label, url) in enumerate(fallbacks):
        app_config.DATABASE_URL = url
        _engine = None
        try:
            engine = get_engine()
            ensure_tables(engine)
        except OperationalError as e:
            if i == len(fallbacks) - 1:
                raise
            logger.exception("Quota fallback to %s failed: %s", label, e.orig)
            continue
        logger.warning("Quota records now stored in %s. Check DATABASE_URL / MYSQL_* in .env.", label)
        return engine


@contextmanager
def session(engine: Optional[Engine] = None):
    with (engine or get_engine()).connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def consume_quota(client_id: str, window_start: str, limit: int, engine: Optional[Engine] = None) -> bool:
    """
    Count one request for ``client_id`` in the window starting ``window_start`` (ISO date).
    Each path is a single conditional statement, so concurrent callers (in any process)
    cannot push the count past ``limit``.
    """
    if limit <= 0:
        return False
    params = {"cid": client_id, "window": window_start, "limit": limit}
    for attempt in range(2):
        try:
            with session(engine) as conn:
                # Same window, still under the limit
                updated = conn.execute(
                    text("""
                        UPDATE quota_records SET request_count = request_count + 1
                        WHERE client_id = :cid AND window_start = :window AND request_count < :limit
                    """),
                    params,
                ).rowcount
                if updated == 1:
                    return True
                # Stale window: start a new one with this request counted
                updated = conn.execute(
                    text("""
                        UPDATE quota_records SET request_count = 1, window_start = :window
                        WHERE client_id = :cid AND window_start <> :window
                    """),
                    params,
                ).rowcount
                if updated == 1:
                    return True
                exists = conn.execute(
                    text("SELECT 1 FROM quota_records WHERE client_id = :cid"),
                    params,
                ).fetchone()
                if exists:
                    return False
                conn.execute(
                    text("INSERT INTO quota_records (client_id, request_count, window_start) VALUES (:cid, 1, :window)"),
                    params,
                )
                return True
        except IntegrityError:
            # Another request inserted the row first; the conditional update now applies
            if attempt:
                raise
            logger.debug("Concurrent first request for %s, retrying", client_id)
    return False


def get_quota_count(client_id: str, window_start: str, engine: Optional[Engine] = None) -> int:
    with session(engine) as conn:
        row = conn.execute(
            text("SELECT request_count FROM quota_records WHERE client_id = :cid AND window_start = :window"),
            {"cid": client_id, "window": window_start},
        ).fetchone()
    return int(row[0]) if row else 0
