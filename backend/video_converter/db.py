"""Database layer. SQLite by default; set DATABASE_URL for MySQL (e.g. mysql+pymysql://...).
Startup ensures required tables exist; on connection failure logs verbosely and falls back to in-memory SQLite so the app can start."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from video_converter import config as app_config

logger = logging.getLogger("converter.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("conversion_jobs", "session_activities")

IN_MEMORY_URL = "sqlite:///:memory:"


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    if _is_mysql():
        return "MySQL"
    if _is_sqlite():
        return "SQLite"
    return "SQL"


def _create(url: str) -> Engine:
    kwargs = {}
    if "sqlite" in url:
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _create(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def reset_engine() -> None:
    """Dispose the current engine so the next call picks up DATABASE_URL again."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversion_jobs (
            task_id TEXT PRIMARY KEY,
            session_id TEXT,
            file_name TEXT NOT NULL,
            output_format TEXT NOT NULL,
            status TEXT NOT NULL,
            error TEXT,
            converted_file TEXT,
            duration_seconds REAL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS session_activities (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            file_name TEXT,
            output_format TEXT,
            status TEXT NOT NULL,
            input_bytes INTEGER,
            output_bytes INTEGER,
            duration_seconds REAL,
            elapsed_seconds REAL,
            created_at TEXT NOT NULL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversion_jobs (
            task_id VARCHAR(255) PRIMARY KEY,
            session_id VARCHAR(255),
            file_name VARCHAR(512) NOT NULL,
            output_format VARCHAR(16) NOT NULL,
            status VARCHAR(50) NOT NULL,
            error TEXT,
            converted_file VARCHAR(512),
            duration_seconds DOUBLE,
            created_at VARCHAR(50) NOT NULL,
            updated_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS session_activities (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            session_id VARCHAR(255) NOT NULL,
            kind VARCHAR(16) NOT NULL,
            file_name VARCHAR(512),
            output_format VARCHAR(16),
            status VARCHAR(50) NOT NULL,
            input_bytes BIGINT,
            output_bytes BIGINT,
            duration_seconds DOUBLE,
            elapsed_seconds DOUBLE,
            created_at VARCHAR(50) NOT NULL
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if _is_mysql():
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup: ensure required tables exist. On failure, fall back to in-memory SQLite so the app can start."""
    global _engine
    kind = _db_kind()
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))

    try:
        engine = get_engine()
        _ensure_tables(engine)
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning(
            "Database connection failed (%s): %s. Using in-memory SQLite.",
            kind,
            e.orig,
            exc_info=True,
        )

    # Last resort: in-memory SQLite so the app can run (history will not persist across restarts)
    app_config.DATABASE_URL = IN_MEMORY_URL
    reset_engine()
    _ensure_tables(get_engine())
    logger.warning("Database unavailable. Using in-memory SQLite. Activity history will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def save_job(
    task_id: str,
    file_name: str,
    output_format: str,
    status: str,
    session_id: Optional[str] = None,
) -> None:
    now = _now_iso()
    params = {
        "task_id": task_id,
        "session_id": session_id,
        "file_name": file_name,
        "output_format": output_format,
        "status": status,
        "now": now,
    }
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO conversion_jobs (task_id, session_id, file_name, output_format, status, created_at, updated_at)
                VALUES (:task_id, :session_id, :file_name, :output_format, :status, :now, :now)
            """),
            params,
        )


def update_job_status(
    task_id: str,
    status: str,
    *,
    error: Optional[str] = None,
    converted_file: Optional[str] = None,
    duration_seconds: Optional[float] = None,
) -> None:
    set_parts = ["status = :status", "updated_at = :now"]
    params = {"task_id": task_id, "status": status, "now": _now_iso()}
    if error is not None:
        set_parts.append("error = :error")
        params["error"] = error
    if converted_file is not None:
        set_parts.append("converted_file = :converted_file")
        params["converted_file"] = converted_file
    if duration_seconds is not None:
        set_parts.append("duration_seconds = :duration_seconds")
        params["duration_seconds"] = duration_seconds
    with session() as conn:
        conn.execute(text(f"UPDATE conversion_jobs SET {', '.join(set_parts)} WHERE task_id = :task_id"), params)


def get_job_from_db(task_id: str) -> Optional[dict]:
    """Return job row as dict or None. Used when the job is not in memory (e.g. after restart)."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("""
                SELECT task_id, file_name, output_format, status, error, converted_file, duration_seconds
                FROM conversion_jobs WHERE task_id = :id
            """),
            {"id": task_id},
        ).fetchone()
    if not row:
        return None
    return {
        "task_id": row[0],
        "file_name": row[1],
        "output_format": row[2],
        "status": row[3],
        "error": row[4],
        "converted_file": row[5],
        "duration_seconds": row[6],
    }


def record_activity(
    session_id: str,
    kind: str,
    file_name: Optional[str],
    status: str,
    *,
    output_format: Optional[str] = None,
    input_bytes: Optional[int] = None,
    output_bytes: Optional[int] = None,
    duration_seconds: Optional[float] = None,
    elapsed_seconds: Optional[float] = None,
) -> None:
    """kind is "upload" or "convert"."""
    params = {
        "session_id": session_id,
        "kind": kind,
        "file_name": file_name,
        "output_format": output_format,
        "status": status,
        "input_bytes": input_bytes,
        "output_bytes": output_bytes,
        "duration_seconds": duration_seconds,
        "elapsed_seconds": elapsed_seconds,
        "created_at": _now_iso(),
    }
    with session() as conn:
        conn.execute(
            text("""
                INSERT INTO session_activities (session_id, kind, file_name, output_format, status, input_bytes, output_bytes, duration_seconds, elapsed_seconds, created_at)
                VALUES (:session_id, :kind, :file_name, :output_format, :status, :input_bytes, :output_bytes, :duration_seconds, :elapsed_seconds, :created_at)
            """),
            params,
        )


def get_session_stats(session_id: str) -> dict:
    """Aggregate stats for a session: uploads, conversions, failures, bytes in/out, media seconds converted, time spent."""
    with get_engine().connect() as conn:
        row = conn.execute(
            text("""
                SELECT
                    COALESCE(SUM(CASE WHEN kind = 'upload' AND status = 'completed' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN kind = 'convert' AND status = 'completed' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN kind = 'upload' THEN input_bytes ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN kind = 'convert' THEN output_bytes ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN kind = 'convert' THEN duration_seconds ELSE 0 END), 0),
                    COALESCE(SUM(elapsed_seconds), 0)
                FROM session_activities WHERE session_id = :sid
            """),
            {"sid": session_id},
        ).fetchone()
    return {
        "videos_uploaded": int(row[0]),
        "videos_converted": int(row[1]),
        "failures": int(row[2]),
        "total_uploaded_bytes": int(row[3]),
        "total_output_bytes": int(row[4]),
        "media_seconds_converted": float(row[5]),
        "time_spent_seconds": float(row[6]),
    }


def get_session_activities(session_id: str, limit: int = 100) -> list[dict]:
    """Recent activities for the session, newest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("""
                SELECT kind, file_name, output_format, status, input_bytes, output_bytes, duration_seconds, elapsed_seconds, created_at
                FROM session_activities WHERE session_id = :sid ORDER BY id DESC LIMIT :lim
            """),
            {"sid": session_id, "lim": limit},
        ).fetchall()
    return [
        {
            "kind": r[0],
            "file_name": r[1],
            "output_format": r[2],
            "status": r[3],
            "input_bytes": r[4],
            "output_bytes": r[5],
            "duration_seconds": r[6],
            "elapsed_seconds": r[7],
            "created_at": r[8],
        }
        for r in rows
    ]
