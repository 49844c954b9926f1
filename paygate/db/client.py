from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from paygate.config import Settings, settings as default_settings
from paygate.domain.errors import TransientInfraError

SCHEMA_FILE = Path(__file__).with_name("schema.sql")

_pool: ThreadedConnectionPool | None = None
_settings: Settings = default_settings
# Connection bound to the innermost open transaction() block, if any
_current_conn: ContextVar[psycopg2.extensions.connection | None] = ContextVar(
    "paygate_current_conn", default=None
)


def init_pool(cfg: Settings | None = None) -> None:
    global _pool, _settings
    if _pool is not None:
        return
    if cfg is not None:
        _settings = cfg
    if not _settings.db_enabled:
        raise RuntimeError("database is not configured")
    try:
        _pool = ThreadedConnectionPool(1, 20, dsn=_settings.db_dsn)
    except psycopg2.OperationalError as exc:
        raise TransientInfraError(f"database unavailable: {exc}") from exc


def close_pool() -> None:
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None


def _checkout() -> psycopg2.extensions.connection:
    assert _pool is not None
    # Attempt to obtain a healthy connection (retry once on closed connections)
    for attempt in range(2):
        conn = _pool.getconn()
        try:
            if _settings.db_schema:
                with conn.cursor() as cur:
                    cur.execute(f"SET search_path TO {_settings.db_schema}")
            return conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            _pool.putconn(conn, close=True)
            if attempt == 1:
                raise TransientInfraError(f"database unavailable: {exc}") from exc
    raise TransientInfraError("database unavailable")


@contextmanager
def get_conn() -> Iterator[psycopg2.extensions.connection]:
    """Yield a connection, joining the enclosing transaction when there is one.

    Outside a transaction the connection commits on success and rolls back on
    error. Operational failures surface as ``TransientInfraError``.
    """
    current = _current_conn.get()
    if current is not None:
        yield current
        return
    if _pool is None:
        init_pool()
    assert _pool is not None
    conn = _checkout()
    token = _current_conn.set(conn)
    try:
        yield conn
        conn.commit()
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
        _safe_rollback(conn)
        raise TransientInfraError(f"database error: {exc}") from exc
    except Exception:
        _safe_rollback(conn)
        raise
    finally:
        _current_conn.reset(token)
        _pool.putconn(conn)


transaction = get_conn


def _safe_rollback(conn: psycopg2.extensions.connection) -> None:
    try:
        conn.rollback()
    except psycopg2.Error:
        pass


def apply_schema(cfg: Settings | None = None) -> None:
    """Create the schema and tables if they do not exist."""
    init_pool(cfg)
    ddl = SCHEMA_FILE.read_text(encoding="utf-8")
    with get_conn() as conn:
        with conn.cursor() as cur:
            if _settings.db_schema:
                cur.execute(f"CREATE SCHEMA IF NOT EXISTS {_settings.db_schema}")
                cur.execute(f"SET search_path TO {_settings.db_schema}")
            cur.execute(ddl)
