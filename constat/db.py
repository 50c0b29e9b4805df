from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from constat.settings import ALLOW_SQLITE, APP_ENV, DATA_DIR

if not os.environ.get("DB_HOST") and APP_ENV in {"production", "staging"} and not ALLOW_SQLITE:
    raise RuntimeError(
        "DB_HOST is required when APP_ENV is set to production or staging. "
        "Set DB_HOST/DB_* secrets or explicitly opt into SQLite with ALLOW_SQLITE=1 for temporary use."
    )

USE_POSTGRES = bool(os.environ.get("DB_HOST"))

# Looked up on every connection so tests can point it elsewhere.
SQLITE_PATH: Path = DATA_DIR / "constat.db"

INTEGRITY_ERRORS: tuple = (sqlite3.IntegrityError,)

if USE_POSTGRES:
    import psycopg2
    from psycopg2 import pool
    from psycopg2.extras import RealDictCursor

    INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg2.IntegrityError)

    _required = ["DB_HOST", "DB_USER", "DB_PASSWORD"]
    _missing = [name for name in _required if not os.environ.get(name)]
    if _missing:
        missing = ', '.join(sorted(_missing))
        raise RuntimeError(f'PostgreSQL backend enabled but missing environment variables: {missing}')

    _CONFIG = {
        "host": os.environ["DB_HOST"],
        "dbname": os.environ.get("DB_NAME", "constat"),
        "user": os.environ["DB_USER"],
        "password": os.environ["DB_PASSWORD"],
        "port": int(os.environ.get("DB_PORT", "5432")),
        "sslmode": os.environ.get("DB_SSLMODE", "require"),
    }
    _POOL = pool.SimpleConnectionPool(1, int(os.environ.get("DB_POOL_MAX", "10")), **_CONFIG)

    def adapt_sql(sql: str) -> str:
        cleaned = sql.strip().rstrip(";")
        return cleaned.replace("?", "%s")

    class PostgresCursor:
        def __init__(self, cursor: "psycopg2.extensions.cursor") -> None:
            self._cursor = cursor
            self.rowcount = cursor.rowcount

        def fetchone(self):
            return self._cursor.fetchone()

        def fetchall(self):
            return self._cursor.fetchall()

        def close(self) -> None:
            self._cursor.close()

    class PostgresConnection:
        def __init__(self, raw_conn: "psycopg2.extensions.connection") -> None:
            self._raw = raw_conn
            self._returned = False

        def close(self) -> None:
            if not self._returned:
                _POOL.putconn(self._raw)
                self._returned = True

        def execute(self, sql: str, params: tuple = ()):
            cursor = self._raw.cursor(cursor_factory=RealDictCursor)
            cursor.execute(adapt_sql(sql), tuple(params))
            return PostgresCursor(cursor)

        def commit(self) -> None:
            self._raw.commit()

        def rollback(self) -> None:
            self._raw.rollback()

    @contextmanager
    def get_postgres_conn() -> Iterator[PostgresConnection]:
        raw = _POOL.getconn()
        conn = PostgresConnection(raw)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
else:
    def adapt_sql(sql: str) -> str:
        return sql

    @contextmanager
    def get_postgres_conn():  # type: ignore
        raise RuntimeError("PostgreSQL connection requested but DB_HOST is not set")
        yield  # pragma: no cover


@contextmanager
def _sqlite_conn():
    path = Path(SQLITE_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_conn():
    if USE_POSTGRES:
        return get_postgres_conn()
    return _sqlite_conn()


def bool_column(default: bool = True) -> str:
    if USE_POSTGRES:
        return f"BOOLEAN NOT NULL DEFAULT {'TRUE' if default else 'FALSE'}"
    return f"INTEGER NOT NULL DEFAULT {1 if default else 0}"


def real_column() -> str:
    return "DOUBLE PRECISION" if USE_POSTGRES else "REAL"


def row_to_dict(row: Any) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def describe_backend() -> str:
    if USE_POSTGRES:
        return f"postgres host={_CONFIG['host']} db={_CONFIG['dbname']}"
    return f"sqlite path={SQLITE_PATH}"
