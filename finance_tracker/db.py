import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
    from psycopg.rows import tuple_row
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None
    tuple_row = None


STORE_ERRORS = (sqlite3.Error,) if psycopg is None else (sqlite3.Error, psycopg.Error)


class LedgerRow:
    """Row object shared by both backends: index by position or column name."""

    def __init__(self, columns, values):
        self._columns = tuple(columns)
        self._values = tuple(values)
        self._lookup = {name: idx for idx, name in enumerate(self._columns)}

    def __getitem__(self, key):
        if isinstance(key, str):
            return self._values[self._lookup[key]]
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def keys(self):
        return list(self._columns)


def row_to_dict(row):
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


class LedgerCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", -1)

    @property
    def description(self):
        return self._cursor.description

    def fetchone(self):
        return self._adapt_row(self._cursor.fetchone())

    def fetchall(self):
        return [self._adapt_row(row) for row in self._cursor.fetchall()]

    def _adapt_row(self, row):
        if row is None:
            return None
        if isinstance(row, sqlite3.Row):
            return row
        columns = [col.name if hasattr(col, "name") else col[0] for col in (self.description or [])]
        return LedgerRow(columns, row)


class LedgerConnection:
    """Wraps a sqlite3 or psycopg connection behind qmark-style SQL."""

    def __init__(self, conn, backend):
        self._conn = conn
        self.backend = backend

    def execute(self, sql, params=None):
        sql, params = rewrite_sql(self.backend, sql, params)
        return LedgerCursor(self._conn.execute(sql, params or ()))

    def executemany(self, sql, seq_of_params):
        sql, _ = rewrite_sql(self.backend, sql, None)
        if self.backend == "postgres":
            with self._conn.cursor() as cur:
                cur.executemany(sql, list(seq_of_params))
                return cur.rowcount
        cur = self._conn.executemany(sql, list(seq_of_params))
        return cur.rowcount

    def insert(self, sql, params):
        """Run an INSERT and return the new row id on either backend."""
        if self.backend == "postgres":
            row = self.execute(f"{sql} RETURNING id", params).fetchone()
            return row[0]
        return self._conn.execute(sql, params).lastrowid

    @contextmanager
    def transaction(self):
        try:
            yield self
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    def close(self):
        self._conn.close()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()


def is_postgres_url(value):
    return bool(value) and (value.startswith("postgresql://") or value.startswith("postgres://"))


def rewrite_sql(backend, sql, params):
    if backend != "postgres":
        return sql, params

    if "?" in sql:
        sql = "%s".join(sql.split("?"))
    if params is None:
        params = ()
    elif not isinstance(params, (tuple, list, dict)):
        params = (params,)
    return sql, params


def parse_database_config(database_path=None):
    db_url = os.environ.get("DATABASE_URL", "").strip()
    if is_postgres_url(db_url):
        parsed = urlparse(db_url)
        return {
            "backend": "postgres",
            "database_url": db_url,
            "database_name": parsed.path.lstrip("/") or "postgres",
            "database_path": database_path,
        }

    return {
        "backend": "sqlite",
        "database_url": None,
        "database_name": Path(database_path).name if database_path else "sqlite",
        "database_path": database_path,
    }


def connect_db(config):
    if config["backend"] == "postgres":
        if psycopg is None:
            raise RuntimeError("psycopg is required when DATABASE_URL points to Postgres")
        conn = psycopg.connect(config["database_url"], row_factory=tuple_row)
        return LedgerConnection(conn, backend="postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")
    return LedgerConnection(conn, backend="sqlite")
