import os
import re
import sqlite3
from pathlib import Path
from urllib.parse import urlparse

try:
    import psycopg
except ImportError:  # pragma: no cover - dependency optional for sqlite-only environments
    psycopg = None


IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def column_lookup(columns):
    return {name: idx for idx, name in enumerate(columns)}


class Record:
    """A fetched row, addressable by position or by column name."""

    __slots__ = ("columns", "values", "_lookup")

    def __init__(self, columns, values, lookup=None):
        self.columns = tuple(columns)
        self.values = tuple(values)
        self._lookup = lookup if lookup is not None else column_lookup(self.columns)

    def __getitem__(self, key):
        if isinstance(key, str):
            return self.values[self._lookup[key]]
        return self.values[key]

    def __iter__(self):
        return iter(self.values)

    def __len__(self):
        return len(self.values)

    def keys(self):
        return list(self.columns)


class Cursor:
    def __init__(self, raw):
        self.raw = raw
        self._columns = None
        self._lookup = None

    @property
    def rowcount(self):
        return getattr(self.raw, "rowcount", -1)

    def columns(self):
        if self._columns is None:
            self._columns = tuple(col[0] for col in self.raw.description or ())
            self._lookup = column_lookup(self._columns)
        return self._columns

    def fetchone(self):
        row = self.raw.fetchone()
        return None if row is None else Record(self.columns(), row, self._lookup)

    def fetchall(self):
        columns = self.columns()
        return [Record(columns, row, self._lookup) for row in self.raw.fetchall()]


class Connection:
    """sqlite3 or psycopg connection taking ``?`` placeholders on both backends."""

    def __init__(self, raw, backend):
        self.raw = raw
        self.backend = backend

    def execute(self, sql, params=None):
        sql, params = rewrite_sql(self.backend, sql, params)
        return Cursor(self.raw.execute(sql, params))

    def begin(self):
        # psycopg opens a transaction on the first statement. sqlite3 needs an
        # explicit one or SAVEPOINT/RELEASE would commit on their own.
        if self.backend == "sqlite" and not self.raw.in_transaction:
            self.raw.execute("BEGIN")

    def commit(self):
        self.raw.commit()

    def rollback(self):
        self.raw.rollback()

    def close(self):
        self.raw.close()


def rewrite_sql(backend, sql, params):
    if params is None:
        params = ()
    elif not isinstance(params, (tuple, list, dict)):
        params = (params,)
    if backend == "postgres":
        sql = sql.replace("?", "%s")
    return sql, params


def quote_identifier(name):
    if not IDENTIFIER_RE.match(name or ""):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def database_errors():
    if psycopg is None:
        return (sqlite3.Error,)
    return (sqlite3.Error, psycopg.Error)


def is_connection_error(exc):
    """True for driver errors that mean the connection or transaction itself is gone."""
    if isinstance(exc, sqlite3.InterfaceError):
        return True
    return psycopg is not None and isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError))


def is_postgres_url(value):
    return urlparse(value or "").scheme in ("postgres", "postgresql")


def parse_database_config(database_path=None, database_url=None):
    """Resolve the backend. A postgres URL (argument, else ``DATABASE_URL``) beats the SQLite path."""
    if database_url is None:
        database_url = os.environ.get("DATABASE_URL", "")
    url = database_url.strip()

    if is_postgres_url(url):
        return {
            "backend": "postgres",
            "database_url": url,
            "database_name": urlparse(url).path.lstrip("/") or "postgres",
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
        return Connection(psycopg.connect(config["database_url"]), "postgres")

    db_path = config["database_path"]
    if db_path:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    raw = sqlite3.connect(db_path)
    raw.execute("PRAGMA foreign_keys = ON")
    raw.execute("PRAGMA busy_timeout = 5000")
    return Connection(raw, "sqlite")
