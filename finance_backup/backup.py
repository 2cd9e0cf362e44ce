"""Snapshot export and restore for the finance database.

A snapshot is a JSON document holding every registry table:

    {"version": "1.0", "exportedAt": "...", "tables": {"budgets": {"rowCount": 2, "data": [...]}}}

Restores run in one transaction. Each table gets its own savepoint so a bad
row only undoes its own table before the next table is attempted.
"""

import json
import logging
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path

from .db import database_errors, is_connection_error, quote_identifier
from .db_migrations import backend_name, get_table_columns, table_exists
from .registry import DEFAULT_REGISTRY

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"
SNAPSHOT_MAJOR_VERSION = SNAPSHOT_VERSION.split(".")[0]
TABLE_NOT_FOUND = "Table not found"


class BackupError(RuntimeError):
    """Base class for backup and restore failures."""


class DatabaseConnectionError(BackupError):
    """Raised when the connection or the transaction itself is unusable."""


class SchemaAbsenceError(BackupError):
    def __init__(self, table):
        self.table = table
        super().__init__(f"{TABLE_NOT_FOUND}: {table}")


class RowInsertError(BackupError):
    def __init__(self, table, row_index, message):
        self.table = table
        self.row_index = row_index
        super().__init__(f"Row {row_index}: {message}")


class SnapshotValidationError(BackupError):
    """Raised for a malformed payload, before any database work starts."""


class ImportMode(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise SnapshotValidationError(f"Unsupported import mode: {value}") from None


class TransactionState(str, Enum):
    IDLE = "idle"
    IN_TRANSACTION = "in_transaction"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


def json_safe_value(value):
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def bind_value(value):
    # JSON columns come back from the snapshot as dicts/lists; both backends accept JSON text.
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def new_snapshot(exported_at=None):
    exported_at = exported_at or datetime.now(timezone.utc)
    return {
        "version": SNAPSHOT_VERSION,
        "exportedAt": exported_at.isoformat().replace("+00:00", "Z"),
        "tables": {},
    }


def snapshot_filename(snapshot):
    exported_on = str(snapshot.get("exportedAt") or "")[:10] or date.today().isoformat()
    return f"backup-{exported_on}.json"


def validate_snapshot(snapshot):
    if not isinstance(snapshot, dict) or not isinstance(snapshot.get("tables"), dict):
        raise SnapshotValidationError("Invalid backup data format")
    version = snapshot.get("version")
    if version is not None and str(version).split(".")[0] != SNAPSHOT_MAJOR_VERSION:
        raise SnapshotValidationError(f"Unsupported backup version: {version}")
    return snapshot["tables"]


def write_snapshot(path, snapshot):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(snapshot, handle, indent=2, default=str)
    return path


def read_snapshot(path):
    with Path(path).open("r", encoding="utf-8") as handle:
        try:
            snapshot = json.load(handle)
        except json.JSONDecodeError as exc:
            raise SnapshotValidationError(f"Backup file is not valid JSON: {exc}") from exc
    validate_snapshot(snapshot)
    return snapshot


def _is_fatal(exc):
    return isinstance(exc, DatabaseConnectionError) or is_connection_error(exc)


def acquire_connection(connect):
    try:
        return connect()
    except database_errors() as exc:
        raise DatabaseConnectionError(f"Database connection failed: {exc}") from exc


@contextmanager
def savepoint(conn, name):
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield
    except Exception as exc:
        if not _is_fatal(exc):
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {name}")


class ErrorCollector:
    def __init__(self):
        self._errors = []

    def add(self, table, error):
        message = str(error)
        logger.warning("Import of table %s failed: %s", table, message)
        self._errors.append({"table": table, "error": message})

    @property
    def errors(self):
        return list(self._errors)

    def tables(self):
        return [entry["table"] for entry in self._errors]

    def __len__(self):
        return len(self._errors)

    def __bool__(self):
        return bool(self._errors)


class ImportReport:
    def __init__(self, mode):
        self.mode = mode
        self.imported = {}
        self.errors = []
        self.committed = False

    @property
    def success(self):
        return not self.errors

    def mark_skipped(self, table, reason=None):
        entry = {"count": 0, "skipped": True}
        if reason:
            entry["reason"] = reason
        self.imported[table] = entry

    def mark_imported(self, table, count, inserted=None):
        entry = {"count": count}
        if inserted is not None:
            entry["inserted"] = inserted
        self.imported[table] = entry

    def to_dict(self):
        return {
            "success": self.success,
            "imported": self.imported,
            "errors": list(self.errors),
            "mode": self.mode.value,
            "committed": self.committed,
        }


class TransactionCoordinator:
    """Owns one connection and one transaction: idle -> in_transaction -> committed | rolled_back.

    Leaving the ``with`` block normally commits unless ``commit()`` or
    ``rollback()`` already ran; leaving with an exception rolls back. The
    connection is closed on every exit path.
    """

    def __init__(self, connect):
        self._connect = connect
        self.connection = None
        self.state = TransactionState.IDLE

    def __enter__(self):
        if self.state is not TransactionState.IDLE:
            raise BackupError(f"Transaction cannot be reopened from state {self.state.value}")
        self.connection = acquire_connection(self._connect)
        try:
            self.connection.begin()
        except database_errors() as exc:
            self._release()
            raise DatabaseConnectionError(f"Could not begin transaction: {exc}") from exc
        self.state = TransactionState.IN_TRANSACTION
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if self.state is TransactionState.IN_TRANSACTION:
                if exc_type is None:
                    self.commit()
                else:
                    logger.error("Rolling back import transaction: %s", exc)
                    self._rollback_after_error()
        finally:
            self._release()
        return False

    def commit(self):
        self._require_open()
        try:
            self.connection.commit()
        except database_errors() as exc:
            self._rollback_after_error()
            raise DatabaseConnectionError(f"Commit failed: {exc}") from exc
        self.state = TransactionState.COMMITTED

    def rollback(self):
        self._require_open()
        try:
            self.connection.rollback()
        finally:
            self.state = TransactionState.ROLLED_BACK

    def _require_open(self):
        if self.state is not TransactionState.IN_TRANSACTION:
            raise BackupError(f"No open transaction (state={self.state.value})")

    def _rollback_after_error(self):
        try:
            self.connection.rollback()
        except database_errors() as rollback_exc:
            logger.error("Rollback failed: %s", rollback_exc)
        self.state = TransactionState.ROLLED_BACK

    def _release(self):
        conn, self.connection = self.connection, None
        if conn is None:
            return
        try:
            conn.close()
        except database_errors() as exc:
            logger.warning("Closing database connection failed: %s", exc)


class SequenceReconciler:
    """Moves a surrogate-key counter to one past the largest id in the table."""

    def __init__(self, column="id"):
        self.column = column

    def reconcile(self, conn, table_name):
        try:
            with savepoint(conn, "sp_sequence"):
                if backend_name(conn) == "postgres":
                    self._reset_postgres(conn, table_name)
                else:
                    self._reset_sqlite(conn, table_name)
        except database_errors() as exc:
            if is_connection_error(exc):
                raise DatabaseConnectionError(f"Connection lost while resetting sequence: {exc}") from exc
            logger.warning("Could not reset sequence for %s: %s", table_name, exc)
            return False
        return True

    def _max_id(self, conn, table_name):
        row = conn.execute(
            f"SELECT COALESCE(MAX({quote_identifier(self.column)}), 0) FROM {quote_identifier(table_name)}"
        ).fetchone()
        return int(row[0])

    def _reset_postgres(self, conn, table_name):
        row = conn.execute("SELECT pg_get_serial_sequence(?, ?)", (table_name, self.column)).fetchone()
        seq_name = row[0] if row else None
        if not seq_name:
            return

        max_id = self._max_id(conn, table_name)
        if max_id == 0:
            conn.execute("SELECT setval(?, 1, false)", (seq_name,))
        else:
            conn.execute("SELECT setval(?, ?, true)", (seq_name, max_id))

    def _reset_sqlite(self, conn, table_name):
        # Plain rowid tables already hand out max(rowid) + 1; only AUTOINCREMENT keeps a counter.
        row = conn.execute(
            "SELECT sql FROM sqlite_master WHERE type='table' AND name = ?", (table_name,)
        ).fetchone()
        if row is None or "AUTOINCREMENT" not in (row[0] or "").upper():
            return

        max_id = self._max_id(conn, table_name)
        if max_id == 0:
            conn.execute("DELETE FROM sqlite_sequence WHERE name = ?", (table_name,))
            return
        updated = conn.execute("UPDATE sqlite_sequence SET seq = ? WHERE name = ?", (max_id, table_name))
        if updated.rowcount == 0:
            conn.execute("INSERT INTO sqlite_sequence (name, seq) VALUES (?, ?)", (table_name, max_id))


class Exporter:
    def __init__(self, connect, registry=DEFAULT_REGISTRY):
        self._connect = connect
        self.registry = registry

    def export(self):
        snapshot = new_snapshot()
        conn = acquire_connection(self._connect)
        try:
            for config in self.registry.import_order:
                snapshot["tables"][config.name] = self._dump_table(conn, config.name)
        finally:
            conn.close()

        logger.info(
            "Exported %s tables (%s rows)",
            len(snapshot["tables"]),
            sum(dump["rowCount"] for dump in snapshot["tables"].values()),
        )
        return snapshot

    def _dump_table(self, conn, table_name):
        try:
            if not table_exists(conn, table_name):
                raise SchemaAbsenceError(table_name)
            rows = conn.execute(f"SELECT * FROM {quote_identifier(table_name)}").fetchall()
        except (SchemaAbsenceError,) + database_errors() as exc:
            if is_connection_error(exc):
                raise DatabaseConnectionError(f"Connection lost while exporting {table_name}: {exc}") from exc
            logger.warning("Table %s not exported: %s", table_name, exc)
            if not isinstance(exc, SchemaAbsenceError):
                # A failed read leaves a Postgres transaction aborted; reset it for the next table.
                conn.rollback()
            return {"rowCount": 0, "data": [], "error": TABLE_NOT_FOUND}

        data = [{key: json_safe_value(row[key]) for key in row.keys()} for row in rows]
        return {"rowCount": len(data), "data": data}


class Importer:
    def __init__(self, connect, registry=DEFAULT_REGISTRY, reconciler=None):
        self._connect = connect
        self.registry = registry
        self.reconciler = reconciler or SequenceReconciler()

    def import_snapshot(self, snapshot, mode=ImportMode.REPLACE, atomic=False):
        """Restore ``snapshot`` and return an :class:`ImportReport`.

        Per-table failures are collected, not raised. With ``atomic`` set, any
        collected failure rolls the whole import back; otherwise the remaining
        tables are committed and the report carries ``success=False``.
        Connection-class failures roll back and raise ``DatabaseConnectionError``.
        """
        mode = ImportMode.parse(mode)
        tables = validate_snapshot(snapshot)
        for name in sorted(set(tables) - set(self.registry.names())):
            logger.warning("Ignoring snapshot table %s: not a backed-up table", name)

        report = ImportReport(mode)
        collector = ErrorCollector()

        with TransactionCoordinator(self._connect) as tx:
            conn = tx.connection
            if mode is ImportMode.REPLACE:
                self._clear_tables(conn, collector)

            for position, config in enumerate(self.registry.import_order):
                self._import_table(conn, config, tables.get(config.name), mode, position, report, collector)

            if atomic and collector:
                logger.warning("Rolling back atomic import: %s table(s) failed", len(collector))
                tx.rollback()
            else:
                tx.commit()

        report.errors = collector.errors
        report.committed = tx.state is TransactionState.COMMITTED
        logger.info(
            "Import finished mode=%s committed=%s tables=%s errors=%s",
            mode.value,
            report.committed,
            len(report.imported),
            len(report.errors),
        )
        return report

    def _clear_tables(self, conn, collector):
        for config in self.registry.clear_order:
            if not table_exists(conn, config.name):
                logger.warning("Skipping clear of missing table %s", config.name)
                continue

            table = quote_identifier(config.name)
            if backend_name(conn) == "postgres":
                clear_sql = f"TRUNCATE TABLE {table} CASCADE"
            else:
                clear_sql = f"DELETE FROM {table}"
            try:
                with savepoint(conn, "sp_clear"):
                    conn.execute(clear_sql)
            except database_errors() as exc:
                if is_connection_error(exc):
                    raise DatabaseConnectionError(f"Connection lost while clearing {config.name}: {exc}") from exc
                collector.add(config.name, f"Could not clear table: {exc}")

    def _import_table(self, conn, config, dump, mode, position, report, collector):
        name = config.name
        if dump is None:
            report.mark_skipped(name)
            self._reconcile(conn, config)
            return
        if not isinstance(dump, dict) or not isinstance(dump.get("data") or [], list):
            collector.add(name, "Malformed table dump: expected an object with a 'data' list")
            return

        rows = dump.get("data") or []
        if not table_exists(conn, name):
            logger.warning("Skipping import of %s: %s", name, SchemaAbsenceError(name))
            report.mark_skipped(name, reason=TABLE_NOT_FOUND if rows else None)
            return
        if not rows:
            report.mark_skipped(name)
            self._reconcile(conn, config)
            return

        live_columns = get_table_columns(conn, name)
        try:
            with savepoint(conn, f"sp_table_{position}"):
                attempted, inserted = self._insert_rows(conn, config, rows, live_columns, mode)
        except RowInsertError as exc:
            collector.add(name, exc)
            return

        if mode is ImportMode.MERGE:
            report.mark_imported(name, attempted, inserted)
        else:
            report.mark_imported(name, attempted)
        self._reconcile(conn, config)

    def _insert_rows(self, conn, config, rows, live_columns, mode):
        table = quote_identifier(config.name)
        conflict_sql = ""
        if mode is ImportMode.MERGE:
            target = ", ".join(quote_identifier(column) for column in config.conflict_columns)
            conflict_sql = f" ON CONFLICT ({target}) DO NOTHING"

        attempted = 0
        inserted = 0
        for index, row in enumerate(rows):
            if not isinstance(row, dict):
                raise RowInsertError(config.name, index, "row is not an object")
            if not row:
                continue

            unknown = sorted(str(column) for column in row if column not in live_columns)
            if unknown:
                raise RowInsertError(config.name, index, f"unknown column(s): {', '.join(unknown)}")

            columns = list(row)
            column_sql = ", ".join(quote_identifier(column) for column in columns)
            placeholders = ", ".join("?" for _ in columns)
            try:
                cursor = conn.execute(
                    f"INSERT INTO {table} ({column_sql}) VALUES ({placeholders}){conflict_sql}",
                    tuple(bind_value(row[column]) for column in columns),
                )
            except database_errors() as exc:
                if is_connection_error(exc):
                    raise DatabaseConnectionError(f"Connection lost while importing {config.name}: {exc}") from exc
                raise RowInsertError(config.name, index, str(exc)) from exc
            except (OverflowError, UnicodeError, ValueError, TypeError) as exc:
                # Raised while binding values the driver cannot represent.
                raise RowInsertError(config.name, index, str(exc)) from exc

            attempted += 1
            inserted += max(cursor.rowcount, 0)
        return attempted, inserted

    def _reconcile(self, conn, config):
        if config.surrogate_key and table_exists(conn, config.name):
            self.reconciler.reconcile(conn, config.name)
