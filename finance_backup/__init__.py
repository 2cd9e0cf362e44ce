import json
import os

import click
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import MethodNotAllowed, RequestEntityTooLarge

from .backup import (
    DatabaseConnectionError,
    Exporter,
    ImportMode,
    Importer,
    SnapshotValidationError,
    read_snapshot,
    snapshot_filename,
    write_snapshot,
)
from .db import connect_db, database_errors, parse_database_config
from .db_migrations import apply_migrations, inspect_db_health
from .registry import DEFAULT_REGISTRY

MAX_IMPORT_BYTES = 50 * 1024 * 1024


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or its schema initialized."""


def parse_import_request(payload, default_atomic=False):
    if not isinstance(payload, dict):
        raise SnapshotValidationError("Request body must be a JSON object")

    snapshot = payload.get("data")
    if not isinstance(snapshot, dict) or not isinstance(snapshot.get("tables"), dict):
        raise SnapshotValidationError("Invalid backup data format")

    mode = ImportMode.parse(payload.get("mode") or ImportMode.REPLACE)
    atomic = payload.get("atomic", default_atomic)
    if not isinstance(atomic, bool):
        raise SnapshotValidationError("'atomic' must be true or false")
    return snapshot, mode, atomic


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance.sqlite"),
        DATABASE_URL=os.environ.get("DATABASE_URL", ""),
        MAX_CONTENT_LENGTH=MAX_IMPORT_BYTES,
        IMPORT_ATOMIC=False,
        TABLE_REGISTRY=DEFAULT_REGISTRY,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"], app.config["DATABASE_URL"])

    def open_connection():
        return connect_db(database_config())

    def exporter():
        return Exporter(open_connection, registry=app.config["TABLE_REGISTRY"])

    def importer():
        return Importer(open_connection, registry=app.config["TABLE_REGISTRY"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = open_connection()
            except database_errors() as exc:
                message = f"Unable to open database {database_config()['database_name']}: {exc}"
                app.logger.error("[DB ERROR] %s", message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except database_errors() + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {database_config()['database_name']}: {exc}"
            app.logger.error("[DB INIT ERROR] %s", message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.errorhandler(MethodNotAllowed)
    def method_not_allowed(_exc):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(RequestEntityTooLarge)
    def request_too_large(_exc):
        return jsonify({
            "error": "Backup payload is too large",
            "limit_bytes": app.config["MAX_CONTENT_LENGTH"],
        }), 413

    @app.before_request
    def require_database():
        if app.config.get("DB_INIT_ERROR") and request.endpoint != "db_health":
            return jsonify({"error": "Database unavailable", "message": app.config["DB_INIT_ERROR"]}), 503

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        click.echo("Initialized the database.")

    @app.cli.command("export-db")
    @click.argument("path", type=click.Path(dir_okay=False))
    def export_db_command(path):
        snapshot = exporter().export()
        write_snapshot(path, snapshot)
        click.echo(f"Exported {len(snapshot['tables'])} tables to {path}")

    @app.cli.command("import-db")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    @click.option(
        "--mode",
        type=click.Choice([mode.value for mode in ImportMode]),
        default=ImportMode.REPLACE.value,
        show_default=True,
    )
    @click.option("--atomic/--no-atomic", default=None, help="Roll back everything if any table fails")
    def import_db_command(path, mode, atomic):
        try:
            snapshot = read_snapshot(path)
        except SnapshotValidationError as exc:
            raise click.ClickException(str(exc)) from exc

        if atomic is None:
            atomic = app.config["IMPORT_ATOMIC"]
        try:
            report = importer().import_snapshot(snapshot, mode=mode, atomic=atomic)
        except (SnapshotValidationError, DatabaseConnectionError) as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))
        if not report.success:
            raise SystemExit(1)

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(inspect_db_health(get_db()))
        except (DatabaseInitError,) + database_errors() as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.get("/export")
    def export_database():
        try:
            snapshot = exporter().export()
        except (DatabaseConnectionError,) + database_errors() as exc:
            app.logger.exception("Database export failed")
            return jsonify({"error": "Failed to export database", "message": str(exc)}), 500

        response = jsonify(snapshot)
        response.headers["Content-Disposition"] = f'attachment; filename="{snapshot_filename(snapshot)}"'
        return response

    @app.post("/import")
    def import_database():
        payload = request.get_json(silent=True)
        try:
            snapshot, mode, atomic = parse_import_request(payload, default_atomic=app.config["IMPORT_ATOMIC"])
            report = importer().import_snapshot(snapshot, mode=mode, atomic=atomic)
        except SnapshotValidationError as exc:
            return jsonify({"error": str(exc)}), 400
        except Exception as exc:
            app.logger.exception("Database import failed")
            return jsonify({"error": "Failed to import database", "message": str(exc)}), 500

        if report.success:
            app.logger.info("Database import succeeded mode=%s tables=%s", mode.value, len(report.imported))
        else:
            app.logger.warning(
                "Database import finished with errors mode=%s committed=%s failed=%s",
                mode.value,
                report.committed,
                [entry["table"] for entry in report.errors],
            )
        return jsonify(report.to_dict())

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    app.open_connection = open_connection
    return app
