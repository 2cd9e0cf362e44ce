import argparse
from datetime import datetime, timezone

from .db import connect_db, parse_database_config, quote_identifier


CORE_TABLES = {
    "vendor_credentials": """
        CREATE TABLE IF NOT EXISTS vendor_credentials (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            id_number VARCHAR(100),
            username VARCHAR(100),
            vendor VARCHAR(100) NOT NULL,
            password VARCHAR(100),
            card6_digits VARCHAR(100),
            nickname VARCHAR(100),
            bank_account_number VARCHAR(100),
            is_active BOOLEAN DEFAULT TRUE,
            last_synced_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (id_number, username, vendor)
        )
    """,
    "transactions": """
        CREATE TABLE IF NOT EXISTS transactions (
            identifier VARCHAR(50) NOT NULL,
            vendor VARCHAR(50) NOT NULL,
            date DATE NOT NULL,
            name VARCHAR(100) NOT NULL,
            price FLOAT NOT NULL,
            category VARCHAR(50),
            type VARCHAR(20) NOT NULL,
            processed_date DATE,
            original_amount FLOAT,
            original_currency VARCHAR(3),
            charged_currency VARCHAR(3),
            memo TEXT,
            status VARCHAR(20) NOT NULL,
            installments_number INTEGER,
            installments_total INTEGER,
            account_number VARCHAR(50),
            transaction_type VARCHAR(20),
            category_source VARCHAR(50),
            rule_matched VARCHAR(255),
            PRIMARY KEY (identifier, vendor)
        )
    """,
    "categorization_rules": """
        CREATE TABLE IF NOT EXISTS categorization_rules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name_pattern VARCHAR(200) NOT NULL,
            target_category VARCHAR(50) NOT NULL,
            is_active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (name_pattern, target_category)
        )
    """,
    "scrape_events": """
        CREATE TABLE IF NOT EXISTS scrape_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            triggered_by VARCHAR(100),
            vendor VARCHAR(100) NOT NULL,
            start_date DATE NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'started',
            message TEXT,
            report_json JSONB,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "card_ownership": """
        CREATE TABLE IF NOT EXISTS card_ownership (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vendor VARCHAR(50) NOT NULL,
            account_number VARCHAR(50) NOT NULL,
            credential_id INTEGER NOT NULL REFERENCES vendor_credentials (id) ON DELETE CASCADE,
            linked_bank_account_id INTEGER REFERENCES vendor_credentials (id) ON DELETE SET NULL,
            custom_bank_account_number VARCHAR(100),
            custom_bank_account_nickname VARCHAR(100),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (vendor, account_number)
        )
    """,
    "budgets": """
        CREATE TABLE IF NOT EXISTS budgets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            category VARCHAR(50) NOT NULL UNIQUE,
            budget_limit FLOAT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "card_vendors": """
        CREATE TABLE IF NOT EXISTS card_vendors (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            last4_digits VARCHAR(4) NOT NULL UNIQUE,
            card_vendor VARCHAR(50) NOT NULL,
            card_nickname VARCHAR(100),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
}

SUPPLEMENTARY_TABLES = {
    "total_budget": """
        CREATE TABLE IF NOT EXISTS total_budget (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            budget_limit FLOAT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "transaction_categories": """
        CREATE TABLE IF NOT EXISTS transaction_categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            description VARCHAR(200) NOT NULL UNIQUE,
            category VARCHAR(50) NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "category_mappings": """
        CREATE TABLE IF NOT EXISTS category_mappings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_category VARCHAR(50) NOT NULL UNIQUE,
            target_category VARCHAR(50) NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "app_settings": """
        CREATE TABLE IF NOT EXISTS app_settings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            key VARCHAR(100) NOT NULL UNIQUE,
            value JSONB NOT NULL,
            description VARCHAR(255),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
}

# (index name, table, indexed columns)
INDEXES = [
    ("idx_transactions_date", "transactions", "date"),
    ("idx_transactions_category", "transactions", "category"),
    ("idx_categorization_rules_pattern", "categorization_rules", "name_pattern"),
    ("idx_categorization_rules_active", "categorization_rules", "is_active"),
    ("idx_scrape_events_created_at", "scrape_events", "created_at DESC"),
    ("idx_scrape_events_vendor", "scrape_events", "vendor"),
    ("idx_card_ownership_vendor", "card_ownership", "vendor"),
    ("idx_card_ownership_credential", "card_ownership", "credential_id"),
    ("idx_budgets_category", "budgets", "category"),
    ("idx_card_vendors_last4", "card_vendors", "last4_digits"),
    ("idx_transaction_categories_description", "transaction_categories", "description"),
    ("idx_category_mappings_source", "category_mappings", "source_category"),
]

# Columns the dashboard and the backup format depend on; the health check reports any that are absent.
REQUIRED_COLUMNS = {
    "vendor_credentials": {"id", "vendor", "username", "nickname", "is_active", "created_at"},
    "transactions": {"identifier", "vendor", "date", "name", "price", "category", "type", "status"},
    "categorization_rules": {"id", "name_pattern", "target_category", "is_active"},
    "scrape_events": {"id", "vendor", "start_date", "status", "report_json"},
    "card_ownership": {"id", "vendor", "account_number", "credential_id", "linked_bank_account_id"},
    "budgets": {"id", "category", "budget_limit"},
    "card_vendors": {"id", "last4_digits", "card_vendor", "card_nickname"},
    "total_budget": {"id", "budget_limit"},
    "transaction_categories": {"id", "description", "category"},
    "category_mappings": {"id", "source_category", "target_category"},
    "app_settings": {"id", "key", "value"},
}

_CATALOG_LOOKUPS = {
    "postgres": {
        "table": "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
        "index": "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
    },
    "sqlite": {
        "table": "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        "index": "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def _in_catalog(conn, kind, name):
    return conn.execute(_CATALOG_LOOKUPS[backend_name(conn)][kind], (name,)).fetchone() is not None


def table_exists(conn, name):
    return _in_catalog(conn, "table", name)


def index_exists(conn, name):
    return _in_catalog(conn, "index", name)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ?",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}
    return {row[1] for row in conn.execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()}


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    for create_sql in CORE_TABLES.values():
        ensure_table(conn, create_sql)


def migration_002(conn):
    for create_sql in SUPPLEMENTARY_TABLES.values():
        ensure_table(conn, create_sql)


def migration_003(conn):
    for index_name, table, columns in INDEXES:
        if not index_exists(conn, index_name):
            conn.execute(f"CREATE INDEX {index_name} ON {table} ({columns})")


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
]


def _applied_versions(conn):
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    return {row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()}


def _run_migrations(conn):
    applied = _applied_versions(conn)
    for version, migration in MIGRATIONS:
        if version in applied:
            continue
        try:
            migration(conn)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema is incomplete after migrations: "
            f"missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _as_config(config_or_path):
    return config_or_path if isinstance(config_or_path, dict) else parse_database_config(config_or_path)


def apply_migrations(target):
    """Bring ``target`` to the latest schema.

    ``target`` may be an open connection (left open), a config dict from
    ``parse_database_config`` or a SQLite path.
    """
    if hasattr(target, "execute"):
        _run_migrations(target)
        return

    conn = connect_db(_as_config(target))
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    versions = _applied_versions(conn)
    missing_tables = []
    missing_columns = {}
    for table, columns in REQUIRED_COLUMNS.items():
        present = get_table_columns(conn, table) if table_exists(conn, table) else None
        if present is None:
            missing_tables.append(table)
            present = set()
        missing_columns[table] = sorted(columns - present)

    missing_indexes = sorted(
        index_name
        for index_name, table, _ in INDEXES
        if table in missing_tables or not index_exists(conn, index_name)
    )
    return {
        "ok": not missing_tables and not missing_indexes and not any(missing_columns.values()),
        "schema_version": max(versions, default=0),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": missing_indexes,
    }


def get_db_health(config_or_path):
    conn = connect_db(_as_config(config_or_path))
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check the finance database schema")
    parser.add_argument("db_path", help="Path to SQLite DB file (ignored when DATABASE_URL is postgres)")
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)
    print(get_db_health(config))


if __name__ == "__main__":
    main()
