import pytest

from finance_backup.db import connect_db, parse_database_config
from finance_backup.db_migrations import apply_migrations


SAMPLE_ROWS = {
    "vendor_credentials": [
        {"id": 1, "vendor": "isracard", "username": "alice", "nickname": "Main card"},
        {"id": 2, "vendor": "hapoalim", "username": "alice", "nickname": "Checking"},
    ],
    "transactions": [
        {
            "identifier": "tx-1",
            "vendor": "isracard",
            "date": "2025-01-03",
            "name": "Cafe Nero",
            "price": -12.5,
            "category": "Restaurants",
            "type": "normal",
            "status": "completed",
        },
        {
            "identifier": "tx-2",
            "vendor": "isracard",
            "date": "2025-01-04",
            "name": "Shufersal",
            "price": -230.0,
            "category": "Groceries",
            "type": "normal",
            "status": "completed",
        },
        {
            "identifier": "tx-2",
            "vendor": "hapoalim",
            "date": "2025-01-05",
            "name": "Salary",
            "price": 15000.0,
            "category": "Income",
            "type": "normal",
            "status": "completed",
        },
    ],
    "categorization_rules": [
        {"id": 1, "name_pattern": "CAFE", "target_category": "Restaurants", "is_active": 1},
    ],
    "card_ownership": [
        {"id": 1, "vendor": "isracard", "account_number": "1234", "credential_id": 1, "linked_bank_account_id": 2},
    ],
    "budgets": [
        {"id": 1, "category": "Groceries", "budget_limit": 1500.0},
        {"id": 2, "category": "Restaurants", "budget_limit": 400.0},
    ],
    "card_vendors": [
        {"id": 1, "last4_digits": "1234", "card_vendor": "visa", "card_nickname": "Gold"},
    ],
    "app_settings": [
        {"id": 1, "key": "theme", "value": '{"dark": true}'},
    ],
}


def insert_rows(conn, table, rows):
    for row in rows:
        columns = list(row)
        conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            tuple(row[column] for column in columns),
        )


def seed_sample_rows(conn):
    for table, rows in SAMPLE_ROWS.items():
        insert_rows(conn, table, rows)
    conn.commit()


@pytest.fixture()
def make_connect(tmp_path):
    def _make_connect(name="finance.sqlite", seeded=False):
        config = parse_database_config(str(tmp_path / name), "")
        apply_migrations(config)
        if seeded:
            conn = connect_db(config)
            try:
                seed_sample_rows(conn)
            finally:
                conn.close()
        return lambda: connect_db(config)

    return _make_connect


@pytest.fixture()
def connect(make_connect):
    return make_connect("source.sqlite", seeded=True)


@pytest.fixture()
def seed():
    return seed_sample_rows


@pytest.fixture()
def table_rows():
    def _table_rows(connect_fn, table):
        conn = connect_fn()
        try:
            return [dict(row) for row in conn.execute(f"SELECT * FROM {table}").fetchall()]
        finally:
            conn.close()

    return _table_rows
