"""Ordered list of backed-up tables and their key configuration.

The order of a registry is the foreign-key dependency order: parents come
before the tables that reference them. Inserts walk it forwards and replace-mode
clears walk it backwards.
"""

from .db import IDENTIFIER_RE


class TableConfig:
    """Key shape for one table.

    ``primary_key`` is either a single column name or an ordered tuple for a
    composite key. ``conflict_columns`` is the ON CONFLICT target used in merge
    mode and must name exactly the primary-key columns.
    """

    __slots__ = ("name", "primary_key", "conflict_columns")

    def __init__(self, name, primary_key="id", conflict_columns=None):
        if isinstance(primary_key, (list, tuple)):
            primary_key = tuple(primary_key)
            key_columns = primary_key
        else:
            key_columns = (primary_key,)
        conflict_columns = tuple(conflict_columns) if conflict_columns is not None else key_columns

        for identifier in (name,) + key_columns + conflict_columns:
            if not IDENTIFIER_RE.match(identifier or ""):
                raise ValueError(f"Invalid identifier in table config for {name!r}: {identifier!r}")
        if conflict_columns != key_columns:
            raise ValueError(
                f"Conflict columns for {name} must match its primary key exactly: "
                f"{list(conflict_columns)} != {list(key_columns)}"
            )

        self.name = name
        self.primary_key = primary_key
        self.conflict_columns = conflict_columns

    @property
    def key_columns(self):
        if isinstance(self.primary_key, tuple):
            return self.primary_key
        return (self.primary_key,)

    @property
    def surrogate_key(self):
        return self.primary_key == "id"

    def __eq__(self, other):
        if not isinstance(other, TableConfig):
            return NotImplemented
        return (self.name, self.primary_key, self.conflict_columns) == (
            other.name,
            other.primary_key,
            other.conflict_columns,
        )

    def __hash__(self):
        return hash((self.name, self.primary_key, self.conflict_columns))

    def __repr__(self):
        return f"TableConfig({self.name!r}, primary_key={self.primary_key!r})"


class TableRegistry:
    def __init__(self, tables):
        tables = tuple(tables)
        names = [table.name for table in tables]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate tables in registry: {', '.join(duplicates)}")
        self._tables = tables
        self._by_name = {table.name: table for table in tables}

    @property
    def import_order(self):
        return self._tables

    @property
    def clear_order(self):
        return tuple(reversed(self._tables))

    def names(self):
        return [table.name for table in self._tables]

    def get(self, name):
        return self._by_name.get(name)

    def __contains__(self, name):
        return name in self._by_name

    def __iter__(self):
        return iter(self._tables)

    def __len__(self):
        return len(self._tables)


DEFAULT_TABLE_CONFIGS = (
    TableConfig("vendor_credentials"),
    TableConfig("transactions", primary_key=("identifier", "vendor")),
    TableConfig("categorization_rules"),
    TableConfig("scrape_events"),
    TableConfig("card_ownership"),
    TableConfig("budgets"),
    TableConfig("card_vendors"),
    TableConfig("total_budget"),
    TableConfig("transaction_categories"),
    TableConfig("category_mappings"),
    TableConfig("app_settings"),
)

DEFAULT_REGISTRY = TableRegistry(DEFAULT_TABLE_CONFIGS)
