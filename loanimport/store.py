"""
Storage collaborator of the commit engine.

Every store exposes three awaitable calls per table:
  find_one(table, filters) -> row dict or None   (None filter value means IS NULL)
  insert(table, values)    -> new id
  update(table, row_id, values)

MemoryStore keeps rows in dicts (tests, dry runs); SqliteStore writes a sqlite3 file
with UNIQUE constraints on the natural keys.
"""
from __future__ import annotations
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Lookup / insert / update failure reported by a store."""


class Store(Protocol):
    async def find_one(self, table: str, filters: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def insert(self, table: str, values: Mapping[str, Any]) -> int: ...

    async def update(self, table: str, row_id: int, values: Mapping[str, Any]) -> None: ...


# table -> columns (id excluded)
TABLES: Dict[str, Tuple[str, ...]] = {
    "routes": ("name",),
    "populations": ("name", "municipality", "state", "number", "route_id", "frequency"),
    "coordinators": ("name", "population_id", "phone", "address", "birthdate"),
    "guarantors": ("name", "national_id", "address"),
    "clients": ("name", "national_id", "address", "population_id", "guarantor_id"),
    "credits": (
        "folio", "client_id", "coordinator_id", "population_id", "route_id",
        "term_weeks", "principal", "weekly_quota", "disbursement_date",
        "total_due", "weeks_overdue", "overdue_balance", "weekly_collection",
        "penalty_text", "notes", "sheet_name", "origin_row",
    ),
    "payments": ("credit_id", "payment_date", "amount"),
}

# natural keys: (columns, rule deciding whether the key compares two rows)
#   None            always
#   (col, "both")   only when both rows have col filled
#   (col, "either") when at least one of the rows has col empty
KeyRule = Optional[Tuple[str, str]]

UNIQUE_KEYS: Dict[str, List[Tuple[Tuple[str, ...], KeyRule]]] = {
    "routes": [(("name",), None)],
    "populations": [(("name", "municipality", "state"), None)],
    "coordinators": [(("name", "population_id"), None)],
    # a person without national id shares its name with nobody, with or without id
    "guarantors": [(("national_id",), ("national_id", "both")), (("name",), ("national_id", "either"))],
    "clients": [
        (("national_id",), ("national_id", "both")),
        (("name", "population_id"), ("national_id", "either")),
    ],
    "credits": [(("folio", "population_id"), ("folio", "both"))],
    "payments": [(("credit_id", "payment_date", "amount"), None)],
}


def _key_applies(rule: KeyRule, a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    if rule is None:
        return True
    col, mode = rule
    if mode == "both":
        return bool(a.get(col)) and bool(b.get(col))
    return not a.get(col) or not b.get(col)


def _check_columns(table: str, cols) -> None:
    known = TABLES.get(table)
    if known is None:
        raise StoreError(f"Unknown table: {table}")
    bad = [c for c in cols if c != "id" and c not in known]
    if bad:
        raise StoreError(f"Unknown column(s) for {table}: {', '.join(bad)}")
# =========================

# In-memory store
# =========================
class MemoryStore:
    def __init__(self):
        self.tables: Dict[str, Dict[int, Dict[str, Any]]] = {t: {} for t in TABLES}
        self._next_id: Dict[str, int] = {t: 1 for t in TABLES}

    def rows(self, table: str) -> List[Dict[str, Any]]:
        _check_columns(table, ())
        return [dict(r) for r in self.tables[table].values()]

    def count(self, table: str) -> int:
        return len(self.rows(table))

    def _conflict(self, table: str, row: Mapping[str, Any], skip_id: Optional[int] = None) -> Optional[Tuple[str, ...]]:
        for cols, rule in UNIQUE_KEYS.get(table, []):
            key = tuple(row.get(c) for c in cols)
            for rid, other in self.tables[table].items():
                if rid == skip_id or not _key_applies(rule, row, other):
                    continue
                if tuple(other.get(c) for c in cols) == key:
                    return cols
        return None

    async def find_one(self, table: str, filters: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        _check_columns(table, filters.keys())
        for rid in sorted(self.tables[table]):
            r = self.tables[table][rid]
            if all(r.get(k) == v for k, v in filters.items()):
                return dict(r)
        return None

    async def insert(self, table: str, values: Mapping[str, Any]) -> int:
        _check_columns(table, values.keys())
        row = {c: values.get(c) for c in TABLES[table]}
        cols = self._conflict(table, row)
        if cols:
            raise StoreError(f"UNIQUE constraint failed: {table}.{', '.join(cols)}")
        rid = self._next_id[table]
        self._next_id[table] += 1
        row["id"] = rid
        self.tables[table][rid] = row
        return rid

    async def update(self, table: str, row_id: int, values: Mapping[str, Any]) -> None:
        _check_columns(table, values.keys())
        if row_id not in self.tables[table]:
            raise StoreError(f"{table} id={row_id} not found")
        merged = {**self.tables[table][row_id], **values}
        cols = self._conflict(table, merged, skip_id=row_id)
        if cols:
            raise StoreError(f"UNIQUE constraint failed: {table}.{', '.join(cols)}")
        self.tables[table][row_id] = merged
# =========================

# SQLite store
# =========================
SCHEMA = """
CREATE TABLE IF NOT EXISTS routes (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS populations (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    municipality TEXT NOT NULL DEFAULT '',
    state TEXT NOT NULL DEFAULT '',
    number TEXT,
    route_id INTEGER REFERENCES routes(id),
    frequency TEXT,
    UNIQUE (name, municipality, state)
);
CREATE TABLE IF NOT EXISTS coordinators (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    population_id INTEGER NOT NULL REFERENCES populations(id),
    phone TEXT,
    address TEXT,
    birthdate TEXT,
    UNIQUE (name, population_id)
);
CREATE TABLE IF NOT EXISTS guarantors (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    national_id TEXT NOT NULL DEFAULT '',
    address TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_guarantors_nid ON guarantors(national_id) WHERE national_id <> '';
CREATE TRIGGER IF NOT EXISTS tr_guarantors_name_ins BEFORE INSERT ON guarantors
WHEN EXISTS (
    SELECT 1 FROM guarantors g
    WHERE g.name = NEW.name AND (NEW.national_id = '' OR g.national_id = '')
)
BEGIN SELECT RAISE(ABORT, 'UNIQUE constraint failed: guarantors.name'); END;
CREATE TRIGGER IF NOT EXISTS tr_guarantors_name_upd BEFORE UPDATE OF name, national_id ON guarantors
WHEN EXISTS (
    SELECT 1 FROM guarantors g
    WHERE g.id <> NEW.id AND g.name = NEW.name AND (NEW.national_id = '' OR g.national_id = '')
)
BEGIN SELECT RAISE(ABORT, 'UNIQUE constraint failed: guarantors.name'); END;
CREATE TABLE IF NOT EXISTS clients (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    national_id TEXT NOT NULL DEFAULT '',
    address TEXT,
    population_id INTEGER REFERENCES populations(id),
    guarantor_id INTEGER REFERENCES guarantors(id)
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_clients_nid ON clients(national_id) WHERE national_id <> '';
CREATE TRIGGER IF NOT EXISTS tr_clients_name_ins BEFORE INSERT ON clients
WHEN EXISTS (
    SELECT 1 FROM clients c
    WHERE c.name = NEW.name AND c.population_id IS NEW.population_id
      AND (NEW.national_id = '' OR c.national_id = '')
)
BEGIN SELECT RAISE(ABORT, 'UNIQUE constraint failed: clients.name, clients.population_id'); END;
CREATE TRIGGER IF NOT EXISTS tr_clients_name_upd BEFORE UPDATE OF name, population_id, national_id ON clients
WHEN EXISTS (
    SELECT 1 FROM clients c
    WHERE c.id <> NEW.id AND c.name = NEW.name AND c.population_id IS NEW.population_id
      AND (NEW.national_id = '' OR c.national_id = '')
)
BEGIN SELECT RAISE(ABORT, 'UNIQUE constraint failed: clients.name, clients.population_id'); END;
CREATE TABLE IF NOT EXISTS credits (
    id INTEGER PRIMARY KEY,
    folio TEXT NOT NULL DEFAULT '',
    client_id INTEGER REFERENCES clients(id),
    coordinator_id INTEGER REFERENCES coordinators(id),
    population_id INTEGER NOT NULL REFERENCES populations(id),
    route_id INTEGER REFERENCES routes(id),
    term_weeks INTEGER NOT NULL,
    principal REAL NOT NULL,
    weekly_quota REAL NOT NULL,
    disbursement_date TEXT NOT NULL,
    total_due REAL,
    weeks_overdue INTEGER,
    overdue_balance REAL,
    weekly_collection REAL,
    penalty_text TEXT,
    notes TEXT,
    sheet_name TEXT,
    origin_row INTEGER,
    CHECK ((client_id IS NULL) <> (coordinator_id IS NULL))
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_credits_folio ON credits(folio, population_id) WHERE folio <> '';
CREATE TABLE IF NOT EXISTS payments (
    id INTEGER PRIMARY KEY,
    credit_id INTEGER NOT NULL REFERENCES credits(id),
    payment_date TEXT NOT NULL,
    amount REAL NOT NULL CHECK (amount > 0),
    UNIQUE (credit_id, payment_date, amount)
);
"""


class SqliteStore:
    def __init__(self, path: Union[str, Path] = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # the operator page reuses one store across script reruns on different threads
            self.conn = sqlite3.connect(self.path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self.conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Could not open database {self.path}: {e}") from e
        logger.info("SQLite store ready at %s", self.path)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        _check_columns(table, ())
        cur = self.conn.execute(f"SELECT * FROM {table} ORDER BY id")
        return [dict(r) for r in cur.fetchall()]

    def count(self, table: str) -> int:
        _check_columns(table, ())
        return int(self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])

    async def find_one(self, table: str, filters: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        _check_columns(table, filters.keys())
        where, params = [], []
        for k, v in filters.items():
            if v is None:
                where.append(f"{k} IS NULL")
            else:
                where.append(f"{k} = ?")
                params.append(v)
        sql = f"SELECT * FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY id LIMIT 1"
        try:
            r = self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"{table} lookup failed: {e}") from e
        return dict(r) if r is not None else None

    async def insert(self, table: str, values: Mapping[str, Any]) -> int:
        _check_columns(table, values.keys())
        cols = list(values.keys())
        sql = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})"
        try:
            with self.conn:
                cur = self.conn.execute(sql, [values[c] for c in cols])
        except sqlite3.Error as e:
            raise StoreError(f"{table} insert failed: {e}") from e
        return int(cur.lastrowid)

    async def update(self, table: str, row_id: int, values: Mapping[str, Any]) -> None:
        _check_columns(table, values.keys())
        if not values:
            return
        sets = ", ".join(f"{c} = ?" for c in values)
        try:
            with self.conn:
                cur = self.conn.execute(f"UPDATE {table} SET {sets} WHERE id = ?", [*values.values(), row_id])
        except sqlite3.Error as e:
            raise StoreError(f"{table} update failed: {e}") from e
        if cur.rowcount == 0:
            raise StoreError(f"{table} id={row_id} not found")
