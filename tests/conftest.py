"""
Pytest configuration and shared fixtures for crmadmin tests.

The FakeDatastore stands in for the asyncpg pool: it interprets the
ALTER TABLE statements crmadmin generates, answers the information_schema
queries the introspector sends, and supports transactions by snapshot.
FakeStore is an in-memory MetadataStore backed by the same state, so a
rolled back transaction undoes both the live table and the metadata.
"""

import copy
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest
import yaml

from crmadmin.config import SchemaManagementConfig
from crmadmin.exceptions import DuplicateError, MetadataError, NotFoundError
from crmadmin.models import ColumnDescriptor, CrmUserRecord
from crmadmin.schema.types import LogicalType
from crmadmin.users import hash_password


DATA_TYPES = {
    "text": "text",
    "integer": "integer",
    "date": "date",
    "timestamptz": "timestamp with time zone",
    "boolean": "boolean",
    "uuid": "uuid",
}

ADD_COLUMN = re.compile(
    r"^ALTER TABLE (\w+)\.(\w+) ADD COLUMN IF NOT EXISTS (\w+) (\w+)(?: DEFAULT (.+))?$"
)
RENAME_COLUMN = re.compile(r"^ALTER TABLE (\w+)\.(\w+) RENAME COLUMN (\w+) TO (\w+)$")
DROP_COLUMN = re.compile(r"^ALTER TABLE (\w+)\.(\w+) DROP COLUMN IF EXISTS (\w+)$")
GUARDED_RENAME = re.compile(r"ALTER TABLE (\w+)\.(\w+) RENAME COLUMN (\w+) TO (\w+);")

BASE_COLUMNS = [
    ("id", "uuid", "NO", "gen_random_uuid()"),
    ("name", "text", "NO", "''::text"),
    ("email", "text", "YES", "''::text"),
    ("phone", "text", "YES", "''::text"),
    ("created_at", "timestamp with time zone", "YES", "now()"),
    ("updated_at", "timestamp with time zone", "YES", "now()"),
]


class FakeDatabaseError(Exception):
    """Error raised by the fake datastore for statements PostgreSQL would reject."""


class FakeDatastore:
    """In-memory stand-in for ConnectionPool and its connections."""

    def __init__(self):
        self.tables: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self.descriptors: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.executed: List[str] = []
        self.commits = 0
        self.rollbacks = 0
        self._failures: List[List[Any]] = []
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

        self.create_table("public", "clients", BASE_COLUMNS)

    # Test helpers

    def create_table(self, schema: str, table: str, columns=()) -> None:
        self.tables[(schema, table)] = [
            {
                "column_name": name,
                "data_type": data_type,
                "is_nullable": nullable,
                "column_default": default,
                "ordinal_position": position,
            }
            for position, (name, data_type, nullable, default) in enumerate(columns, start=1)
        ]

    def column_names(self, schema: str = "public", table: str = "clients") -> List[str]:
        return [c["column_name"] for c in self.tables[(schema, table)]]

    def live_column(self, name: str, schema: str = "public", table: str = "clients") -> Optional[Dict[str, Any]]:
        for column in self.tables[(schema, table)]:
            if column["column_name"] == name:
                return column
        return None

    def fail_next(self, pattern: str, times: int = 1) -> None:
        """Make the next `times` statements containing pattern fail."""
        self._failures.append([pattern, times])

    def now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    # Pool interface

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> "FakeDatastore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        pass

    @asynccontextmanager
    async def acquire(self):
        yield self

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy((self.tables, self.descriptors, self.users))
        try:
            yield self
        except BaseException:
            self.tables, self.descriptors, self.users = snapshot
            self.rollbacks += 1
            raise
        self.commits += 1

    # Connection interface

    async def execute(self, sql: str, *args, timeout: Optional[float] = None) -> str:
        statement = " ".join(sql.split())
        self._maybe_fail(statement)
        self.executed.append(statement)

        match = ADD_COLUMN.match(statement)
        if match:
            schema, table, column, sql_type, default = match.groups()
            columns = self._table(schema, table)
            if self.live_column(column, schema, table) is None:
                columns.append(
                    {
                        "column_name": column,
                        "data_type": DATA_TYPES[sql_type],
                        "is_nullable": "YES",
                        "column_default": default,
                        "ordinal_position": max((c["ordinal_position"] for c in columns), default=0) + 1,
                    }
                )
            return "ALTER TABLE"

        match = RENAME_COLUMN.match(statement)
        if match:
            schema, table, old, new = match.groups()
            self._rename(schema, table, old, new)
            return "ALTER TABLE"

        match = DROP_COLUMN.match(statement)
        if match:
            schema, table, column = match.groups()
            self.tables[(schema, table)] = [
                c for c in self._table(schema, table) if c["column_name"] != column
            ]
            return "ALTER TABLE"

        if statement.startswith("DO $$"):
            schema, table, new, old = GUARDED_RENAME.search(statement).groups()
            if self.live_column(new, schema, table) is not None:
                self._rename(schema, table, new, old)
            return "DO"

        if statement.startswith("CREATE SCHEMA"):
            return "CREATE SCHEMA"

        match = re.search(r"CREATE TABLE IF NOT EXISTS (\w+)\.(\w+)", statement)
        if match:
            self.tables.setdefault(match.groups(), [])
            return "CREATE TABLE"

        raise FakeDatabaseError(f"Unsupported statement: {statement}")

    async def fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        statement = " ".join(query.split())
        self._maybe_fail(statement)

        if "FROM information_schema.columns" in statement:
            columns = self.tables.get((args[0], args[1]), [])
            return sorted((dict(c) for c in columns), key=lambda c: c["ordinal_position"])

        if "FROM information_schema.tables" in statement:
            return [{"table_name": table} for schema, table in sorted(self.tables) if schema == args[0]]

        raise FakeDatabaseError(f"Unsupported query: {statement}")

    async def fetchval(self, query: str, *args, column: int = 0) -> Any:
        statement = " ".join(query.split())
        self._maybe_fail(statement)

        if "FROM information_schema.tables" in statement:
            return (args[0], args[1]) in self.tables

        raise FakeDatabaseError(f"Unsupported query: {statement}")

    def _table(self, schema: str, table: str) -> List[Dict[str, Any]]:
        if (schema, table) not in self.tables:
            raise FakeDatabaseError(f'relation "{schema}.{table}" does not exist')
        return self.tables[(schema, table)]

    def _rename(self, schema: str, table: str, old: str, new: str) -> None:
        if self.live_column(new, schema, table) is not None:
            raise FakeDatabaseError(f'column "{new}" of relation "{table}" already exists')
        column = self.live_column(old, schema, table)
        if column is None:
            raise FakeDatabaseError(f'column "{old}" does not exist')
        column["column_name"] = new

    def _maybe_fail(self, statement: str) -> None:
        for failure in self._failures:
            pattern, remaining = failure
            if remaining > 0 and pattern in statement:
                failure[1] -= 1
                raise FakeDatabaseError(f"Injected failure for '{pattern}'")


class FakeStore:
    """In-memory MetadataStore over a FakeDatastore's state."""

    def __init__(self, datastore: FakeDatastore, schema: str = "public"):
        self.pool = datastore
        self.schema = schema
        self._failures: Dict[str, List[Exception]] = {}

    def fail_next(self, method: str, error: Optional[Exception] = None, times: int = 1) -> None:
        error = error or MetadataError(f"{method} failed")
        self._failures.setdefault(method, []).extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    @property
    def _rows(self) -> Dict[str, Dict[str, Any]]:
        return self.pool.descriptors

    # Column metadata

    async def list_columns(self) -> List[ColumnDescriptor]:
        self._maybe_fail("list_columns")
        rows = sorted(self._rows.values(), key=lambda r: r["created_at"], reverse=True)
        return [ColumnDescriptor.from_record(row) for row in rows]

    async def get_column(self, column_id: str, conn: Any = None) -> Optional[ColumnDescriptor]:
        self._maybe_fail("get_column")
        row = self._rows.get(column_id)
        return ColumnDescriptor.from_record(row) if row else None

    async def get_column_by_name(self, column_name: str, conn: Any = None) -> Optional[ColumnDescriptor]:
        self._maybe_fail("get_column_by_name")
        for row in self._rows.values():
            if row["column_name"] == column_name:
                return ColumnDescriptor.from_record(row)
        return None

    async def create_column(
        self,
        column_name: str,
        column_type: LogicalType,
        dropdown_options: Optional[List[str]] = None,
        conn: Any = None,
    ) -> ColumnDescriptor:
        self._maybe_fail("create_column")
        if any(row["column_name"] == column_name for row in self._rows.values()):
            raise DuplicateError("column_name", column_name)
        row = {
            "id": str(uuid.uuid4()),
            "column_name": column_name,
            "column_type": LogicalType(column_type).value,
            "dropdown_options": list(dropdown_options) if dropdown_options is not None else None,
            "created_at": self.pool.now(),
        }
        self._rows[row["id"]] = row
        return ColumnDescriptor.from_record(row)

    async def update_column(self, column_id: str, fields: Dict[str, Any], conn: Any = None) -> ColumnDescriptor:
        self._maybe_fail("update_column")
        row = self._rows.get(column_id)
        if row is None:
            raise NotFoundError(f"Column '{column_id}' not found")
        new_name = fields.get("column_name")
        if new_name and any(
            r["column_name"] == new_name and r["id"] != column_id for r in self._rows.values()
        ):
            raise DuplicateError("column_name", new_name)
        row.update(fields)
        return ColumnDescriptor.from_record(row)

    async def delete_column(self, column_id: str, conn: Any = None) -> bool:
        self._maybe_fail("delete_column")
        return self._rows.pop(column_id, None) is not None

    # CRM users

    async def list_users(self) -> List[CrmUserRecord]:
        rows = sorted(self.pool.users.values(), key=lambda r: r["created_at"], reverse=True)
        return [CrmUserRecord.from_record(row) for row in rows]

    async def get_user(self, user_id: str) -> Optional[CrmUserRecord]:
        row = self.pool.users.get(user_id)
        return CrmUserRecord.from_record(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[CrmUserRecord]:
        for row in self.pool.users.values():
            if row["email"] == email:
                return CrmUserRecord.from_record(row)
        return None

    async def create_user(
        self,
        email: str,
        password_hash: str,
        name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> CrmUserRecord:
        self._check_unique(None, {"email": email, "phone_number": phone_number})
        now = self.pool.now()
        row = {
            "id": str(uuid.uuid4()),
            "email": email,
            "password_hash": password_hash,
            "name": name,
            "phone_number": phone_number,
            "created_at": now,
            "updated_at": now,
        }
        self.pool.users[row["id"]] = row
        return CrmUserRecord.from_record(row)

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> CrmUserRecord:
        row = self.pool.users.get(user_id)
        if row is None:
            raise NotFoundError(f"User '{user_id}' not found")
        self._check_unique(user_id, fields)
        row.update(fields)
        row["updated_at"] = self.pool.now()
        return CrmUserRecord.from_record(row)

    async def delete_user(self, user_id: str) -> bool:
        return self.pool.users.pop(user_id, None) is not None

    def _check_unique(self, user_id: Optional[str], fields: Dict[str, Any]) -> None:
        for field in ("email", "phone_number"):
            value = fields.get(field)
            if value is None:
                continue
            for row in self.pool.users.values():
                if row["id"] != user_id and row[field] == value:
                    raise DuplicateError(field)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def datastore() -> FakeDatastore:
    """Fresh in-memory datastore with an empty clients table."""
    return FakeDatastore()


@pytest.fixture
def store(datastore) -> FakeStore:
    return FakeStore(datastore)


@pytest.fixture
def schema_settings() -> SchemaManagementConfig:
    """Transactional column management settings."""
    return SchemaManagementConfig(compensation_backoff=0)


@pytest.fixture
def compensating_settings() -> SchemaManagementConfig:
    """Non-transactional settings: metadata failures are undone by compensation."""
    return SchemaManagementConfig(transactional=False, compensation_backoff=0)


@pytest.fixture
def admin_password() -> str:
    return "s3cret-admin"


@pytest.fixture
def sample_config_dict(admin_password) -> Dict[str, Any]:
    """Complete configuration as it appears in a YAML file."""
    return {
        "service_name": "crmadmin-test",
        "database": {
            "host": "localhost",
            "port": 5432,
            "database": "crm_test",
            "user": "postgres",
            "password": "postgres",
        },
        "schema_management": {
            "table_schema": "public",
            "table": "clients",
            "compensation_backoff": 0,
        },
        "auth": {
            "admin_email": "admin@crm.com",
            "admin_password_hash": hash_password(admin_password),
            "secret_key": "test-secret-key",
            "token_ttl_minutes": 30,
        },
        "logging": {"level": "WARNING"},
    }


@pytest.fixture
def config_file(tmp_path, sample_config_dict) -> str:
    """Configuration written to a temporary YAML file."""
    path = tmp_path / "crmadmin.yaml"
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(sample_config_dict, f)
    return str(path)
