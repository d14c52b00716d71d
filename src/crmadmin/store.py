"""
Persistence for column metadata and CRM users.

Plain CRUD over the column_metadata and crm_users tables. The store
enforces nothing beyond what the tables enforce; unique violations are
reported as DuplicateError, everything else the database rejects as
MetadataError.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from .database.connection import ConnectionPool
from .exceptions import DuplicateError, MetadataError, NotFoundError
from .models import ColumnDescriptor, CrmUserRecord
from .schema.types import LogicalType


logger = logging.getLogger(__name__)


COLUMN_FIELDS = ("column_name", "column_type", "dropdown_options")
USER_FIELDS = ("email", "password_hash", "name", "phone_number")

# Unique columns that can appear in a violated constraint name
UNIQUE_FIELDS = ("phone_number", "email", "column_name")


def _duplicate_field(error: asyncpg.UniqueViolationError) -> str:
    text = " ".join(
        str(part) for part in (error.constraint_name, getattr(error, "detail", None), error)
        if part
    )
    for field in UNIQUE_FIELDS:
        if field in text:
            return field
    return "value"


def _check_id(record_id: str, kind: str) -> str:
    try:
        return str(uuid.UUID(str(record_id)))
    except ValueError:
        raise NotFoundError(f"{kind} '{record_id}' not found")


class MetadataStore:
    """Typed CRUD over column_metadata and crm_users."""

    def __init__(self, pool: ConnectionPool, schema: str = "public"):
        self.pool = pool
        self.schema = schema
        self.columns_table = f"{schema}.column_metadata"
        self.users_table = f"{schema}.crm_users"

    @asynccontextmanager
    async def _connection(self, conn: Optional[Any]) -> AsyncIterator[Any]:
        """Use the caller's connection or borrow one from the pool."""
        if conn is not None:
            yield conn
            return
        async with self.pool.acquire() as pooled:
            yield pooled

    async def _fetch(self, query: str, *args, conn: Optional[Any] = None) -> List[Any]:
        try:
            async with self._connection(conn) as c:
                return await c.fetch(query, *args)
        except asyncpg.UniqueViolationError as e:
            raise DuplicateError(_duplicate_field(e), cause=e) from e
        except asyncpg.PostgresError as e:
            logger.error(f"Metadata query failed: {e}")
            raise MetadataError(f"Metadata query failed: {e}", cause=e) from e

    async def _fetchrow(self, query: str, *args, conn: Optional[Any] = None) -> Optional[Any]:
        rows = await self._fetch(query, *args, conn=conn)
        return rows[0] if rows else None

    # Column metadata

    async def list_columns(self) -> List[ColumnDescriptor]:
        """All descriptors, newest first."""
        rows = await self._fetch(
            f"""
            SELECT id, column_name, column_type, dropdown_options, created_at
            FROM {self.columns_table}
            ORDER BY created_at DESC
            """
        )
        return [ColumnDescriptor.from_record(row) for row in rows]

    async def get_column(self, column_id: str, conn: Optional[Any] = None) -> Optional[ColumnDescriptor]:
        try:
            column_id = _check_id(column_id, "Column")
        except NotFoundError:
            return None
        row = await self._fetchrow(
            f"""
            SELECT id, column_name, column_type, dropdown_options, created_at
            FROM {self.columns_table}
            WHERE id = $1
            """,
            column_id,
            conn=conn,
        )
        return ColumnDescriptor.from_record(row) if row else None

    async def get_column_by_name(
        self, column_name: str, conn: Optional[Any] = None
    ) -> Optional[ColumnDescriptor]:
        row = await self._fetchrow(
            f"""
            SELECT id, column_name, column_type, dropdown_options, created_at
            FROM {self.columns_table}
            WHERE column_name = $1
            """,
            column_name,
            conn=conn,
        )
        return ColumnDescriptor.from_record(row) if row else None

    async def create_column(
        self,
        column_name: str,
        column_type: LogicalType,
        dropdown_options: Optional[List[str]] = None,
        conn: Optional[Any] = None,
    ) -> ColumnDescriptor:
        row = await self._fetchrow(
            f"""
            INSERT INTO {self.columns_table} (column_name, column_type, dropdown_options)
            VALUES ($1, $2, $3)
            RETURNING id, column_name, column_type, dropdown_options, created_at
            """,
            column_name,
            LogicalType(column_type).value,
            dropdown_options,
            conn=conn,
        )
        logger.info(f"Recorded metadata for column {column_name}")
        return ColumnDescriptor.from_record(row)

    async def update_column(
        self,
        column_id: str,
        fields: Dict[str, Any],
        conn: Optional[Any] = None,
    ) -> ColumnDescriptor:
        """Update the given fields of a descriptor."""
        column_id = _check_id(column_id, "Column")
        fields = {k: v for k, v in fields.items() if k in COLUMN_FIELDS}
        if not fields:
            raise MetadataError("No column metadata fields to update")
        if "column_type" in fields:
            fields["column_type"] = LogicalType(fields["column_type"]).value

        assignments = ", ".join(f"{name} = ${i}" for i, name in enumerate(fields, start=2))
        row = await self._fetchrow(
            f"""
            UPDATE {self.columns_table}
            SET {assignments}
            WHERE id = $1
            RETURNING id, column_name, column_type, dropdown_options, created_at
            """,
            column_id,
            *fields.values(),
            conn=conn,
        )
        if row is None:
            raise NotFoundError(f"Column '{column_id}' not found")
        return ColumnDescriptor.from_record(row)

    async def delete_column(self, column_id: str, conn: Optional[Any] = None) -> bool:
        """Delete a descriptor. Returns False when nothing was deleted."""
        column_id = _check_id(column_id, "Column")
        row = await self._fetchrow(
            f"DELETE FROM {self.columns_table} WHERE id = $1 RETURNING id",
            column_id,
            conn=conn,
        )
        return row is not None

    # CRM users

    async def list_users(self) -> List[CrmUserRecord]:
        rows = await self._fetch(
            f"""
            SELECT id, email, password_hash, name, phone_number, created_at, updated_at
            FROM {self.users_table}
            ORDER BY created_at DESC
            """
        )
        return [CrmUserRecord.from_record(row) for row in rows]

    async def get_user(self, user_id: str) -> Optional[CrmUserRecord]:
        try:
            user_id = _check_id(user_id, "User")
        except NotFoundError:
            return None
        row = await self._fetchrow(
            f"""
            SELECT id, email, password_hash, name, phone_number, created_at, updated_at
            FROM {self.users_table}
            WHERE id = $1
            """,
            user_id,
        )
        return CrmUserRecord.from_record(row) if row else None

    async def get_user_by_email(self, email: str) -> Optional[CrmUserRecord]:
        row = await self._fetchrow(
            f"""
            SELECT id, email, password_hash, name, phone_number, created_at, updated_at
            FROM {self.users_table}
            WHERE email = $1
            """,
            email,
        )
        return CrmUserRecord.from_record(row) if row else None

    async def create_user(
        self,
        email: str,
        password_hash: str,
        name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> CrmUserRecord:
        row = await self._fetchrow(
            f"""
            INSERT INTO {self.users_table} (email, password_hash, name, phone_number)
            VALUES ($1, $2, $3, $4)
            RETURNING id, email, password_hash, name, phone_number, created_at, updated_at
            """,
            email,
            password_hash,
            name,
            phone_number,
        )
        logger.info(f"Created CRM user {email}")
        return CrmUserRecord.from_record(row)

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> CrmUserRecord:
        """Update the given fields of a user and refresh updated_at."""
        user_id = _check_id(user_id, "User")
        fields = {k: v for k, v in fields.items() if k in USER_FIELDS}

        assignments = [f"{name} = ${i}" for i, name in enumerate(fields, start=2)]
        assignments.append("updated_at = NOW()")
        row = await self._fetchrow(
            f"""
            UPDATE {self.users_table}
            SET {", ".join(assignments)}
            WHERE id = $1
            RETURNING id, email, password_hash, name, phone_number, created_at, updated_at
            """,
            user_id,
            *fields.values(),
        )
        if row is None:
            raise NotFoundError(f"User '{user_id}' not found")
        return CrmUserRecord.from_record(row)

    async def delete_user(self, user_id: str) -> bool:
        user_id = _check_id(user_id, "User")
        row = await self._fetchrow(
            f"DELETE FROM {self.users_table} WHERE id = $1 RETURNING id",
            user_id,
        )
        if row is not None:
            logger.info(f"Deleted CRM user {user_id}")
        return row is not None
