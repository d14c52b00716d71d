"""
Database schema introspection for crmadmin.

Reads the live shape of a table from information_schema. The projection
is read-only: nothing here changes the database.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .connection import ConnectionPool
from ..exceptions import DatabaseError, SchemaError


logger = logging.getLogger(__name__)


@dataclass
class LiveColumn:
    """A column as it currently exists in the database."""

    name: str
    data_type: str
    is_nullable: bool
    default: Optional[str] = None
    ordinal_position: int = 0

    def is_custom(self, prefix: str) -> bool:
        """Check if the column was created through column management."""
        return self.name.startswith(prefix)

    def as_row(self) -> Tuple[str, str, str, Optional[str]]:
        """Render as an information_schema style row."""
        return (
            self.name,
            self.data_type,
            "YES" if self.is_nullable else "NO",
            self.default,
        )

    def __str__(self) -> str:
        result = f"{self.name} {self.data_type}"
        if not self.is_nullable:
            result += " NOT NULL"
        if self.default:
            result += f" DEFAULT {self.default}"
        return result


@dataclass
class TableInfo:
    """Information about a database table."""

    schema: str
    name: str
    columns: Dict[str, LiveColumn] = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        """Get the fully qualified table name."""
        return f"{self.schema}.{self.name}"

    def has_column(self, column_name: str) -> bool:
        """Check if table has a specific column."""
        return column_name in self.columns

    def get_column(self, column_name: str) -> Optional[LiveColumn]:
        """Get column information by name."""
        return self.columns.get(column_name)

    def custom_columns(self, prefix: str) -> List[LiveColumn]:
        """Columns carrying the custom prefix, in physical order."""
        return [col for col in self.columns.values() if col.is_custom(prefix)]


class SchemaIntrospector:
    """Database schema introspection utilities."""

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    async def table_exists(self, schema: str, table: str) -> bool:
        """Check if a table exists."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.tables
                WHERE table_schema = $1 AND table_name = $2
            )
        """

        try:
            result = await self.pool.fetchval(query, schema, table)
            return bool(result)
        except Exception as e:
            logger.error(f"Error checking table existence for {schema}.{table}: {e}")
            raise DatabaseError(f"Failed to check table existence: {e}") from e

    async def get_columns(self, schema: str, table: str) -> List[LiveColumn]:
        """Get all columns for a table ordered by physical position."""
        query = """
            SELECT
                column_name,
                data_type,
                is_nullable,
                column_default,
                ordinal_position
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            ORDER BY ordinal_position
        """

        try:
            rows = await self.pool.fetch(query, schema, table)
        except Exception as e:
            logger.error(f"Error getting columns for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get columns: {e}") from e

        return [
            LiveColumn(
                name=row["column_name"],
                data_type=row["data_type"],
                is_nullable=row["is_nullable"] == "YES",
                default=row["column_default"],
                ordinal_position=row["ordinal_position"],
            )
            for row in rows
        ]

    async def get_column(self, schema: str, table: str, column: str) -> Optional[LiveColumn]:
        """Get a single column by name, or None when it does not exist."""
        for col in await self.get_columns(schema, table):
            if col.name == column:
                return col
        return None

    async def get_table_info(self, schema: str, table: str) -> Optional[TableInfo]:
        """Get complete information about a table."""
        if not await self.table_exists(schema, table):
            return None

        columns = await self.get_columns(schema, table)
        return TableInfo(
            schema=schema,
            name=table,
            columns={col.name: col for col in columns},
        )

    async def list_tables(self, schema: str) -> List[str]:
        """List base tables in a schema."""
        query = """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = $1
            AND table_type = 'BASE TABLE'
            ORDER BY table_name
        """

        try:
            rows = await self.pool.fetch(query, schema)
        except Exception as e:
            logger.error(f"Error listing tables in {schema}: {e}")
            raise DatabaseError(f"Failed to list tables: {e}") from e

        return [row["table_name"] for row in rows]
