"""
Metadata table management for crmadmin.

Creates the column_metadata and crm_users tables and the base table
custom columns are added to, and reports which of them are missing.
"""

import logging
from typing import Any, Dict

from ..database.connection import ConnectionPool
from ..database.introspection import SchemaIntrospector
from ..exceptions import SchemaError
from .types import LogicalType


logger = logging.getLogger(__name__)


class MetadataManager:
    """Manages crmadmin metadata tables."""

    def __init__(
        self,
        pool: ConnectionPool,
        metadata_schema: str = "public",
        table_schema: str = "public",
        table: str = "clients",
    ):
        self.pool = pool
        self.metadata_schema = metadata_schema
        self.table_schema = table_schema
        self.table = table
        self.introspector = SchemaIntrospector(pool)

        self.required_tables = {
            (metadata_schema, "column_metadata"): self._get_column_metadata_ddl(),
            (metadata_schema, "crm_users"): self._get_crm_users_ddl(),
            (table_schema, table): self._get_base_table_ddl(),
        }

    async def setup_metadata_schema(self) -> Dict[str, Any]:
        """Create every required table that does not exist yet."""
        results = {
            "schemas_created": [],
            "tables_created": [],
            "errors": [],
        }

        for schema in sorted({self.metadata_schema, self.table_schema}):
            try:
                await self._create_schema_if_not_exists(schema)
                results["schemas_created"].append(schema)
            except Exception as e:
                error_msg = f"Failed to create schema {schema}: {e}"
                logger.error(error_msg)
                results["errors"].append(error_msg)

        for (schema, table), ddl in self.required_tables.items():
            try:
                await self._create_table_if_not_exists(schema, table, ddl)
                results["tables_created"].append(f"{schema}.{table}")
            except Exception as e:
                error_msg = f"Failed to create table {schema}.{table}: {e}"
                logger.error(error_msg)
                results["errors"].append(error_msg)

        logger.info(f"Metadata schema setup completed: {len(results['errors'])} errors")
        return results

    async def check_metadata_integrity(self) -> Dict[str, Any]:
        """Check that every required table exists."""
        integrity_report = {
            "tables_exist": {},
            "missing_components": [],
            "is_healthy": True,
        }

        try:
            for schema, table in self.required_tables:
                exists = await self.introspector.table_exists(schema, table)
                integrity_report["tables_exist"][f"{schema}.{table}"] = exists
                if not exists:
                    integrity_report["missing_components"].append(f"table:{schema}.{table}")
                    integrity_report["is_healthy"] = False

            return integrity_report

        except Exception as e:
            logger.error(f"Metadata integrity check failed: {e}")
            return {
                "error": str(e),
                "is_healthy": False,
            }

    async def ensure_ready(self) -> None:
        """Raise when the tables column management depends on are missing."""
        report = await self.check_metadata_integrity()
        if not report["is_healthy"]:
            raise SchemaError(
                "Metadata tables are missing; run `crmadmin setup` first",
                {"missing": ", ".join(report.get("missing_components", [])) or report.get("error")},
            )

    async def _create_schema_if_not_exists(self, schema_name: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {schema_name}")

    async def _create_table_if_not_exists(self, schema: str, table: str, ddl: str) -> None:
        """Create table if it doesn't exist."""
        async with self.pool.acquire() as conn:
            exists = await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM information_schema.tables
                    WHERE table_schema = $1 AND table_name = $2
                )
                """,
                schema,
                table,
            )
            if not exists:
                await conn.execute(ddl)
                logger.info(f"Created table {schema}.{table}")
            else:
                logger.debug(f"Table {schema}.{table} already exists")

    # DDL definitions

    def _get_column_metadata_ddl(self) -> str:
        allowed_types = ", ".join(f"'{t.value}'" for t in LogicalType)
        return f"""
        CREATE TABLE IF NOT EXISTS {self.metadata_schema}.column_metadata (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            column_name TEXT NOT NULL UNIQUE,
            column_type TEXT NOT NULL,
            dropdown_options TEXT[],
            created_at TIMESTAMPTZ DEFAULT NOW(),

            CONSTRAINT valid_column_type CHECK (column_type IN ({allowed_types}))
        );

        CREATE INDEX IF NOT EXISTS idx_column_metadata_created
        ON {self.metadata_schema}.column_metadata(created_at DESC);
        """

    def _get_crm_users_ddl(self) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS {self.metadata_schema}.crm_users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            name TEXT,
            phone_number TEXT UNIQUE,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );
        """

    def _get_base_table_ddl(self) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS {self.table_schema}.{self.table} (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL DEFAULT '',
            email TEXT DEFAULT '',
            phone TEXT DEFAULT '',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );
        """
