"""
Structural schema operations for crmadmin.

Builds ADD/RENAME/DROP COLUMN statements for the base table, executes
them, and runs their compensating statement when a later step fails.
Every statement is idempotent so a compensation can be retried safely.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..database.connection import ConnectionPool
from ..exceptions import SchemaError


logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Types of schema changes."""

    ADD_COLUMN = "add_column"
    RENAME_COLUMN = "rename_column"
    DROP_COLUMN = "drop_column"


class OperationMode(str, Enum):
    """Schema operation modes."""

    APPLY = "apply"        # Execute statements
    DRY_RUN = "dry_run"    # Generate SQL but don't execute


@dataclass
class SchemaChange:
    """Represents a schema change operation."""

    change_type: ChangeType
    schema: str
    table: str
    column: str
    description: str
    sql: str
    rollback_sql: Optional[str] = None
    new_column: Optional[str] = None

    # Execution results
    executed: bool = False
    execution_time_ms: Optional[float] = None
    error: Optional[str] = None
    compensated: bool = False

    @property
    def full_table_name(self) -> str:
        """Get fully qualified table name."""
        return f"{self.schema}.{self.table}"

    @property
    def can_rollback(self) -> bool:
        """Check if this change can be rolled back."""
        return self.rollback_sql is not None and len(self.rollback_sql.strip()) > 0

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def change_id(self) -> str:
        """Get unique identifier for this change."""
        return f"{self.change_type.value}_{self.schema}_{self.table}_{self.column}"


class SchemaOperations:
    """Executes structural changes against the base table."""

    def __init__(
        self,
        pool: ConnectionPool,
        operation_mode: OperationMode = OperationMode.APPLY,
        timeout_seconds: int = 300,
        compensation_attempts: int = 3,
        compensation_backoff: float = 0.5,
    ):
        self.pool = pool
        self.operation_mode = operation_mode
        self.timeout_seconds = timeout_seconds
        self.compensation_attempts = compensation_attempts
        self.compensation_backoff = compensation_backoff

    @property
    def dry_run(self) -> bool:
        return self.operation_mode == OperationMode.DRY_RUN

    # Statement builders

    def add_column_change(
        self,
        schema: str,
        table: str,
        column_name: str,
        column_type: str,
        default: Optional[str] = None,
    ) -> SchemaChange:
        """Build an idempotent ADD COLUMN with its compensating DROP."""
        definition = f"{column_name} {column_type}"
        if default is not None:
            definition += f" DEFAULT {default}"

        return SchemaChange(
            change_type=ChangeType.ADD_COLUMN,
            schema=schema,
            table=table,
            column=column_name,
            description=f"Add column {column_name}",
            sql=f"ALTER TABLE {schema}.{table} ADD COLUMN IF NOT EXISTS {definition}",
            rollback_sql=f"ALTER TABLE {schema}.{table} DROP COLUMN IF EXISTS {column_name}",
        )

    def rename_column_change(
        self,
        schema: str,
        table: str,
        old_name: str,
        new_name: str,
    ) -> SchemaChange:
        """Build a RENAME COLUMN with a guarded rename back."""
        rollback_sql = f"""
            DO $$
            BEGIN
                IF EXISTS (
                    SELECT 1 FROM information_schema.columns
                    WHERE table_schema = '{schema}'
                    AND table_name = '{table}'
                    AND column_name = '{new_name}'
                ) THEN
                    ALTER TABLE {schema}.{table} RENAME COLUMN {new_name} TO {old_name};
                END IF;
            END $$;
            """

        return SchemaChange(
            change_type=ChangeType.RENAME_COLUMN,
            schema=schema,
            table=table,
            column=old_name,
            new_column=new_name,
            description=f"Rename column {old_name} to {new_name}",
            sql=f"ALTER TABLE {schema}.{table} RENAME COLUMN {old_name} TO {new_name}",
            rollback_sql=rollback_sql,
        )

    def drop_column_change(self, schema: str, table: str, column_name: str) -> SchemaChange:
        """Build an idempotent DROP COLUMN. Dropped data cannot be restored."""
        return SchemaChange(
            change_type=ChangeType.DROP_COLUMN,
            schema=schema,
            table=table,
            column=column_name,
            description=f"Drop column {column_name}",
            sql=f"ALTER TABLE {schema}.{table} DROP COLUMN IF EXISTS {column_name}",
        )

    # Execution

    async def execute(self, change: SchemaChange, conn: Optional[Any] = None) -> SchemaChange:
        """Execute a schema change.

        Args:
            change: The change to run
            conn: Connection of an enclosing transaction; a pooled
                connection is used when omitted

        Raises:
            SchemaError: If the statement fails
        """
        if self.dry_run:
            change.executed = False
            change.description = f"DRY RUN: {change.description}"
            logger.info(f"DRY RUN: Would execute {change.change_id}")
            logger.info(f"SQL: {change.sql.strip()}")
            return change

        start_time = time.time()
        logger.info(f"Executing {change.change_id}: {change.sql.strip()}")

        try:
            await self._run(change.sql, conn)
        except Exception as e:
            change.executed = False
            change.error = str(e)
            logger.error(f"Failed to execute {change.change_id}: {e}")
            raise SchemaError(
                f"Failed to {change.description.lower()} on {change.full_table_name}",
                {"sql": change.sql},
                cause=e,
            ) from e

        change.executed = True
        change.execution_time_ms = (time.time() - start_time) * 1000
        logger.info(f"Successfully executed {change.change_id}")
        return change

    async def compensate(self, change: SchemaChange) -> bool:
        """Undo an executed change with exponential backoff between attempts.

        Returns:
            True when the compensating statement ran, False when every
            attempt failed
        """
        if not change.can_rollback:
            logger.error(f"No compensating statement for {change.change_id}")
            return False

        for attempt in range(self.compensation_attempts):
            try:
                logger.info(
                    f"Compensating {change.change_id} "
                    f"(attempt {attempt + 1}/{self.compensation_attempts})"
                )
                await self._run(change.rollback_sql)
                change.compensated = True
                logger.info(f"Successfully compensated {change.change_id}")
                return True

            except Exception as e:
                if attempt == self.compensation_attempts - 1:
                    logger.error(f"Compensation failed for {change.change_id}: {e}")
                    break

                delay = self.compensation_backoff * (2 ** attempt)
                logger.warning(
                    f"Compensation attempt {attempt + 1} failed, retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)

        return False

    async def _run(self, sql: str, conn: Optional[Any] = None) -> None:
        if conn is not None:
            await conn.execute(sql, timeout=self.timeout_seconds)
            return

        async with self.pool.acquire() as pooled:
            await pooled.execute(sql, timeout=self.timeout_seconds)
