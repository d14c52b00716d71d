"""
Schema reconciliation for crmadmin.

Diffs the custom columns of the live base table against column_metadata
and repairs what a failed compensation left behind.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..config import SchemaManagementConfig
from ..database.connection import ConnectionPool
from ..database.introspection import LiveColumn, SchemaIntrospector
from ..exceptions import SchemaError
from ..models import ColumnDescriptor
from ..store import MetadataStore
from .operations import OperationMode, SchemaChange, SchemaOperations


logger = logging.getLogger(__name__)


@dataclass
class TypeMismatch:
    """A described column whose physical type differs from its logical type."""

    column_name: str
    expected_data_type: str
    actual_data_type: str


@dataclass
class AuditReport:
    """Differences between the live base table and column_metadata."""

    table: str
    orphan_columns: List[LiveColumn] = field(default_factory=list)
    dangling_descriptors: List[ColumnDescriptor] = field(default_factory=list)
    type_mismatches: List[TypeMismatch] = field(default_factory=list)
    described_columns: int = 0

    @property
    def is_consistent(self) -> bool:
        return not (self.orphan_columns or self.dangling_descriptors or self.type_mismatches)


class RepairStatus(str, Enum):
    """Status of a repair run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RepairResult:
    """Result of a repair run."""

    status: RepairStatus
    removed_descriptors: List[str]
    changes_applied: List[SchemaChange]
    errors: List[str]
    execution_time_ms: float

    @property
    def successful_changes(self) -> int:
        return sum(1 for c in self.changes_applied if c.executed)

    @property
    def failed_changes(self) -> int:
        return sum(1 for c in self.changes_applied if c.error)


class SchemaReconciler:
    """
    Audits and repairs the custom columns of the base table.

    Type mismatches are reported but never repaired; changing the type
    of a column that holds data is an operator decision.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        settings: Optional[SchemaManagementConfig] = None,
        store: Optional[MetadataStore] = None,
        operations: Optional[SchemaOperations] = None,
        introspector: Optional[SchemaIntrospector] = None,
    ):
        self.pool = pool
        self.settings = settings or SchemaManagementConfig()
        self.store = store or MetadataStore(pool, self.settings.metadata_schema)
        self.operations = operations or SchemaOperations(
            pool,
            OperationMode(self.settings.mode),
            timeout_seconds=self.settings.timeout_seconds,
        )
        self.introspector = introspector or SchemaIntrospector(pool)

    async def audit(self) -> AuditReport:
        """Compare live custom columns with the recorded descriptors."""
        settings = self.settings
        report = AuditReport(table=settings.full_table_name)

        table_info = await self.introspector.get_table_info(settings.table_schema, settings.table)
        if table_info is None:
            raise SchemaError(f"Table {settings.full_table_name} does not exist")
        descriptors = await self.store.list_columns()
        report.described_columns = len(descriptors)

        live = {c.name: c for c in table_info.custom_columns(settings.column_prefix)}
        described = {d.column_name: d for d in descriptors}

        report.orphan_columns = [
            column for name, column in live.items() if name not in described
        ]

        for name, descriptor in described.items():
            column = table_info.get_column(name)
            if column is None:
                report.dangling_descriptors.append(descriptor)
                continue

            expected = descriptor.column_type.physical.data_type
            if column.data_type != expected:
                report.type_mismatches.append(
                    TypeMismatch(
                        column_name=name,
                        expected_data_type=expected,
                        actual_data_type=column.data_type,
                    )
                )

        if report.is_consistent:
            logger.info(f"{report.table}: {len(descriptors)} custom columns consistent")
        else:
            logger.warning(
                f"{report.table}: {len(report.orphan_columns)} orphan columns, "
                f"{len(report.dangling_descriptors)} dangling descriptors, "
                f"{len(report.type_mismatches)} type mismatches"
            )
        return report

    async def repair(self, report: AuditReport, drop_orphans: bool = False) -> RepairResult:
        """
        Repair the divergences found by audit().

        Dangling descriptors are deleted. Orphan columns are dropped only
        when drop_orphans is set, since they may still hold data.
        """
        start_time = time.monotonic()
        removed: List[str] = []
        changes: List[SchemaChange] = []
        errors: List[str] = []

        if not report.dangling_descriptors and not (drop_orphans and report.orphan_columns):
            return RepairResult(
                status=RepairStatus.SKIPPED,
                removed_descriptors=removed,
                changes_applied=changes,
                errors=errors,
                execution_time_ms=(time.monotonic() - start_time) * 1000,
            )

        for descriptor in report.dangling_descriptors:
            if self.operations.dry_run:
                logger.info(f"DRY RUN: Would delete dangling descriptor {descriptor.column_name}")
                continue
            try:
                await self.store.delete_column(descriptor.id)
                removed.append(descriptor.column_name)
                logger.info(f"Deleted dangling descriptor {descriptor.column_name}")
            except Exception as e:
                error_msg = f"Failed to delete descriptor {descriptor.column_name}: {e}"
                logger.error(error_msg)
                errors.append(error_msg)

        if drop_orphans:
            for column in report.orphan_columns:
                change = self.operations.drop_column_change(
                    self.settings.table_schema, self.settings.table, column.name
                )
                changes.append(change)
                try:
                    await self.operations.execute(change)
                except Exception as e:
                    error_msg = f"Failed to drop orphan column {column.name}: {e}"
                    logger.error(error_msg)
                    errors.append(error_msg)

        if self.operations.dry_run:
            # Nothing was deleted or dropped
            status = RepairStatus.SKIPPED
        elif not errors:
            status = RepairStatus.SUCCESS
        elif removed or any(c.executed for c in changes):
            status = RepairStatus.PARTIAL
        else:
            status = RepairStatus.FAILED

        result = RepairResult(
            status=status,
            removed_descriptors=removed,
            changes_applied=changes,
            errors=errors,
            execution_time_ms=(time.monotonic() - start_time) * 1000,
        )
        logger.info(
            f"Repair of {report.table} finished: {status.value}, "
            f"{len(removed)} descriptors removed, {result.successful_changes} columns dropped"
        )
        return result
