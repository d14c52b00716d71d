"""
Custom column management for the base table.

Keeps the operator-created columns of the base table and their
column_metadata descriptors in step. The structural change always runs
first; the metadata write follows. In transactional mode both share one
transaction. Otherwise a failed metadata write triggers a compensating
structural change, and if that also fails the divergence is reported on
the result rather than repaired.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Union

from ..config import SchemaManagementConfig
from ..database.connection import ConnectionPool
from ..database.introspection import LiveColumn, SchemaIntrospector
from ..exceptions import (
    CrmAdminError,
    DatabaseError,
    DuplicateError,
    InconsistencyError,
    MetadataError,
    NotFoundError,
    SameNameError,
    SchemaError,
    ValidationError,
)
from ..models import ColumnDescriptor
from ..store import MetadataStore
from .operations import ChangeType, OperationMode, SchemaChange, SchemaOperations
from .types import (
    LogicalType,
    clean_options,
    derive_column_name,
    parse_logical_type,
    validate_identifier,
)


logger = logging.getLogger(__name__)


class MutationStatus(str, Enum):
    """Outcome of a column management operation."""

    SUCCESS = "success"
    INVALID_INPUT = "invalid_input"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    SAME_NAME = "same_name"
    STRUCTURAL_FAILURE = "structural_failure"
    METADATA_FAILURE = "metadata_failure"
    SKIPPED = "skipped"


class InconsistencyKind(str, Enum):
    ORPHAN_COLUMN = "orphan_column"
    DANGLING_METADATA = "dangling_metadata"


@dataclass
class Inconsistency:
    """A divergence between the live table and column_metadata left behind by a failure."""

    kind: InconsistencyKind
    column_name: str
    descriptor_id: Optional[str] = None
    detail: str = ""


@dataclass
class MutationResult:
    """Result of AddColumn, RenameColumn or DeleteColumn."""

    operation: str
    status: MutationStatus = MutationStatus.SKIPPED
    column_name: Optional[str] = None
    descriptor: Optional[ColumnDescriptor] = None
    changes: List[SchemaChange] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    # None when no compensation was needed or attempted
    compensated: Optional[bool] = None
    inconsistency: Optional[Inconsistency] = None
    execution_time_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == MutationStatus.SUCCESS

    @property
    def message(self) -> str:
        return self.errors[0] if self.errors else ""

    def raise_for_status(self) -> "MutationResult":
        """Raise the exception matching a failed status."""
        if self.inconsistency is not None:
            raise InconsistencyError(
                self.inconsistency.kind.value,
                self.inconsistency.column_name,
                {"detail": self.inconsistency.detail} if self.inconsistency.detail else None,
            )
        if self.status in (MutationStatus.SUCCESS, MutationStatus.SKIPPED):
            return self

        error_classes = {
            MutationStatus.INVALID_INPUT: ValidationError,
            MutationStatus.SAME_NAME: SameNameError,
            MutationStatus.NOT_FOUND: NotFoundError,
            MutationStatus.STRUCTURAL_FAILURE: SchemaError,
            MutationStatus.METADATA_FAILURE: MetadataError,
        }
        if self.status == MutationStatus.DUPLICATE:
            raise DuplicateError("column_name", self.column_name)
        raise error_classes[self.status](self.message or self.status.value)


def _classify(error: Exception) -> MutationStatus:
    if isinstance(error, SameNameError):
        return MutationStatus.SAME_NAME
    if isinstance(error, ValidationError):
        return MutationStatus.INVALID_INPUT
    if isinstance(error, DuplicateError):
        return MutationStatus.DUPLICATE
    if isinstance(error, NotFoundError):
        return MutationStatus.NOT_FOUND
    if isinstance(error, MetadataError):
        return MutationStatus.METADATA_FAILURE
    return MutationStatus.STRUCTURAL_FAILURE


class ColumnManager:
    """
    Adds, renames and removes custom columns of the base table.

    The manager is the only writer of both the custom part of the base
    table and the column_metadata rows describing it. Operations are
    not coordinated between processes; two operators renaming to the
    same name at once can both pass the duplicate check.
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
            compensation_attempts=self.settings.compensation_attempts,
            compensation_backoff=self.settings.compensation_backoff,
        )
        self.introspector = introspector or SchemaIntrospector(pool)

    @property
    def schema(self) -> str:
        return self.settings.table_schema

    @property
    def table(self) -> str:
        return self.settings.table

    @property
    def prefix(self) -> str:
        return self.settings.column_prefix

    # Read operations

    async def list_schema(self) -> List[LiveColumn]:
        """Live columns of the base table in physical order."""
        return await self.introspector.get_columns(self.schema, self.table)

    async def list_columns(self) -> List[ColumnDescriptor]:
        """Column descriptors, newest first."""
        return await self.store.list_columns()

    async def get_column(self, descriptor_id: str) -> ColumnDescriptor:
        descriptor = await self.store.get_column(descriptor_id)
        if descriptor is None:
            raise NotFoundError(f"Column '{descriptor_id}' not found")
        return descriptor

    # Mutations

    async def add_column(
        self,
        display_name: str,
        logical_type: Union[LogicalType, str],
        options: Optional[Iterable[str]] = None,
    ) -> MutationResult:
        """Add a custom column and record its descriptor."""
        result = MutationResult(operation="add_column")
        return await self._run(result, self._add_column(result, display_name, logical_type, options))

    async def rename_column(self, descriptor_id: str, new_display_name: str) -> MutationResult:
        """Rename a custom column and its descriptor."""
        result = MutationResult(operation="rename_column")
        return await self._run(result, self._rename_column(result, descriptor_id, new_display_name))

    async def delete_column(self, descriptor_id: str) -> MutationResult:
        """Drop a custom column and delete its descriptor."""
        result = MutationResult(operation="delete_column")
        return await self._run(result, self._delete_column(result, descriptor_id))

    async def _run(self, result: MutationResult, operation: Awaitable[None]) -> MutationResult:
        start_time = time.monotonic()
        try:
            await operation
        except CrmAdminError as e:
            result.status = _classify(e)
            result.errors.append(str(e))
        except Exception as e:
            logger.exception(f"Unexpected error during {result.operation}")
            result.status = MutationStatus.STRUCTURAL_FAILURE
            result.errors.append(str(e))
        finally:
            result.execution_time_ms = (time.monotonic() - start_time) * 1000

        log = logger.info if result.status in (MutationStatus.SUCCESS, MutationStatus.SKIPPED) else logger.warning
        log(
            f"{result.operation} {result.column_name or ''}: "
            f"{result.status.value} ({result.execution_time_ms:.1f}ms)"
        )
        return result

    async def _add_column(
        self,
        result: MutationResult,
        display_name: str,
        logical_type: Union[LogicalType, str],
        options: Optional[Iterable[str]],
    ) -> None:
        if not display_name or not display_name.strip():
            raise ValidationError("Please enter a column name")

        if not isinstance(logical_type, LogicalType):
            logical_type = parse_logical_type(logical_type)

        dropdown_options = None
        if logical_type.requires_options:
            dropdown_options = clean_options(options)
            if not dropdown_options:
                raise ValidationError("Please enter at least one dropdown option")

        column_name = validate_identifier(derive_column_name(display_name, self.prefix), self.prefix)
        result.column_name = column_name

        await self._ensure_name_available(column_name)

        physical = logical_type.physical
        change = self.operations.add_column_change(
            self.schema, self.table, column_name, physical.sql_type, physical.default
        )

        descriptor = await self._apply(
            result,
            change,
            lambda conn: self.store.create_column(
                column_name, logical_type, dropdown_options, conn=conn
            ),
        )
        if descriptor is not None:
            result.descriptor = descriptor
            result.status = MutationStatus.SUCCESS

    async def _rename_column(
        self,
        result: MutationResult,
        descriptor_id: str,
        new_display_name: str,
    ) -> None:
        if not new_display_name or not new_display_name.strip():
            raise ValidationError("Please enter a column name")

        descriptor = await self.get_column(descriptor_id)
        result.descriptor = descriptor

        new_name = validate_identifier(derive_column_name(new_display_name, self.prefix), self.prefix)
        result.column_name = new_name

        if new_name == descriptor.column_name:
            raise SameNameError("Column name is the same as current name")

        await self._ensure_name_available(new_name)

        change = self.operations.rename_column_change(
            self.schema, self.table, descriptor.column_name, new_name
        )

        updated = await self._apply(
            result,
            change,
            lambda conn: self.store.update_column(
                descriptor.id, {"column_name": new_name}, conn=conn
            ),
        )
        if updated is not None:
            result.descriptor = updated
            result.status = MutationStatus.SUCCESS

    async def _delete_column(self, result: MutationResult, descriptor_id: str) -> None:
        descriptor = await self.get_column(descriptor_id)
        result.descriptor = descriptor
        result.column_name = descriptor.column_name

        change = self.operations.drop_column_change(
            self.schema, self.table, descriptor.column_name
        )

        async def remove_descriptor(conn: Any) -> ColumnDescriptor:
            await self.store.delete_column(descriptor.id, conn=conn)
            return descriptor

        removed = await self._apply(result, change, remove_descriptor)
        if removed is not None:
            result.status = MutationStatus.SUCCESS

    async def _ensure_name_available(self, column_name: str) -> None:
        """Reject identifiers already described or already present in the live table."""
        if await self.store.get_column_by_name(column_name) is not None:
            raise DuplicateError("column_name", column_name)

        # An undescribed live column must never be adopted: compensation would drop it
        if await self.introspector.get_column(self.schema, self.table, column_name) is not None:
            raise DuplicateError("column_name", column_name)

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[Optional[Any]]:
        if self.settings.transactional:
            async with self.pool.transaction() as conn:
                yield conn
        else:
            yield None

    async def _apply(
        self,
        result: MutationResult,
        change: SchemaChange,
        write_metadata: Callable[[Optional[Any]], Awaitable[Any]],
    ) -> Optional[Any]:
        """Run the structural change, then the metadata write.

        Returns the metadata write's result, or None in dry-run mode.
        """
        result.changes.append(change)

        if self.operations.dry_run:
            await self.operations.execute(change)
            result.status = MutationStatus.SKIPPED
            return None

        stage = "structural"
        try:
            async with self._unit_of_work() as conn:
                await self.operations.execute(change, conn=conn)
                stage = "metadata"
                return await write_metadata(conn)

        except Exception as e:
            if stage == "structural":
                if not isinstance(e, DatabaseError):
                    raise SchemaError(f"Structural change failed: {e}", cause=e) from e
                raise

            logger.error(f"Metadata write failed after {change.change_id}: {e}")
            await self._handle_metadata_failure(result, change)
            if not isinstance(e, CrmAdminError):
                raise MetadataError(f"Metadata write failed: {e}", cause=e) from e
            raise

    async def _handle_metadata_failure(self, result: MutationResult, change: SchemaChange) -> None:
        descriptor_id = result.descriptor.id if result.descriptor else None

        if self.settings.transactional:
            change.executed = False
            change.compensated = True
            result.compensated = True
            logger.warning(f"Rolled back {change.change_id} with its transaction")
            return

        if change.change_type == ChangeType.DROP_COLUMN:
            # The dropped column cannot be restored; the live table wins
            result.inconsistency = Inconsistency(
                kind=InconsistencyKind.DANGLING_METADATA,
                column_name=change.column,
                descriptor_id=descriptor_id,
                detail="column dropped but its metadata record remains",
            )
            logger.critical(
                f"Dangling metadata: {change.column} was dropped from "
                f"{change.full_table_name} but its descriptor remains"
            )
            return

        result.compensated = await self.operations.compensate(change)
        if result.compensated:
            return

        live_name = change.new_column if change.change_type == ChangeType.RENAME_COLUMN else change.column
        detail = (
            f"renamed from {change.column}; descriptor still names {change.column}"
            if change.change_type == ChangeType.RENAME_COLUMN
            else "column added but no metadata record exists"
        )
        result.inconsistency = Inconsistency(
            kind=InconsistencyKind.ORPHAN_COLUMN,
            column_name=live_name,
            descriptor_id=descriptor_id,
            detail=detail,
        )
        logger.critical(
            f"Orphan column: {live_name} exists in {change.full_table_name} "
            f"without matching metadata ({detail})"
        )
