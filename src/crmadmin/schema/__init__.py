"""
Schema management package for crmadmin.

This package provides:
- Logical column types and identifier derivation
- Idempotent ALTER TABLE operations with compensation
- Metadata tables setup
- Custom column management kept in step with column_metadata (schema.mutator)
- Audit and repair of live schema against metadata (schema.reconciler)

The mutator and reconciler depend on the metadata store, which itself
depends on schema.types, so they are imported from their modules.
"""

from .types import LogicalType, PhysicalType, derive_column_name, display_name_from_column
from .operations import SchemaOperations, SchemaChange, ChangeType, OperationMode
from .metadata import MetadataManager

__all__ = [
    "LogicalType",
    "PhysicalType",
    "derive_column_name",
    "display_name_from_column",
    "SchemaOperations",
    "SchemaChange",
    "ChangeType",
    "OperationMode",
    "MetadataManager",
]
