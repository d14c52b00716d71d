"""
Database integration package for crmadmin.

This package provides:
- Async PostgreSQL connection pooling
- Live table introspection through information_schema
"""

from .connection import ConnectionConfig, ConnectionPool
from .introspection import SchemaIntrospector, LiveColumn, TableInfo

__all__ = [
    "ConnectionConfig",
    "ConnectionPool",
    "SchemaIntrospector",
    "LiveColumn",
    "TableInfo",
]
