"""
crmadmin: CRM database administration with managed custom columns.

crmadmin adds, renames and removes operator-defined columns on a CRM
table in PostgreSQL while keeping a metadata table describing them in
step, and manages the CRM's user accounts.
"""

__version__ = "0.1.0"

from .config import CrmAdminConfig
from .exceptions import (
    CrmAdminError,
    ConfigurationError,
    ValidationError,
    DuplicateError,
    NotFoundError,
    AuthenticationError,
    DatabaseError,
    SchemaError,
    MetadataError,
    InconsistencyError,
)

__all__ = [
    "__version__",
    "CrmAdminConfig",
    "CrmAdminError",
    "ConfigurationError",
    "ValidationError",
    "DuplicateError",
    "NotFoundError",
    "AuthenticationError",
    "DatabaseError",
    "SchemaError",
    "MetadataError",
    "InconsistencyError",
]
