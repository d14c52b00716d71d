"""
Logical column types and identifier derivation for custom columns.

The derived identifier format (`custom_<name>`) is shared with data that
already exists in deployed databases and must not change.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..exceptions import ValidationError


DEFAULT_PREFIX = "custom_"

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63

_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^a-z0-9_]")


class LogicalType(str, Enum):
    """Column types an operator can choose from.

    Values are the strings stored in column_metadata.column_type.
    """

    STRING = "string"
    INTEGER = "integer"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    DROPDOWN = "dropdown"

    @property
    def label(self) -> str:
        return TYPE_LABELS[self]

    @property
    def requires_options(self) -> bool:
        return self is LogicalType.DROPDOWN

    @property
    def physical(self) -> "PhysicalType":
        return PHYSICAL_TYPES[self]


@dataclass(frozen=True)
class PhysicalType:
    """How a logical type is stored in the base table."""

    sql_type: str
    default: str
    # Name information_schema.columns.data_type reports for sql_type
    data_type: str


TYPE_LABELS: Dict[LogicalType, str] = {
    LogicalType.STRING: "Text",
    LogicalType.INTEGER: "Number",
    LogicalType.DATE: "Date",
    LogicalType.TIMESTAMP: "Date & Time",
    LogicalType.BOOLEAN: "Yes/No",
    LogicalType.DROPDOWN: "Dropdown",
}

PHYSICAL_TYPES: Dict[LogicalType, PhysicalType] = {
    LogicalType.STRING: PhysicalType("text", "''", "text"),
    LogicalType.INTEGER: PhysicalType("integer", "0", "integer"),
    LogicalType.DATE: PhysicalType("date", "now()", "date"),
    LogicalType.TIMESTAMP: PhysicalType("timestamptz", "now()", "timestamp with time zone"),
    LogicalType.BOOLEAN: PhysicalType("boolean", "false", "boolean"),
    LogicalType.DROPDOWN: PhysicalType("text", "''", "text"),
}


def parse_logical_type(value: str) -> LogicalType:
    """Accept a stored value (`dropdown`) or an operator label (`Dropdown`)."""
    normalized = value.strip().lower()
    for logical_type in LogicalType:
        if normalized in (logical_type.value, logical_type.label.lower()):
            return logical_type
    raise ValidationError(
        f"Unknown column type '{value}'",
        {"allowed": ", ".join(t.value for t in LogicalType)},
    )


def derive_column_name(display_name: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Derive the storage identifier for an operator supplied column name.

    >>> derive_column_name("Lead Score")
    'custom_lead_score'
    """
    suffix = _DISALLOWED.sub("", _WHITESPACE.sub("_", display_name.lower()))
    return f"{prefix}{suffix}"


def display_name_from_column(column_name: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Inverse presentation of derive_column_name, used to prefill rename forms."""
    if column_name.startswith(prefix):
        column_name = column_name[len(prefix):]
    return column_name.replace("_", " ")


def validate_identifier(column_name: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Reject derived identifiers PostgreSQL would not store verbatim."""
    if column_name == prefix:
        raise ValidationError(
            "Column name must contain at least one letter, digit or underscore"
        )
    if len(column_name.encode("utf-8")) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"Column name is too long ({len(column_name)} > {MAX_IDENTIFIER_LENGTH})",
            {"column_name": column_name},
        )
    return column_name


def clean_options(options: Optional[Iterable[str]]) -> List[str]:
    """Drop blank dropdown entries; kept entries are stored as typed."""
    return [option for option in options or [] if option and option.strip()]
