"""
Record and input models for crmadmin.

Records mirror rows of column_metadata and crm_users. Input models
validate operator supplied user data before anything is written.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .schema.types import LogicalType, display_name_from_column


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\d\s\-\+\(\)]+$")
PHONE_MIN_LENGTH = 10
PASSWORD_MIN_LENGTH = 6


@dataclass
class ColumnDescriptor:
    """Metadata describing one custom column of the base table."""

    id: str
    column_name: str
    column_type: LogicalType
    dropdown_options: Optional[List[str]] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "ColumnDescriptor":
        options = row["dropdown_options"]
        return cls(
            id=str(row["id"]),
            column_name=row["column_name"],
            column_type=LogicalType(row["column_type"]),
            dropdown_options=list(options) if options is not None else None,
            created_at=row["created_at"],
        )

    def display_name(self, prefix: str = "custom_") -> str:
        return display_name_from_column(self.column_name, prefix)


@dataclass
class CrmUserRecord:
    """A CRM user account. The password is only ever held as a hash."""

    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "CrmUserRecord":
        return cls(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row["name"],
            phone_number=row["phone_number"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _check_email(v: str) -> str:
    v = v.strip()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Please enter a valid email address")
    return v


def _check_password(v: str) -> str:
    if len(v) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    return v


def _check_phone(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not v:
        return None
    if not PHONE_PATTERN.match(v) or len(v) < PHONE_MIN_LENGTH:
        raise ValueError("Please enter a valid phone number")
    return v


def _blank_to_none(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    return v or None


class CrmUserCreate(BaseModel):
    """Fields accepted when creating a CRM user."""

    email: str = Field(..., description="Login email, unique")
    password: str = Field(..., description="Plaintext password, hashed before storage")
    name: Optional[str] = Field(None, description="Display name")
    phone_number: Optional[str] = Field(None, description="Phone number, unique")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _check_email(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)

    @field_validator("phone_number")
    @classmethod
    def validate_phone_number(cls, v: Optional[str]) -> Optional[str]:
        return _check_phone(v)


class CrmUserUpdate(BaseModel):
    """Partial update of a CRM user; unset fields are left untouched."""

    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None
    phone_number: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _check_email(v)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _check_password(v)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)

    @field_validator("phone_number")
    @classmethod
    def validate_phone_number(cls, v: Optional[str]) -> Optional[str]:
        return _check_phone(v)
