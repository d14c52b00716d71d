"""
CRM user accounts.

Passwords are stored as one-way salted hashes; there is no way to get a
plaintext password back, only to verify one.
"""

import logging
from typing import Any, Dict, List, Optional, Union

import pydantic
from passlib.context import CryptContext

from .exceptions import NotFoundError, ValidationError
from .models import CrmUserCreate, CrmUserRecord, CrmUserUpdate
from .store import MetadataStore


logger = logging.getLogger(__name__)


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    """Generate password hash."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a password against its hash. Malformed hashes never verify."""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        logger.warning("Stored password hash is not in a recognised format")
        return False


def _validation_message(error: pydantic.ValidationError) -> str:
    messages = []
    for item in error.errors():
        message = item["msg"]
        # pydantic prefixes messages raised from validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(message)
    return "; ".join(messages)


class UserService:
    """CRUD for CRM users with input validation and password hashing."""

    def __init__(self, store: MetadataStore):
        self.store = store

    async def list_users(self) -> List[CrmUserRecord]:
        return await self.store.list_users()

    async def get_user(self, user_id: str) -> CrmUserRecord:
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User '{user_id}' not found")
        return user

    async def create_user(self, data: Union[CrmUserCreate, Dict[str, Any]]) -> CrmUserRecord:
        """Validate and create a user.

        Raises:
            ValidationError: If a field is malformed
            DuplicateError: If the email or phone number is taken
        """
        if not isinstance(data, CrmUserCreate):
            try:
                data = CrmUserCreate(**data)
            except pydantic.ValidationError as e:
                raise ValidationError(_validation_message(e)) from e

        return await self.store.create_user(
            email=data.email,
            password_hash=hash_password(data.password),
            name=data.name,
            phone_number=data.phone_number,
        )

    async def update_user(
        self, user_id: str, data: Union[CrmUserUpdate, Dict[str, Any]]
    ) -> CrmUserRecord:
        """Apply a partial update. Only fields that were set are written."""
        if not isinstance(data, CrmUserUpdate):
            try:
                data = CrmUserUpdate(**data)
            except pydantic.ValidationError as e:
                raise ValidationError(_validation_message(e)) from e

        fields = data.model_dump(exclude_unset=True)
        password = fields.pop("password", None)
        if password is not None:
            fields["password_hash"] = hash_password(password)
        if fields.get("email", "") is None:
            raise ValidationError("Email cannot be removed")

        return await self.store.update_user(user_id, fields)

    async def delete_user(self, user_id: str) -> None:
        if not await self.store.delete_user(user_id):
            raise NotFoundError(f"User '{user_id}' not found")

    async def verify_password(self, email: str, password: str) -> Optional[CrmUserRecord]:
        """Return the user when the password matches, otherwise None."""
        user = await self.store.get_user_by_email(email.strip())
        if user is None or not verify_password(password, user.password_hash):
            return None
        return user
