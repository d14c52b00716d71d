"""
Operator authentication.

Credentials are checked by a pluggable verifier; a successful check
issues a signed, expiring session token that administrative commands
present instead of credentials.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from .config import AuthConfig
from .exceptions import AuthenticationError
from .users import UserService, verify_password


logger = logging.getLogger(__name__)


@dataclass
class Session:
    """An authenticated operator session."""

    subject: str
    token: str
    issued_at: datetime
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at


class CredentialVerifier(ABC):
    """Checks an email/password pair."""

    @abstractmethod
    async def verify(self, email: str, password: str) -> bool:
        pass


class AdminCredentialVerifier(CredentialVerifier):
    """Accepts the single administrator configured in AuthConfig."""

    def __init__(self, admin_email: str, admin_password_hash: Optional[str]):
        self.admin_email = admin_email.strip().lower()
        self.admin_password_hash = admin_password_hash

    async def verify(self, email: str, password: str) -> bool:
        if email.strip().lower() != self.admin_email:
            return False
        return verify_password(password, self.admin_password_hash)


class UserCredentialVerifier(CredentialVerifier):
    """Accepts any CRM user with a matching password."""

    def __init__(self, users: UserService):
        self.users = users

    async def verify(self, email: str, password: str) -> bool:
        return await self.users.verify_password(email, password) is not None


class Authenticator:
    """Issues and validates session tokens."""

    def __init__(
        self,
        verifier: CredentialVerifier,
        secret_key: str,
        algorithm: str = "HS256",
        ttl_minutes: int = 60,
    ):
        self.verifier = verifier
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl = timedelta(minutes=ttl_minutes)

    @classmethod
    def from_config(cls, config: AuthConfig, verifier: Optional[CredentialVerifier] = None) -> "Authenticator":
        verifier = verifier or AdminCredentialVerifier(config.admin_email, config.admin_password_hash)
        return cls(
            verifier,
            secret_key=config.secret_key,
            algorithm=config.algorithm,
            ttl_minutes=config.token_ttl_minutes,
        )

    async def authenticate(self, email: str, password: str) -> Session:
        """
        Check credentials and open a session.

        Raises:
            AuthenticationError: If the credentials are rejected
        """
        if not email or not password:
            raise AuthenticationError("Email and password are required")

        if not await self.verifier.verify(email, password):
            logger.warning(f"Rejected login for {email}")
            raise AuthenticationError("Invalid email or password")

        session = self._issue(email.strip().lower())
        logger.info(f"Opened session for {session.subject}, expires {session.expires_at.isoformat()}")
        return session

    def validate_token(self, token: str) -> Session:
        """
        Decode a session token.

        Raises:
            AuthenticationError: If the token is missing, forged or expired
        """
        if not token:
            raise AuthenticationError("Missing session token; run `crmadmin login` first")

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug(f"Session token rejected: {e}")
            raise AuthenticationError(f"Invalid session token: {e}") from e

        subject = payload.get("sub")
        if not subject:
            raise AuthenticationError("Session token has no subject")

        return Session(
            subject=subject,
            token=token,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def _issue(self, subject: str) -> Session:
        # Whole seconds, matching what the token can carry
        issued_at = datetime.now(timezone.utc).replace(microsecond=0)
        expires_at = issued_at + self.ttl
        claims = {
            "sub": subject,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": secrets.token_urlsafe(16),
        }
        token = jwt.encode(claims, self.secret_key, algorithm=self.algorithm)
        return Session(subject=subject, token=token, issued_at=issued_at, expires_at=expires_at)
