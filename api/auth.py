"""
Password digests, signed tokens and the caller identity dependency.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import ValidationError

from library.models import Identity
from utilities.config import config

logger = structlog.get_logger(__name__)

# Missing credentials are not an error here; operations decide whether login is required
security = HTTPBearer(auto_error=False)


class PasswordManager:
    """Hashes and verifies passwords with bcrypt."""

    def __init__(self, rounds: int = 10):
        self.context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, password: str) -> str:
        return self.context.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        try:
            return self.context.verify(password, digest)
        except ValueError:
            # Stored value is not a bcrypt digest
            return False


class TokenManager:
    """Signs and verifies HS256 tokens carrying the caller's claims."""

    def __init__(self, secret: str, algorithm: str = "HS256", expire_hours: int = 168):
        self.secret = secret
        self.algorithm = algorithm
        self.expire_hours = expire_hours

    def sign(self, claims: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """
        Sign claims into a token.

        Args:
            claims: Token payload
            expires_delta: Lifetime override; defaults to the configured hours

        Returns:
            Encoded token
        """
        to_encode = claims.copy()
        expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=self.expire_hours))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the token's claims, or None if it is malformed, tampered with or expired."""
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug("Token rejected", error=str(e))
            return None


password_manager = PasswordManager(rounds=config.password_hash_rounds)
token_manager = TokenManager(
    secret=config.jwt_secret,
    algorithm=config.jwt_algorithm,
    expire_hours=config.token_expire_hours
)


def identity_from_token(token: Optional[str], tokens: TokenManager = token_manager) -> Optional[Identity]:
    """Resolve a bearer token to an identity; anything invalid is anonymous."""
    if not token:
        return None

    claims = tokens.verify(token)
    if not claims:
        return None

    try:
        return Identity.from_claims(claims)
    except (KeyError, ValidationError) as e:
        logger.warning("Token claims incomplete", error=str(e))
        return None


async def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[Identity]:
    """
    Resolve the caller from the Authorization header.

    Returns:
        The caller's identity, or None for anonymous requests
    """
    if credentials is None:
        return None
    return identity_from_token(credentials.credentials)
