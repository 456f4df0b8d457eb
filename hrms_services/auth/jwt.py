"""
JWT token handling for authentication.

This module provides functionality for:
- Issuing signed, stateless bearer tokens
- Verifying bearer tokens and classifying failures

Tokens are never stored server side and there is no revocation list: a
token stays valid until its ``exp`` claim passes.
"""
import re
import time
from typing import Callable, Optional, Union

import jwt
from jwt.exceptions import DecodeError, InvalidSignatureError, MissingRequiredClaimError, PyJWTError
from pydantic import BaseModel

from hrms_services.auth.models import Role
from hrms_services.config import JWT_ALGORITHM, JWT_EXPIRES_IN, JWT_SECRET_KEY
from hrms_services.errors import Expired, InvalidSignature, Malformed

DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


class IssuedToken(BaseModel):
    """Token response model."""
    access_token: str
    token_type: str = "bearer"
    expires_at: int  # Unix timestamp


class TokenClaims(BaseModel):
    """Verified token payload."""
    sub: str
    role: Role
    iat: int
    exp: int


def parse_duration(value: Union[str, int]) -> int:
    """
    Parse a TTL such as ``"7d"``, ``"12h"``, ``"30m"`` or ``"3600"`` into seconds.

    Raises:
        ValueError: If the value is not a positive duration
    """
    if isinstance(value, int):
        seconds = value
    else:
        match = DURATION_PATTERN.match(value)
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = int(match.group(1)) * DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


class TokenService:
    """
    Issues and verifies bearer tokens carrying ``(sub, role, iat, exp)``.

    Verification only needs the shared secret, so every service can check
    tokens without a database round trip.
    """
    def __init__(
        self,
        secret_key: str = JWT_SECRET_KEY,
        algorithm: str = JWT_ALGORITHM,
        expires_in: Union[str, int] = JWT_EXPIRES_IN,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl_seconds = parse_duration(expires_in)
        self.clock = clock or time.time

    def now(self) -> int:
        return int(self.clock())

    def issue(self, subject_id: str, role: Union[Role, str]) -> IssuedToken:
        """
        Create a signed access token for a subject.

        Args:
            subject_id: ID of the user the token identifies
            role: Role of the user at issue time

        Returns:
            IssuedToken with the encoded token and its expiry
        """
        issued_at = self.now()
        expires_at = issued_at + self.ttl_seconds
        payload = {
            "sub": str(subject_id),
            "role": Role(role).value,
            "iat": issued_at,
            "exp": expires_at,
        }
        encoded = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        return IssuedToken(access_token=encoded, expires_at=expires_at)

    def verify(self, raw_token: str) -> TokenClaims:
        """
        Verify a token and return its claims.

        The signature is checked first. Expiry is then decided against this
        service's clock: a token is valid only while ``now < exp``.

        Raises:
            Malformed: If the token cannot be decoded or lacks required claims
            InvalidSignature: If the signature does not match
            Expired: If the token is at or past its expiry
        """
        if not raw_token or not isinstance(raw_token, str):
            raise Malformed()
        try:
            payload = jwt.decode(
                raw_token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "role", "iat", "exp"],
                },
            )
        except InvalidSignatureError:
            raise InvalidSignature()
        except (DecodeError, MissingRequiredClaimError):
            raise Malformed()
        except PyJWTError:
            raise Malformed()

        try:
            claims = TokenClaims(**payload)
        except (ValueError, TypeError):
            # Unknown role or non-integer timestamps
            raise Malformed()

        if self.now() >= claims.exp:
            raise Expired()
        return claims


token_service = TokenService()


def get_token_service() -> TokenService:
    """FastAPI dependency returning the process-wide token service."""
    return token_service
