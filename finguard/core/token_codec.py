"""Signed bearer (access) tokens.

Access tokens are short-lived HS256 JWTs. Verification is a pure function
over the shared signing secret: no revocation list is consulted, so the
exposure of a leaked access token is bounded by its lifetime. Everything
revocation-sensitive happens at the refresh-token layer.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from finguard.config import Settings, get_settings
from finguard.core.clock import Clock, utcnow
from finguard.core.credential_store import Principal
from finguard.core.errors import (
    AccessTokenExpiredError,
    AccessTokenMalformedError,
    AccessTokenSignatureError,
)

TOKEN_TYPE = "access"
REQUIRED_CLAIMS = ["iss", "aud", "sub", "iat", "exp", "jti"]


@dataclass(frozen=True)
class IssuedAccessToken:
    """A freshly signed access token."""

    token: str
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims of an access token."""

    subject_id: str
    issued_at: datetime
    expires_at: datetime
    token_id: str
    role_id: str | None = None


class TokenCodec:
    """Issues and verifies access tokens."""

    def __init__(self, settings: Settings | None = None, clock: Clock = utcnow):
        self.settings = settings or get_settings()
        self.clock = clock
        self.ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)

    def issue(self, principal: Principal) -> IssuedAccessToken:
        """Sign an access token for ``principal``."""
        now = int(self.clock().timestamp())
        exp = now + int(self.ttl.total_seconds())
        token_id = str(uuid.uuid4())

        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal.id,
            "iat": now,
            "exp": exp,
            "jti": token_id,
            "type": TOKEN_TYPE,
            "role": principal.role_id,
        }

        token = jwt.encode(
            payload,
            self.settings.jwt_secret_key,
            algorithm=self.settings.jwt_algorithm,
        )
        return IssuedAccessToken(
            token=token,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=token_id,
        )

    def verify(self, token: str) -> AccessClaims:
        """Verify signature, audience, issuer and expiry.

        Raises:
            AccessTokenSignatureError: Signature does not match
            AccessTokenMalformedError: Not a well-formed access token
            AccessTokenExpiredError: Past ``exp`` (plus configured leeway)
        """
        if not token:
            raise AccessTokenMalformedError("Empty token")

        try:
            # Expiry is checked against the injected clock below
            payload = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
                options={
                    "require": REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.InvalidSignatureError as e:
            raise AccessTokenSignatureError("Signature verification failed") from e
        except jwt.InvalidTokenError as e:
            raise AccessTokenMalformedError(f"Invalid token: {type(e).__name__}") from e

        if payload.get("type") != TOKEN_TYPE:
            raise AccessTokenMalformedError("Not an access token")

        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as e:
            raise AccessTokenMalformedError("Invalid timestamp claims") from e

        subject_id = payload["sub"]
        if not isinstance(subject_id, str) or not subject_id:
            raise AccessTokenMalformedError("Invalid subject")

        leeway = timedelta(seconds=self.settings.jwt_leeway_seconds)
        if self.clock() >= expires_at + leeway:
            raise AccessTokenExpiredError("Access token expired")

        return AccessClaims(
            subject_id=subject_id,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=str(payload["jti"]),
            role_id=payload.get("role"),
        )
