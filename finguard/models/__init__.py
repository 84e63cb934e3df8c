"""Database models."""

from finguard.models.user import User, Role, RolePermission, role_inheritance
from finguard.models.refresh_token import RefreshToken
from finguard.models.mfa import MfaChallenge, BackupCode
from finguard.models.trusted_device import TrustedDevice
from finguard.models.security import LoginAttempt, SecurityAlert

__all__ = [
    # Credential store
    "User",
    "Role",
    "RolePermission",
    "role_inheritance",
    # Sessions
    "RefreshToken",
    # MFA
    "MfaChallenge",
    "BackupCode",
    "TrustedDevice",
    # Security history
    "LoginAttempt",
    "SecurityAlert",
]
