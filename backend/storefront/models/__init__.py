"""SQLAlchemy models for the storefront account-security backend."""

from storefront.models.user import User, UserStatus
from storefront.models.mfa import TwoFactorCredential, TwoFactorState
from storefront.models.backup_code import BackupCode
from storefront.models.trusted_device import TrustedDevice
from storefront.models.session import UserSession, LoginAttempt
from storefront.models.audit import AuditLog
from storefront.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    "User",
    "UserStatus",
    # Two-factor
    "TwoFactorCredential",
    "TwoFactorState",
    "BackupCode",
    "TrustedDevice",
    # Sessions
    "UserSession",
    "LoginAttempt",
    "AuditLog",
    # Error Monitoring
    "ErrorLog",
    "ErrorSeverity",
]
