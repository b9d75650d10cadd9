from __future__ import annotations
from typing import Dict, Optional


class StoreSyncError(Exception):
    """Base for typed errors; `code` is the machine-readable value sent to clients."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class ConfigurationError(StoreSyncError):
    code = "CONFIGURATION_ERROR"


class VaultError(StoreSyncError):
    # Tampering vs wrong key must look the same to callers
    code = "CREDENTIAL_UNAVAILABLE"
    status_code = 500


class IntegrityError(VaultError):
    pass


class FormatError(VaultError):
    pass


class StateInvalidOrExpired(StoreSyncError):
    code = "INVALID_STATE"
    status_code = 400


class OAuthProviderError(StoreSyncError):
    code = "OAUTH_FAILED"
    status_code = 400


class RateLimited(StoreSyncError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after: int, message: str = "", *, code: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None):
        retry_after = max(1, int(retry_after))
        super().__init__(
            message or f"Too many requests. Please try again in {retry_after} seconds.",
            code=code,
        )
        self.retry_after = retry_after
        self.headers = dict(headers or {})


class TokenNotFound(StoreSyncError):
    code = "NOT_CONNECTED"
    status_code = 404


class CredentialRevoked(StoreSyncError):
    """Provider rejected the stored credential; the store must reconnect."""

    code = "CREDENTIAL_REVOKED"
    status_code = 409


class TransientSyncError(StoreSyncError):
    code = "SYNC_FAILED"
    status_code = 502
