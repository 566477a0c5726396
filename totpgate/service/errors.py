from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` so a transport layer can map
    it to its own status codes without inspecting messages:
    - validation_error
    - not_found
    - conflict
    - invalid_credentials
    - account_locked
    - crypto_error
    - internal_error
    """

    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed input; no state was changed."""
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested entity does not exist."""
    error_code = "not_found"


class DeviceNotFound(NotFoundError):
    """No device with the requested label exists for the account."""
    pass


class NotFoundOrForbidden(NotFoundError):
    """Entity is absent or owned by another account (indistinguishable)."""
    pass


class ConflictError(ServiceError):
    """Request conflicts with current state, e.g. a duplicate."""
    error_code = "conflict"


class DeviceLabelConflict(ConflictError):
    pass


class DeviceLimitExceeded(ConflictError):
    pass


class CredentialError(ServiceError):
    """Wrong password or code.

    ``locked_until`` is set when this failure was the one that locked the
    account; later attempts get :class:`LockedError`.
    """
    error_code = "invalid_credentials"

    def __init__(
        self,
        message: str,
        *,
        remaining_attempts: Optional[int] = None,
        locked_until: Optional[datetime] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.remaining_attempts = remaining_attempts
        self.locked_until = locked_until


class LockedError(ServiceError):
    """Account is locked until ``locked_until``."""
    error_code = "account_locked"

    def __init__(
        self, message: str, *, locked_until: datetime, detail: Optional[dict] = None
    ) -> None:
        super().__init__(message, detail=detail)
        self.locked_until = locked_until


class CryptoError(ServiceError):
    """Decryption or key material failure; indicates corruption or tampering."""
    error_code = "crypto_error"


class DecryptionError(CryptoError):
    pass


class InvalidSecretError(CryptoError):
    """TOTP secret is not valid base32."""
    pass


class InternalError(ServiceError):
    """Storage or other infrastructure failure."""
    error_code = "internal_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "DeviceNotFound",
    "NotFoundOrForbidden",
    "ConflictError",
    "DeviceLabelConflict",
    "DeviceLimitExceeded",
    "CredentialError",
    "LockedError",
    "CryptoError",
    "DecryptionError",
    "InvalidSecretError",
    "InternalError",
]
