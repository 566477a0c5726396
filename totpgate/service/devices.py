from __future__ import annotations

from dataclasses import dataclass
from typing import List
from urllib.parse import quote

from totpgate.clock import Clock, SystemClock
from totpgate.config import Settings
from totpgate.logging import get_logger
from totpgate.service.backup_codes import BackupCodeManager
from totpgate.service.errors import (
    DeviceLabelConflict,
    DeviceLimitExceeded,
    DeviceNotFound,
    NotFoundError,
    NotFoundOrForbidden,
    ValidationError,
)
from totpgate.service.totp import TIME_STEP_SECONDS, CODE_DIGITS, TOTPEngine
from totpgate.service.vault import SecretVault
from totpgate.storage.errors import ConstraintViolation
from totpgate.storage.models import CredentialStore, Device

logger = get_logger(__name__)

MAX_LABEL_LENGTH = 100


@dataclass(frozen=True)
class DeviceEnrollment:
    device: Device
    secret: str
    provisioning_uri: str


def build_provisioning_uri(issuer: str, email: str, secret: str) -> str:
    """``otpauth://`` URI understood by authenticator apps and QR renderers."""
    account_name = quote(f"{issuer}:{email}")
    return (
        f"otpauth://totp/{account_name}"
        f"?secret={secret}"
        f"&issuer={quote(issuer)}"
        f"&algorithm=SHA1&digits={CODE_DIGITS}&period={TIME_STEP_SECONDS}"
    )


class DeviceManager:
    """TOTP device onboarding, verification and removal.

    A device is created pending and becomes active once a code generated from
    its secret is confirmed. Sign-in verification walks the account's active
    devices oldest first and falls back to backup codes.
    """

    def __init__(
        self,
        store: CredentialStore,
        vault: SecretVault,
        engine: TOTPEngine,
        backup_codes: BackupCodeManager,
        settings: Settings,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.vault = vault
        self.engine = engine
        self.backup_codes = backup_codes
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = logger

    def bind_device(self, account_id: str, label: str) -> DeviceEnrollment:
        clean_label = (label or "").strip()
        if not clean_label or len(clean_label) > MAX_LABEL_LENGTH:
            raise ValidationError(
                f"device label must be 1-{MAX_LABEL_LENGTH} characters",
                detail={"field": "label"},
            )
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        if self.store.get_device_by_label(account_id, clean_label):
            raise DeviceLabelConflict("device label already in use", detail={"label": clean_label})
        cap = self.settings.max_devices_per_account
        if self.store.count_devices(account_id) >= cap:
            raise DeviceLimitExceeded(
                f"at most {cap} devices may be bound", detail={"limit": cap}
            )

        secret = self.engine.generate_secret()
        device = Device.pending(
            account_id, clean_label, self.vault.encrypt(secret), now=self.clock.now()
        )
        try:
            device = self.store.create_device(device, max_devices=cap)
        except ConstraintViolation as exc:
            # Another request won the race between the checks above and the insert
            if exc.detail.get("field") == "label":
                raise DeviceLabelConflict("device label already in use", detail={"label": clean_label}) from exc
            if exc.detail.get("field") == "device_count":
                raise DeviceLimitExceeded(f"at most {cap} devices may be bound", detail={"limit": cap}) from exc
            raise NotFoundError("account not found", detail=exc.detail) from exc
        self.logger.info("device_bound", account_id=account_id, device_id=device.id)
        return DeviceEnrollment(
            device=device,
            secret=secret,
            provisioning_uri=build_provisioning_uri(self.settings.otp_issuer, account.email, secret),
        )

    def verify_setup(self, account_id: str, label: str, code: str) -> bool:
        device = self.store.get_device_by_label(account_id, (label or "").strip())
        if device is None:
            raise DeviceNotFound("no pending device with that label", detail={"label": label})
        if device.is_active:
            # Re-verifying an active device reports failure rather than a distinct state
            self.logger.info("device_already_active", account_id=account_id, device_id=device.id)
            return False
        secret = self.vault.decrypt(device.secret)
        match = self.engine.verify(secret, code, self.settings.totp_tolerance_minutes)
        if not match.valid:
            self.logger.info("device_setup_rejected", account_id=account_id, device_id=device.id)
            return False
        if not self.store.activate_device(device.id, now=self.clock.now()):
            return False
        self.logger.info(
            "device_activated",
            account_id=account_id,
            device_id=device.id,
            matched_step=match.matched_step,
        )
        return True

    def verify_code(self, account_id: str, code: str) -> bool:
        for device in self.store.list_devices(account_id, active_only=True):
            secret = self.vault.decrypt(device.secret)
            match = self.engine.verify(secret, code, self.settings.totp_tolerance_minutes)
            if match.valid:
                self.store.touch_device(device.id, now=self.clock.now())
                self.logger.info(
                    "totp_verified",
                    account_id=account_id,
                    device_id=device.id,
                    matched_step=match.matched_step,
                )
                return True
        if self.backup_codes.redeem(account_id, code):
            return True
        self.logger.info("second_factor_rejected", account_id=account_id)
        return False

    def delete_device(self, account_id: str, device_id: str) -> None:
        device = self.store.get_device(device_id)
        if device is None or device.account_id != account_id:
            raise NotFoundOrForbidden("device not found", detail={"device_id": device_id})
        self.store.delete_device(device_id)
        self.logger.info("device_deleted", account_id=account_id, device_id=device_id)

    def list_devices(self, account_id: str) -> List[Device]:
        return self.store.list_devices(account_id)

    def active_device_count(self, account_id: str) -> int:
        return self.store.count_devices(account_id, active_only=True)
