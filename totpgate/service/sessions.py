from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, List, Optional

from totpgate.clock import Clock, SystemClock
from totpgate.config import Settings
from totpgate.logging import get_logger
from totpgate.service.errors import InternalError
from totpgate.storage.errors import ConstraintViolation
from totpgate.storage.models import Account, CredentialStore, Session

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedSession:
    token: str
    session: Session


class SessionManager:
    """Signed bearer tokens backed by server-side session records.

    The token is an HS256 JWT whose ``jti`` names a session row. A token is
    only honoured while that row is active and unexpired, so revocation takes
    effect immediately regardless of the token's own ``exp``.
    """

    def __init__(self, store: CredentialStore, settings: Settings, clock: Clock | None = None) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = logger

    def session_ttl(self, remember_me: bool) -> timedelta:
        if remember_me:
            return timedelta(days=self.settings.session_duration_days_remember_me)
        return timedelta(hours=self.settings.session_duration_hours)

    def issue(
        self,
        account_id: str,
        remember_me: bool = False,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedSession:
        now = self.clock.now()
        session = Session.new(
            account_id,
            now=now,
            ttl=self.session_ttl(remember_me),
            ip_address=ip,
            user_agent=user_agent,
            remember_me=remember_me,
        )
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "jti": session.token_id,
            "iat": int(now.timestamp()),
            "exp": int(session.expires_at.timestamp()),
            "ip": ip,
            "remember": remember_me,
        }
        token = self._encode_jwt(payload)
        # The token leaves this method only once its session row is stored
        try:
            stored = self.store.create_session(session)
        except ConstraintViolation as exc:
            self.logger.error("session_persist_failed", account_id=account_id, error=exc.message)
            raise InternalError("session could not be created") from exc
        except Exception as exc:
            self.logger.exception("session_persist_failed", account_id=account_id)
            raise InternalError("session could not be created") from exc
        self.logger.info(
            "session_issued",
            account_id=account_id,
            session_id=stored.id,
            remember_me=remember_me,
            expires_at=stored.expires_at.isoformat(),
        )
        return IssuedSession(token=token, session=stored)

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for forged, foreign or expired tokens."""
        return self._decode_jwt(token)

    def validate(self, token: str) -> Optional[Account]:
        claims = self._decode_jwt(token)
        if not claims:
            return None
        token_id = claims.get("jti")
        if not isinstance(token_id, str):
            return None
        session = self.store.get_session_by_token_id(token_id)
        if session is None or not session.is_live(self.clock.now()):
            return None
        if session.account_id != claims.get("sub"):
            self.logger.warning("session_subject_mismatch", session_id=session.id)
            return None
        return self.store.get_account(session.account_id)

    def revoke(
        self, account_id: str, token_id: str | None = None, all_devices: bool = False
    ) -> bool:
        now = self.clock.now()
        if all_devices:
            affected = self.store.deactivate_account_sessions(account_id, now=now)
        elif token_id:
            affected = self.store.deactivate_session(account_id, now=now, token_id=token_id)
        else:
            affected = 0
        if affected:
            self.logger.info(
                "sessions_revoked", account_id=account_id, count=affected, all_devices=all_devices
            )
        return affected > 0

    def revoke_session(self, account_id: str, session_id: str) -> bool:
        affected = self.store.deactivate_session(
            account_id, now=self.clock.now(), session_id=session_id
        )
        if affected:
            self.logger.info("session_revoked", account_id=account_id, session_id=session_id)
        return affected > 0

    def list_active(self, account_id: str) -> List[Session]:
        return self.store.list_active_sessions(account_id, now=self.clock.now())

    def sweep_expired(self) -> int:
        swept = self.store.deactivate_expired_sessions(now=self.clock.now())
        if swept:
            self.logger.info("expired_sessions_swept", count=swept)
        return swept

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input).encode(), sig_b64.encode()):
            self.logger.warning("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self.clock.now().timestamp():
            return None
        return payload
