from __future__ import annotations

import asyncio
import base64
import hashlib
from dataclasses import dataclass
from typing import Optional

import pyotp
from cryptography.fernet import Fernet, InvalidToken

from riskgate.config import Settings
from riskgate.logging import get_logger
from riskgate.service.errors import not_found, validation_error
from riskgate.storage.common import IdentityStore

logger = get_logger(__name__)

# accept the previous and next 30s step to absorb clock drift
TOTP_VALID_WINDOW = 1


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    provisioning_uri: str


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class TwoFactorService:
    """TOTP enrollment for a user: DISABLED -> SECRET_GENERATED -> ENABLED.

    A generated secret is stored encrypted with ``totp_enabled=False`` until the
    user proves possession with a valid code; ``disable`` returns to DISABLED
    from any state.
    """

    def __init__(self, store: IdentityStore, settings: Settings) -> None:
        self.store = store
        self.issuer = settings.totp_issuer
        material = settings.totp_encryption_key or settings.secret_key
        if not material:
            raise RuntimeError("TOTP encryption key material is not configured")
        self._cipher = Fernet(_derive_cipher_key(material))

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, stored: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(stored.encode()).decode()
        except InvalidToken:
            logger.warning("totp_secret_decrypt_failed")
            return None

    @staticmethod
    def _verify(secret: str, code: Optional[str]) -> bool:
        if not code or not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(code, valid_window=TOTP_VALID_WINDOW)

    async def generate(self, user_id: str) -> TotpEnrollment:
        user = self.store.get_user(user_id)
        if not user:
            raise not_found("User not found")
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=self.issuer)
        # a fresh secret is unproven, so any earlier enrollment is switched off
        self.store.set_totp(user_id, self._encrypt(secret), enabled=False)
        logger.info("totp_secret_generated", user_id=user_id)
        return TotpEnrollment(secret=secret, provisioning_uri=uri)

    async def enable(self, user_id: str, code: str) -> None:
        user = self.store.get_user(user_id)
        secret = self._decrypt(user.totp_secret) if user and user.totp_secret else None
        if not secret:
            raise validation_error("2FA setup not initiated")
        valid = await asyncio.to_thread(self._verify, secret, code)
        if not valid:
            logger.warning("totp_enable_code_rejected", user_id=user_id)
            raise validation_error("Invalid TOTP token")
        self.store.set_totp(user_id, user.totp_secret, enabled=True)
        logger.info("totp_enabled", user_id=user_id)

    async def disable(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise not_found("User not found")
        self.store.set_totp(user_id, None, enabled=False)
        logger.info("totp_disabled", user_id=user_id, was_enabled=user.totp_enabled)

    async def verify_during_login(self, stored_secret: Optional[str], code: Optional[str]) -> bool:
        """Check a login-time code; callers turn ``False`` into a generic 401."""

        secret = self._decrypt(stored_secret) if stored_secret else None
        if not secret:
            return False
        return await asyncio.to_thread(self._verify, secret, code)
