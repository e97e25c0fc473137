# backend/app/security/totp.py
"""
RFC 6238 TOTP: HMAC-SHA1, 6 digits, 30-second steps.

verify() checks every step in the window with a constant-time compare and
only then combines the results, so the time taken does not depend on
which step (if any) matched.
"""
from __future__ import annotations

import hmac
import time
from typing import Optional
from urllib.parse import quote

import pyotp

from app.core.config import Settings, get_settings

DIGITS = 6
INTERVAL = 30
ALGORITHM = "SHA1"


class TOTPEngine:
    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.issuer = settings.TOTP_ISSUER
        self.default_window = settings.TOTP_VALID_WINDOW
        self.max_window = settings.TOTP_MAX_WINDOW
        self.qr_endpoint = settings.QR_CODE_ENDPOINT

    def new_secret(self) -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account_label: str, issuer: Optional[str] = None) -> str:
        totp = pyotp.TOTP(secret, digits=DIGITS, interval=INTERVAL)
        uri = totp.provisioning_uri(name=account_label, issuer_name=issuer or self.issuer)
        # pyotp omits defaults; authenticator apps are happier with them spelled out
        return f"{uri}&algorithm={ALGORITHM}&digits={DIGITS}&period={INTERVAL}"

    def qr_code_url(self, uri: str) -> str:
        return f"{self.qr_endpoint}{quote(uri, safe='')}"

    def code_at(self, secret: str, for_time: float) -> str:
        return pyotp.TOTP(secret, digits=DIGITS, interval=INTERVAL).at(int(for_time))

    def verify(
        self,
        secret: str,
        code: str,
        window: Optional[int] = None,
        for_time: Optional[float] = None,
    ) -> bool:
        if window is None:
            window = self.default_window
        window = max(0, min(window, self.max_window))

        if not secret or not isinstance(code, str):
            return False
        code = code.strip().replace(" ", "")
        if len(code) != DIGITS or not code.isdigit():
            return False

        try:
            totp = pyotp.TOTP(secret, digits=DIGITS, interval=INTERVAL)
            now = int(time.time() if for_time is None else for_time)
            candidates = [totp.at(now, offset) for offset in range(-window, window + 1)]
        except (ValueError, TypeError):
            # not valid base32
            return False

        matched = False
        for candidate in candidates:
            matched |= hmac.compare_digest(candidate, code)
        return matched
