from __future__ import annotations

import structlog

from app.crypto.signing import derive_signing_key, sign_payload, verify_signature
from app.crypto.symmetric import (
    aead_decrypt,
    aead_decrypt_stream,
    aead_encrypt,
    generate_file_key,
    open_with_nonce,
    seal_with_nonce,
)
from app.security.totp import TOTPEngine

logger = structlog.get_logger()

# RFC 6238 appendix B, SHA1 seed "12345678901234567890" at T=59s, last 6 digits
_RFC6238_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
_RFC6238_CODE = "287082"


class SelfTestError(RuntimeError):
    pass


def _check(ok: bool, what: str) -> None:
    if not ok:
        raise SelfTestError(f"crypto selftest failed: {what}")


def run_selftest() -> None:
    # --- file key AES-GCM, one-shot and streaming ---
    material = generate_file_key()
    pt = b'hello encrypted world' * 5000

    ct = aead_encrypt(key=material.key, iv=material.iv, plaintext=pt)
    _check(aead_decrypt(key=material.key, iv=material.iv, ciphertext=ct) == pt, "AES-GCM roundtrip")
    streamed = b"".join(aead_decrypt_stream(key=material.key, iv=material.iv, ciphertext=ct, chunk_size=4096))
    _check(streamed == pt, "AES-GCM streaming roundtrip")

    # --- master-key envelope ---
    blob = seal_with_nonce(material.key, b"secret", aad=b"meta:test")
    _check(open_with_nonce(material.key, blob, aad=b"meta:test") == b"secret", "envelope roundtrip")

    # --- webhook signatures ---
    secret = "whsec_selftest"
    payload = b'{"event":"webhook.test"}'
    header = sign_payload(derive_signing_key(secret), payload, timestamp=1_700_000_000)
    _check(verify_signature(secret, payload, header, now=1_700_000_000), "signature verify")
    _check(not verify_signature(secret, payload + b" ", header, now=1_700_000_000), "signature should fail on modified payload")

    # --- TOTP against the RFC vector ---
    engine = TOTPEngine()
    _check(engine.code_at(_RFC6238_SECRET, 59) == _RFC6238_CODE, "TOTP RFC 6238 vector")
    _check(engine.verify(_RFC6238_SECRET, _RFC6238_CODE, window=0, for_time=59), "TOTP verify")

    logger.info("crypto.selftest.passed")


def main() -> None:
    run_selftest()
    print('OK: crypto selftest passed')


if __name__ == '__main__':
    main()
