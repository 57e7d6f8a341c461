from __future__ import annotations

import hmac
import hashlib


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    cleaned = signature.strip().removeprefix("sha256=")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, cleaned)


def keys_match(expected: str, provided: str | None) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
