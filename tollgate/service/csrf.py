"""Double-submit CSRF tokens.

A random secret lives in an http-only cookie. Tokens handed to the client
are ``<salt>-<digest>`` where the digest binds the salt to the secret, so a
token is only valid next to the cookie it was minted for. Many tokens can be
minted per secret.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import string
from typing import Iterable, Optional
from urllib.parse import urlsplit

SECRET_BYTES = 18
SALT_LENGTH = 8
_SALT_ALPHABET = string.ascii_letters + string.digits


def _digest(salt: str, secret: str) -> str:
    raw = hashlib.sha256(f"{salt}-{secret}".encode("utf-8")).digest()
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def create_secret() -> str:
    return secrets.token_urlsafe(SECRET_BYTES)


def create_token(secret: str) -> str:
    salt = "".join(secrets.choice(_SALT_ALPHABET) for _ in range(SALT_LENGTH))
    return f"{salt}-{_digest(salt, secret)}"


def verify_token(secret: Optional[str], token: Optional[str]) -> bool:
    if not secret or not token or not isinstance(token, str):
        return False
    salt, sep, digest = token.partition("-")
    if not sep or len(salt) != SALT_LENGTH or not digest:
        return False
    return hmac.compare_digest(digest.encode("ascii", "replace"), _digest(salt, secret).encode("ascii"))


def request_origin(origin: Optional[str], referer: Optional[str]) -> Optional[str]:
    """``scheme://host[:port]`` the request claims to come from, if any."""
    if origin and origin != "null":
        return origin.rstrip("/")
    if referer:
        parts = urlsplit(referer)
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
    return None


def origin_allowed(origin: Optional[str], referer: Optional[str], allowed: Iterable[str]) -> bool:
    allowed_set = set(allowed)
    if origin and origin.rstrip("/") in allowed_set:
        return True
    claimed = request_origin(None, referer)
    return bool(claimed and claimed in allowed_set)
