from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

_B64_PAD = {0: "", 2: "==", 3: "="}

SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LEN = 32
SALT_LEN = 16


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    pad = _B64_PAD[len(value) % 4]
    return base64.urlsafe_b64decode(value + pad)


def hash_password(password: str, *, n: int = SCRYPT_N, r: int = SCRYPT_R, p: int = SCRYPT_P) -> str:
    """Return ``scrypt$n$r$p$salt$key`` for storage."""

    salt = os.urandom(SALT_LEN)
    key = Scrypt(salt=salt, length=KEY_LEN, n=n, r=r, p=p).derive(password.encode("utf-8"))
    return f"scrypt${n}${r}${p}${b64url(salt)}${b64url(key)}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, n, r, p, salt_b64, key_b64 = encoded.split("$")
        if scheme != "scrypt":
            return False
        salt = b64url_decode(salt_b64)
        key = b64url_decode(key_b64)
        kdf = Scrypt(salt=salt, length=len(key), n=int(n), r=int(r), p=int(p))
    except (ValueError, KeyError):
        return False
    try:
        kdf.verify(password.encode("utf-8"), key)
        return True
    except InvalidKey:
        return False


__all__ = ["b64url", "b64url_decode", "hash_password", "verify_password"]
