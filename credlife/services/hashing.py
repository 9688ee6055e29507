"""One-way representations of issued secrets.

Every digest is bound to the purpose it was issued for, and to the owning
identity whenever that identity is known at validation time, so a secret
accepted in one flow can never be replayed into another.
"""
import hashlib
import hmac
from typing import Optional

import bcrypt

from credlife.config import settings


def _bound_message(secret: str, purpose: str, identity_id: Optional[int]) -> bytes:
    identity = "" if identity_id is None else str(identity_id)
    return f"{purpose}\x1f{identity}\x1f{secret}".encode("utf-8")


def hash_secret(
    secret: str,
    purpose: str,
    identity_id: Optional[int] = None,
    *,
    key: Optional[str] = None,
) -> str:
    pepper = (settings.credential_hash_key if key is None else key).encode("utf-8")
    message = _bound_message(secret, purpose, identity_id)
    return hmac.new(pepper, message, hashlib.sha256).hexdigest()


def hash_recovery_code(code: str, identity_id: int, *, rounds: Optional[int] = None) -> str:
    # bcrypt truncates input at 72 bytes; the bound digest is 64.
    prehashed = hash_secret(code, "recovery_code", identity_id).encode("ascii")
    salt = bcrypt.gensalt(rounds=rounds or settings.recovery_code_bcrypt_rounds)
    return bcrypt.hashpw(prehashed, salt).decode("utf-8")


def verify_recovery_code(code: str, identity_id: int, stored_hash: str) -> bool:
    prehashed = hash_secret(code, "recovery_code", identity_id).encode("ascii")
    try:
        return bcrypt.checkpw(prehashed, stored_hash.encode("utf-8"))
    except ValueError:
        return False


def hash_password(password: str, *, rounds: Optional[int] = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or settings.password_bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        return False
