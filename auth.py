"""
auth.py
Operator authentication (bcrypt hashing, verify, login, change password).

Only accounts with the 'admin' role may sign in to the console.
"""

from __future__ import annotations

import bcrypt

import db
from models import Account
from store import BookingStore

MIN_PASSWORD_LENGTH = 6


def _to_bcrypt_secret(password: str) -> bytes:
    """
    bcrypt only uses the first 72 BYTES of the password.
    We truncate to 72 bytes to avoid ValueError and to make behavior explicit.
    """
    pw = password.encode("utf-8")
    if len(pw) > 72:
        pw = pw[:72]
    return pw


def hash_password(password: str, rounds: int = 12) -> str:
    """
    Returns a bcrypt hash as a UTF-8 string (stored in SQLite).
    """
    secret = _to_bcrypt_secret(password)
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(secret, salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(_to_bcrypt_secret(password), password_hash.encode("utf-8"))


def login(store: BookingStore, email: str, password: str) -> Account | None:
    account = store.get_account_by_email(email.strip().lower())
    if not account or account.role != "admin":
        return None
    if not verify_password(password, account.password_hash):
        return None
    return account


def validate_new_password(new_password: str, confirm: str) -> list[str]:
    errors: list[str] = []
    if len(new_password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if new_password != confirm:
        errors.append("Passwords do not match.")
    return errors


def change_password(store: BookingStore, account_id: int, new_password: str) -> None:
    store.set_password_hash(account_id, hash_password(new_password))
    db.clear_force_password_change(store.db_file)
