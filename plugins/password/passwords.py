"""
Password management — хеширование и валидация паролей.
"""

import base64
import hashlib
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

import bcrypt

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
DEFAULT_BCRYPT_ROUNDS = 12


@dataclass(frozen=True)
class PasswordPolicy:
    """Политика сложности пароля."""

    min_length: int = MIN_PASSWORD_LENGTH
    max_length: int = MAX_PASSWORD_LENGTH
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special_char: bool = False


def _prepare(password: str) -> bytes:
    # bcrypt учитывает только первые 72 байта
    digest = hashlib.sha256(password.encode("utf-8")).digest()
    return base64.b64encode(digest)


def hash_password(password: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """
    Хеширует пароль используя bcrypt.

    Args:
        password: пароль в открытом виде
        rounds: cost factor bcrypt (4..31)

    Returns:
        Хешированный пароль (строка)
    """
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(_prepare(password), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Проверяет пароль против хеша.

    Returns:
        True если пароль совпадает, False если нет или хеш повреждён
    """
    try:
        return bcrypt.checkpw(_prepare(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=None)
def dummy_hash(rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Хеш для сравнения при неизвестном идентификаторе (одинаковое время ответа)."""
    return hash_password("dummy-password-for-timing", rounds)


def validate_password_strength(
    password: str, policy: Optional[PasswordPolicy] = None
) -> Tuple[bool, Optional[str]]:
    """
    Валидирует силу пароля согласно политике.

    Returns:
        (is_valid, error_message) - True если валиден, иначе False с сообщением об ошибке
    """
    policy = policy or PasswordPolicy()
    if not isinstance(password, str):
        return False, "Password must be a string"

    if len(password) < policy.min_length:
        return False, f"Password must be at least {policy.min_length} characters long"

    if len(password) > policy.max_length:
        return False, f"Password must be at most {policy.max_length} characters long"

    if policy.require_uppercase and not re.search(r"[A-Z]", password):
        return False, "Password must contain at least one uppercase letter"

    if policy.require_lowercase and not re.search(r"[a-z]", password):
        return False, "Password must contain at least one lowercase letter"

    if policy.require_digit and not re.search(r"\d", password):
        return False, "Password must contain at least one digit"

    # любой символ кроме латинских букв и цифр считается спецсимволом
    if policy.require_special_char and not re.search(r"[^A-Za-z0-9]", password):
        return False, "Password must contain at least one special character"

    return True, None
