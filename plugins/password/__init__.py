"""
Плагин аутентификации по паролю.
"""

from .plugin import PasswordPlugin, PasswordProvider
from .passwords import hash_password, verify_password, validate_password_strength, PasswordPolicy

__all__ = [
    "PasswordPlugin",
    "PasswordProvider",
    "PasswordPolicy",
    "hash_password",
    "verify_password",
    "validate_password_strength",
]
