"""
Плагин второго фактора (TOTP).
"""

from .plugin import MfaPlugin, TotpProvider, hash_recovery_code

__all__ = [
    "MfaPlugin",
    "TotpProvider",
    "hash_recovery_code",
]
