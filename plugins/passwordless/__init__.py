"""
Плагин входа по одноразовому коду.
"""

from .plugin import PasswordlessPlugin, PasswordlessProvider

__all__ = [
    "PasswordlessPlugin",
    "PasswordlessProvider",
]
