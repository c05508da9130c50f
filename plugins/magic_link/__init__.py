"""
Плагин входа по magic link.
"""

from .plugin import MagicLinkPlugin, MagicLinkProvider

__all__ = [
    "MagicLinkPlugin",
    "MagicLinkProvider",
]
