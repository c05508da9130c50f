"""
Плагин входа через OAuth 2.0.
"""

from .plugin import OAuthConfig, OAuthPlugin, OAuthProvider, PRESETS

__all__ = [
    "OAuthConfig",
    "OAuthPlugin",
    "OAuthProvider",
    "PRESETS",
]
