"""
Плагин аутентификации по голосу.
"""

from .plugin import HttpVoiceProcessor, VoicePlugin, VoiceProcessor, VoiceProvider

__all__ = [
    "HttpVoiceProcessor",
    "VoicePlugin",
    "VoiceProcessor",
    "VoiceProvider",
]
