"""
authcore - плагинный движок аутентификации.
"""

from .audit import audit_log_auth_event, list_audit_events
from .base_plugin import BasePlugin, PluginMetadata
from .config import AuthConfig
from .duration import duration_seconds, expiry_from, parse_duration
from .engine import AuthEngine, HookEvent, LoginResult, VerifyResult
from .errors import (
    AuthError,
    BadSignature,
    ConfigurationError,
    DuplicatePluginError,
    HookFailure,
    MalformedToken,
    PluginCleanupError,
    ProviderConflictError,
    ProviderNotFound,
    ProviderRejected,
    ProviderTimeout,
    RateLimited,
    SessionRevoked,
    StaleRefreshToken,
    TokenAlreadyConsumed,
    TokenError,
    TokenExpired,
    TokenKindMismatch,
    UnknownKeyError,
    ValidationError,
    VerificationRequired,
)
from .event_bus import EventBus
from .key_manager import KeyManager, KeyRing, SigningKey
from .logger import AuthLogger
from .logger_helper import info, warning, error
from .plugin_registry import PluginRegistry
from .providers import AuthOutcome, AuthProvider, ProviderContext, ProviderKind
from .rate_limiter import RateLimiter, RateLimitPolicy, RateLimitResult
from .session_manager import Session, SessionManager, SessionStore, SessionTokens, StorageSessionStore
from .storage import Storage
from .storage_factory import create_storage
from .token_service import TokenKind, TokenService
from .user_service import Principal, StorageUserService, UserService

__all__ = [
    "AuthConfig",
    "AuthEngine",
    "AuthLogger",
    "AuthOutcome",
    "AuthProvider",
    "BasePlugin",
    "EventBus",
    "HookEvent",
    "HookFailure",
    "KeyManager",
    "KeyRing",
    "LoginResult",
    "PluginMetadata",
    "PluginRegistry",
    "Principal",
    "ProviderContext",
    "ProviderKind",
    "RateLimiter",
    "RateLimitPolicy",
    "RateLimitResult",
    "Session",
    "SessionManager",
    "SessionStore",
    "SessionTokens",
    "SigningKey",
    "Storage",
    "StorageSessionStore",
    "StorageUserService",
    "TokenKind",
    "TokenService",
    "UserService",
    "VerifyResult",
    "audit_log_auth_event",
    "list_audit_events",
    "create_storage",
    "duration_seconds",
    "expiry_from",
    "parse_duration",
    "info",
    "warning",
    "error",
    # errors
    "AuthError",
    "BadSignature",
    "ConfigurationError",
    "DuplicatePluginError",
    "MalformedToken",
    "PluginCleanupError",
    "ProviderConflictError",
    "ProviderNotFound",
    "ProviderRejected",
    "ProviderTimeout",
    "RateLimited",
    "SessionRevoked",
    "StaleRefreshToken",
    "TokenAlreadyConsumed",
    "TokenError",
    "TokenExpired",
    "TokenKindMismatch",
    "UnknownKeyError",
    "ValidationError",
    "VerificationRequired",
]
