"""
Audit logging — запись auth событий для аудита.
"""

from typing import Any, Optional, Dict, List
import time
import hashlib
import secrets

from .logger_helper import error

AUTH_AUDIT_LOG_NAMESPACE = "auth_audit_log"


async def audit_log_auth_event(
    storage: Any,
    event_type: str,
    subject: Optional[str],
    details: Optional[Dict[str, Any]] = None,
    success: bool = False,
    logger: Optional[Any] = None,
) -> None:
    """
    Записывает auth событие в audit log.

    Ошибки записи не пробрасываются: аудит не должен ломать аутентификацию.

    Args:
        storage: экземпляр Storage (None - аудит отключён)
        event_type: тип события ("login_success", "login_failure", "token_anomaly", ...)
        subject: идентификатор субъекта (principal id, session id, client id)
        details: дополнительные детали
        success: успешность операции
        logger: логгер для ошибок записи
    """
    if storage is None:
        return
    try:
        safe_subject = str(subject)[:64] if subject else "unknown"

        safe_details: Dict[str, Any] = {}
        if details:
            if isinstance(details, dict):
                safe_details = details
            else:
                safe_details = {"raw_details": str(details)[:500]}

        now = time.time()
        audit_entry = {
            "timestamp": now,
            "event_type": event_type,
            "subject": safe_subject,
            "success": success,
            "details": safe_details,
        }
        subject_hash = hashlib.sha256(safe_subject.encode()).hexdigest()[:16]
        audit_key = f"{int(now * 1000)}_{subject_hash}_{secrets.token_hex(4)}"
        await storage.set(AUTH_AUDIT_LOG_NAMESPACE, audit_key, audit_entry)
    except Exception as e:
        await error(
            logger,
            f"Audit logging error: {e}",
            component="audit",
            event_type=event_type,
            error_type=type(e).__name__,
        )


async def list_audit_events(
    storage: Any,
    event_type: Optional[str] = None,
    subject: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """
    Последние события аудита, новые первыми.

    Args:
        event_type: фильтр по типу события
        subject: фильтр по субъекту
        limit: максимум записей
    """
    keys = sorted(await storage.list_keys(AUTH_AUDIT_LOG_NAMESPACE), reverse=True)
    result: List[Dict[str, Any]] = []
    for key in keys:
        entry = await storage.get(AUTH_AUDIT_LOG_NAMESPACE, key)
        if not entry:
            continue
        if event_type is not None and entry.get("event_type") != event_type:
            continue
        if subject is not None and entry.get("subject") != str(subject)[:64]:
            continue
        result.append(entry)
        if len(result) >= limit:
            break
    return result
