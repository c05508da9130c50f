"""
Logger Helper - тонкая обёртка для логирования в компонентах authcore.

Компоненты получают логгер опционально (тесты создают их без логгера),
поэтому helper принимает Optional и при отсутствии логгера печатает в stderr.
"""

import sys
from typing import Optional, Any


async def log(logger: Optional[Any], level: str, message: str, **context: Any) -> None:
    """
    Записать лог сообщение через AuthLogger.

    Args:
        logger: экземпляр AuthLogger (если None - fallback на print в stderr)
        level: уровень логирования (debug, info, warning, error)
        message: сообщение
        **context: дополнительный контекст
    """
    level = (level or "info").lower()
    if level not in ("debug", "info", "warning", "error"):
        level = "info"

    if logger is not None:
        try:
            await logger.log(level, message, **context)
            return
        except Exception as e:
            # Сломанный логгер не должен ронять аутентификацию
            print(f"[ERROR] logger failure: {e}", file=sys.stderr)

    # Без логгера debug не печатаем, чтобы не засорять stderr
    if level == "debug":
        return
    log_message = f"[{level.upper()}] {message}"
    if context:
        log_message += f" {context}"
    print(log_message, file=sys.stderr)


async def debug(logger: Optional[Any], message: str, **context: Any) -> None:
    """Логировать debug сообщение."""
    await log(logger, "debug", message, **context)


async def info(logger: Optional[Any], message: str, **context: Any) -> None:
    """Логировать info сообщение."""
    await log(logger, "info", message, **context)


async def warning(logger: Optional[Any], message: str, **context: Any) -> None:
    """Логировать warning сообщение."""
    await log(logger, "warning", message, **context)


async def error(logger: Optional[Any], message: str, **context: Any) -> None:
    """Логировать error сообщение."""
    await log(logger, "error", message, **context)
