"""
AuthLogger — логгер компонентов authcore.

Использует уровни стандартного модуля `logging`, выводит в stdout.
Не трогает root logger и глобальную конфигурацию logging.

Форматы:
- text (по умолчанию): [LEVEL] [component] message (k=v ...)
- json: одна строка JSON на событие (для ELK / Loki)
"""

import os
import sys
import json
import logging
from typing import Any, Optional, TextIO

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class AuthLogger:
    """
    Логгер с фильтрацией по уровню и двумя форматами вывода.

    Args:
        level: минимальный уровень ("DEBUG", "INFO", ...). По умолчанию LOG_LEVEL или INFO
        log_format: "text" | "json". По умолчанию AUTH_LOG_FORMAT / LOG_FORMAT или text
        stream: куда писать (по умолчанию sys.stdout)
    """

    def __init__(
        self,
        level: Optional[str] = None,
        log_format: Optional[str] = None,
        stream: Optional[TextIO] = None,
    ):
        level_str = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
        self._log_level = getattr(logging, level_str, logging.INFO)
        if not isinstance(self._log_level, int):
            self._log_level = logging.INFO

        fmt = log_format or os.getenv("AUTH_LOG_FORMAT") or os.getenv("LOG_FORMAT") or "text"
        self._log_format = fmt.lower()
        if self._log_format not in ("text", "json"):
            self._log_format = "text"
        self._stream = stream

    @property
    def level(self) -> int:
        return self._log_level

    def is_enabled_for(self, level: str) -> bool:
        return LEVELS.get(level, logging.INFO) >= self._log_level

    async def log(self, level: str, message: str, **context: Any) -> None:
        """
        Записать сообщение.

        Args:
            level: уровень логирования (debug, info, warning, error)
            message: сообщение
            **context: контекст; `component` выводится отдельно
        """
        lvl = (level or "").lower()
        if lvl not in LEVELS:
            lvl = "info"
        if not self.is_enabled_for(lvl):
            return

        stream = self._stream or sys.stdout
        component = context.pop("component", None)

        if self._log_format == "json":
            event: dict[str, Any] = {"level": lvl.upper(), "message": message}
            if component:
                event["component"] = component
            safe_ctx: dict[str, Any] = {}
            for k, v in context.items():
                if isinstance(v, (str, int, float, bool, type(None), dict, list)):
                    safe_ctx[k] = v
                else:
                    safe_ctx[k] = str(v)
            if safe_ctx:
                event["context"] = safe_ctx
            print(json.dumps(event, ensure_ascii=False, default=str), file=stream, flush=True)
            return

        parts = [f"[{lvl.upper()}]"]
        if component:
            parts.append(f"[{component}]")
        parts.append(message)
        important_context = {
            k: v for k, v in context.items()
            if isinstance(v, (str, int, float, bool, type(None)))
        }
        if important_context:
            parts.append("(" + " ".join(f"{k}={v}" for k, v in important_context.items()) + ")")
        print(" ".join(parts), file=stream, flush=True)
