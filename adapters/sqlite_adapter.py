"""
SQLite адаптер для Storage API.

Одна таблица: namespace | key | value (JSON as TEXT).
Для authcore этого достаточно: пользователи, сессии, ключи подписи
и использованные nonce хранятся как JSON-документы.
"""

import json
import sqlite3
import sys
from pathlib import Path
from typing import Any, Optional
import asyncio

from .storage_adapter import StorageAdapter


class SQLiteAdapter(StorageAdapter):
    """SQLite адаптер для key-value хранилища с namespace.

    Все блокирующие операции выполняются в threadpool через `asyncio.to_thread`.
    Схема создаётся явным вызовом `initialize_schema()`.
    """

    def __init__(self, db_path: str = "data/auth.db"):
        """
        Args:
            db_path: путь к файлу базы данных (или ':memory:' для in-memory БД)
        """
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        # check_same_thread=False: соединение используется из threadpool
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        return self._conn

    def _commit(self, conn: sqlite3.Connection) -> None:
        try:
            conn.commit()
        except sqlite3.OperationalError as e:
            # "cannot commit - no transaction is active"
            if "transaction" not in str(e).lower():
                raise

    def _create_schema_sync(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS storage (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (namespace, key)
            )
        """)
        conn.commit()

    async def initialize_schema(self) -> None:
        """Создать директорию (для файловой БД) и таблицу storage."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self._create_schema_sync)

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        def _get_sync(ns: str, k: str):
            conn = self._get_connection()
            row = conn.execute(
                "SELECT value FROM storage WHERE namespace = ? AND key = ?",
                (ns, k),
            ).fetchone()
            if row is None or not isinstance(row[0], (str, bytes, bytearray)):
                return None
            try:
                return json.loads(row[0])
            except (json.JSONDecodeError, ValueError, TypeError) as e:
                print(
                    f"[SQLiteAdapter] Ошибка парсинга JSON для {ns}.{k}: {e}",
                    file=sys.stderr
                )
                return None

        return await asyncio.to_thread(_get_sync, namespace, key)

    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        def _set_sync(ns: str, k: str, v: dict[str, Any]):
            conn = self._get_connection()
            conn.execute(
                "INSERT OR REPLACE INTO storage (namespace, key, value) VALUES (?, ?, ?)",
                (ns, k, json.dumps(v, ensure_ascii=False)),
            )
            self._commit(conn)

        await asyncio.to_thread(_set_sync, namespace, key, value)

    async def set_if_absent(self, namespace: str, key: str, value: dict[str, Any]) -> bool:
        def _insert_sync(ns: str, k: str, v: dict[str, Any]) -> bool:
            conn = self._get_connection()
            cursor = conn.execute(
                "INSERT OR IGNORE INTO storage (namespace, key, value) VALUES (?, ?, ?)",
                (ns, k, json.dumps(v, ensure_ascii=False)),
            )
            self._commit(conn)
            return cursor.rowcount > 0

        return await asyncio.to_thread(_insert_sync, namespace, key, value)

    async def delete(self, namespace: str, key: str) -> bool:
        def _delete_sync(ns: str, k: str) -> bool:
            conn = self._get_connection()
            cursor = conn.execute(
                "DELETE FROM storage WHERE namespace = ? AND key = ?",
                (ns, k),
            )
            self._commit(conn)
            return cursor.rowcount > 0

        return await asyncio.to_thread(_delete_sync, namespace, key)

    async def list_keys(self, namespace: str) -> list[str]:
        def _list_keys_sync(ns: str):
            conn = self._get_connection()
            cursor = conn.execute("SELECT key FROM storage WHERE namespace = ?", (ns,))
            return [row[0] for row in cursor.fetchall()]

        return await asyncio.to_thread(_list_keys_sync, namespace)

    async def clear_namespace(self, namespace: str) -> None:
        def _clear_sync(ns: str):
            conn = self._get_connection()
            conn.execute("DELETE FROM storage WHERE namespace = ?", (ns,))
            self._commit(conn)

        await asyncio.to_thread(_clear_sync, namespace)

    async def close(self) -> None:
        def _close_sync():
            if self._conn:
                try:
                    self._conn.close()
                finally:
                    self._conn = None

        await asyncio.to_thread(_close_sync)
