from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from idportal.logging import get_logger
from idportal.service.errors import AnswerStoreUnavailable
from idportal.storage.models import SecurityAnswer

logger = get_logger(__name__)


class PostgresAnswerStore:
    """Security answers in Postgres, shared by every portal host."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 5) -> None:
        self.dsn = dsn
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``security_answer`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS security_answer (
                    uid TEXT PRIMARY KEY,
                    question_id INTEGER NOT NULL,
                    answer_hash TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    async def _run(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except psycopg.Error as exc:
            logger.error(
                "answer_store_error",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise AnswerStoreUnavailable() from exc

    def _get(self, uid: str) -> Optional[SecurityAnswer]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT uid, question_id, answer_hash, created_at "
                "FROM security_answer WHERE uid = %s",
                (uid,),
            ).fetchone()
        if not row:
            return None
        return SecurityAnswer(
            uid=row["uid"],
            question_id=int(row["question_id"]),
            answer_hash=row["answer_hash"],
            created_at=row["created_at"],
        )

    def _save(self, answer: SecurityAnswer) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_answer (uid, question_id, answer_hash, created_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (uid) DO UPDATE SET
                    question_id = EXCLUDED.question_id,
                    answer_hash = EXCLUDED.answer_hash,
                    created_at = EXCLUDED.created_at
                """,
                (answer.uid, answer.question_id, answer.answer_hash, answer.created_at),
            )

    def _delete(self, uid: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM security_answer WHERE uid = %s", (uid,))

    async def get_answer(self, uid: str) -> Optional[SecurityAnswer]:
        return await self._run("get_answer", self._get, uid)

    async def save_answer(self, answer: SecurityAnswer) -> None:
        await self._run("save_answer", self._save, answer)

    async def delete_answer(self, uid: str) -> None:
        await self._run("delete_answer", self._delete, uid)

    async def close(self) -> None:
        await asyncio.to_thread(self.pool.close)
