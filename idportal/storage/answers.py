"""Durable storage for security-question answers.

Answers are the second factor for users without an OTP token, so they never
live in the marker cache: losing one would let a password alone enrol a new
answer. Only the argon2 hash of an answer is ever stored.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from idportal.logging import get_logger
from idportal.storage.models import SecurityAnswer

logger = get_logger(__name__)


class AnswerStore(Protocol):
    async def get_answer(self, uid: str) -> Optional[SecurityAnswer]: ...

    async def save_answer(self, answer: SecurityAnswer) -> None: ...

    async def delete_answer(self, uid: str) -> None: ...

    async def close(self) -> None: ...


class FileAnswerStore:
    """Security answers persisted as JSON under the state directory.

    Every write replaces the file through a temp file and an atomic rename.
    Reads pick up writes made by other worker processes on the same host; use
    ``PostgresAnswerStore`` when portal hosts do not share a filesystem.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.answers: Dict[str, SecurityAnswer] = {}
        self._lock = threading.Lock()
        self._loaded_stamp: Optional[tuple] = None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._refresh()

    def _stamp(self) -> tuple:
        # Every write renames a fresh file into place, so the inode changes too
        stat = self.path.stat()
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def _refresh(self) -> None:
        try:
            stamp = self._stamp()
        except FileNotFoundError:
            self.answers = {}
            self._loaded_stamp = None
            return
        if stamp == self._loaded_stamp:
            return
        try:
            data = json.loads(self.path.read_text())
            answers = {
                entry["uid"]: SecurityAnswer.from_dict(entry)
                for entry in data.get("answers", [])
            }
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            # Treating a damaged file as empty would let anyone re-enrol
            logger.error("security_answers_unreadable", path=str(self.path), error=str(exc))
            raise RuntimeError(f"unreadable security answer file {self.path}") from exc
        self.answers = answers
        self._loaded_stamp = stamp

    def _persist(self) -> None:
        state = {"answers": [answer.to_dict() for answer in self.answers.values()]}
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".answers_", suffix=".tmp"
            )
            try:
                os.write(fd, json.dumps(state, indent=2).encode("utf-8"))
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(self.path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("security_answers_persist_failed", path=str(self.path), error=str(exc))
            raise RuntimeError(f"failed to persist security answers: {exc}") from exc
        self._loaded_stamp = self._stamp()

    async def get_answer(self, uid: str) -> Optional[SecurityAnswer]:
        with self._lock:
            self._refresh()
            return self.answers.get(uid)

    async def save_answer(self, answer: SecurityAnswer) -> None:
        with self._lock:
            self._refresh()
            self.answers[answer.uid] = answer
            self._persist()

    async def delete_answer(self, uid: str) -> None:
        with self._lock:
            self._refresh()
            if self.answers.pop(uid, None) is not None:
                self._persist()

    async def close(self) -> None:
        return None
