"""Tests for the durable security answer stores."""

import contextlib
import os
import stat
from datetime import datetime, timezone
from unittest.mock import MagicMock

import psycopg
import pytest

from idportal.service.errors import AnswerStoreUnavailable
from idportal.service.runtime import reset_runtime_for_tests
from idportal.storage.answers import FileAnswerStore
from idportal.storage.models import SecurityAnswer
from idportal.storage.postgres import PostgresAnswerStore

ANSWER = SecurityAnswer(uid="bob", question_id=2, answer_hash="$argon2id$x")


class TestFileAnswerStore:
    async def test_answers_survive_restart(self, tmp_path):
        path = tmp_path / "answers.json"
        await FileAnswerStore(path).save_answer(ANSWER)
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

        stored = await FileAnswerStore(path).get_answer("bob")
        assert (stored.uid, stored.question_id, stored.answer_hash) == ("bob", 2, "$argon2id$x")

    async def test_sees_writes_from_other_workers(self, tmp_path):
        path = tmp_path / "answers.json"
        reader = FileAnswerStore(path)
        writer = FileAnswerStore(path)
        assert await reader.get_answer("bob") is None

        await writer.save_answer(ANSWER)
        assert (await reader.get_answer("bob")).question_id == 2

    async def test_delete(self, tmp_path):
        store = FileAnswerStore(tmp_path / "answers.json")
        await store.save_answer(ANSWER)
        await store.delete_answer("bob")
        assert await FileAnswerStore(tmp_path / "answers.json").get_answer("bob") is None
        # Deleting a missing answer is a no-op
        await store.delete_answer("nobody")

    def test_damaged_file_refuses_to_load(self, tmp_path):
        path = tmp_path / "answers.json"
        path.write_text("{not json")
        with pytest.raises(RuntimeError):
            FileAnswerStore(path)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


@pytest.fixture
def conn():
    return MagicMock()


@pytest.fixture
def pg_store(conn):
    store: PostgresAnswerStore = PostgresAnswerStore.__new__(PostgresAnswerStore)
    store.dsn = "postgresql://localhost/idportal"
    store.pool = FakePool(conn)
    return store


class TestPostgresAnswerStore:
    async def test_get_answer(self, pg_store, conn):
        created = datetime(2024, 1, 2, tzinfo=timezone.utc)
        conn.execute.return_value.fetchone.return_value = {
            "uid": "bob",
            "question_id": 3,
            "answer_hash": "$argon2id$y",
            "created_at": created,
        }
        stored = await pg_store.get_answer("bob")
        assert (stored.question_id, stored.answer_hash, stored.created_at) == (
            3,
            "$argon2id$y",
            created,
        )
        assert conn.execute.call_args.args[1] == ("bob",)

    async def test_missing_answer(self, pg_store, conn):
        conn.execute.return_value.fetchone.return_value = None
        assert await pg_store.get_answer("bob") is None

    async def test_save_upserts(self, pg_store, conn):
        await pg_store.save_answer(ANSWER)
        sql, params = conn.execute.call_args.args
        assert "ON CONFLICT (uid) DO UPDATE" in sql
        assert params[:3] == ("bob", 2, "$argon2id$x")

    async def test_database_errors_are_unavailable(self, pg_store, conn):
        conn.execute.side_effect = psycopg.OperationalError("connection refused")
        with pytest.raises(AnswerStoreUnavailable):
            await pg_store.get_answer("bob")
        with pytest.raises(AnswerStoreUnavailable):
            await pg_store.delete_answer("bob")

    def test_schema_is_created(self, pg_store, conn):
        pg_store._ensure_schema()
        assert "CREATE TABLE IF NOT EXISTS security_answer" in conn.execute.call_args.args[0]


def test_directory_deployments_keep_answers_on_disk(monkeypatch, tmp_path):
    monkeypatch.setenv("USE_MEMORY_BACKEND", "false")
    monkeypatch.setenv("STATE_DIR", str(tmp_path))
    runtime = reset_runtime_for_tests()
    assert isinstance(runtime.answers, FileAnswerStore)
    assert runtime.answers.path == tmp_path / "security_answers.json"
