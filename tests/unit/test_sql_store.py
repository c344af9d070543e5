from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy.exc import OperationalError, ProgrammingError

from call_transcripts.config import Settings
from call_transcripts.errors import InternalError, StoreUnavailable
from call_transcripts.schemas import TranscriptionRecord
from call_transcripts.store import (
    MemoryRecordStore,
    SqlRecordStore,
    _row_to_record,
    build_record_store,
)


class _FailingConnection:
    def __init__(self, error: Exception, recorder: list[str]) -> None:
        self._error = error
        self._recorder = recorder

    def execute(self, statement: Any, params: Any = None) -> None:
        sql = str(statement).strip()
        self._recorder.append(sql)
        if sql.startswith("SET LOCAL"):
            return None
        raise self._error


class _FailingEngine:
    def __init__(self, error: Exception) -> None:
        self.error = error
        self.statements: list[str] = []

    def begin(self) -> "_FailingEngine":
        return self

    def __enter__(self) -> _FailingConnection:
        return _FailingConnection(self.error, self.statements)

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _RowResult:
    def __init__(self, row: dict) -> None:
        self._row = row

    def mappings(self) -> "_RowResult":
        return self

    def first(self) -> dict:
        return self._row


class _RowConnection:
    def __init__(self, row: dict, recorder: list[str]) -> None:
        self._row = row
        self._recorder = recorder

    def execute(self, statement: Any, params: Any = None) -> _RowResult:
        self._recorder.append(str(statement).strip())
        return _RowResult(self._row)


class _FlakyEngine(_FailingEngine):
    def __init__(self, error: Exception, failures: int, row: dict) -> None:
        super().__init__(error)
        self.failures = failures
        self.row = row

    def __enter__(self):
        if self.failures:
            self.failures -= 1
            return _FailingConnection(self.error, self.statements)
        return _RowConnection(self.row, self.statements)


def _timeout_error() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("canceling statement due to statement timeout"))


def _record() -> TranscriptionRecord:
    return TranscriptionRecord(
        call_id="c1",
        participant_id="alice",
        text="hello",
        created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
    )


def test_reads_retry_with_backoff_then_raise_store_unavailable() -> None:
    engine = _FailingEngine(_timeout_error())
    sleeps: list[float] = []
    store = SqlRecordStore(
        engine, timeout_s=2.5, max_attempts=3, retry_backoff_s=0.2, sleep=sleeps.append
    )

    with pytest.raises(StoreUnavailable) as excinfo:
        store.get("c1")

    assert sleeps == pytest.approx([0.2, 0.4])
    assert excinfo.value.context["attempts"] == 3
    assert excinfo.value.context["call_id"] == "c1"
    assert excinfo.value.client_message == "Record store unavailable"
    assert "SET LOCAL statement_timeout = 2500" in engine.statements


def test_patch_is_retried_but_put_is_not() -> None:
    sleeps: list[float] = []
    engine = _FailingEngine(_timeout_error())
    store = SqlRecordStore(engine, max_attempts=2, retry_backoff_s=0.1, sleep=sleeps.append)

    with pytest.raises(StoreUnavailable):
        store.patch("c1", "s3://bucket/c1.wav")
    assert sleeps == pytest.approx([0.1])

    sleeps.clear()
    with pytest.raises(StoreUnavailable) as excinfo:
        store.put(_record())
    assert sleeps == []
    assert excinfo.value.context["attempts"] == 1


def test_non_transient_sql_errors_become_internal_errors() -> None:
    engine = _FailingEngine(ProgrammingError("SELECT", {}, Exception("relation missing")))
    sleeps: list[float] = []
    store = SqlRecordStore(engine, sleep=sleeps.append)

    with pytest.raises(InternalError) as excinfo:
        store.list_all()
    assert sleeps == []
    assert excinfo.value.client_message == "Internal server error"


def test_row_to_record_decodes_json_columns() -> None:
    record = _row_to_record(
        {
            "call_id": "c1",
            "participant_id": "alice",
            "text": "hello",
            "s3_url": None,
            "created_at": datetime(2026, 10, 1, tzinfo=timezone.utc),
            "segments": '[{"speaker_id": "alice", "text": "hello"}]',
            "metadata": None,
            "word_count": 1,
        }
    )
    assert record.segments[0].speaker_id == "alice"
    assert record.metadata == {}


def test_build_record_store_selects_backend() -> None:
    assert isinstance(build_record_store(Settings(record_store_backend="memory")), MemoryRecordStore)
    assert isinstance(
        build_record_store(Settings(record_store_backend="postgres")), SqlRecordStore
    )
    with pytest.raises(ValueError):
        build_record_store(Settings(record_store_backend="golem"))


def test_transient_error_recovers_on_retry(caplog: pytest.LogCaptureFixture) -> None:
    row = _record().model_dump()
    engine = _FlakyEngine(_timeout_error(), failures=1, row=row)
    sleeps: list[float] = []
    store = SqlRecordStore(engine, max_attempts=3, retry_backoff_s=0.5, sleep=sleeps.append)

    with caplog.at_level(logging.WARNING, logger="call_transcripts.store"):
        record = store.get("c1")

    assert record.call_id == "c1"
    assert sleeps == pytest.approx([0.5])
    assert "record_store.retry operation=get attempt=1" in caplog.text


def test_call_window_only_filters_given_bounds() -> None:
    engine = _FailingEngine(ProgrammingError("SELECT", {}, Exception("relation missing")))
    store = SqlRecordStore(engine, sleep=lambda _: None)

    with pytest.raises(InternalError):
        store.list_by_call_window(started_from=datetime(2026, 10, 1, tzinfo=timezone.utc))
    query = engine.statements[-1]
    assert "call_started_at >= :started_from" in query
    assert "call_ended_at" not in query.split("WHERE", 1)[1].split("ORDER BY")[0]
    assert "ORDER BY created_at DESC, call_id DESC" in query
