"""Record store adapters for transcription records.

Every backend honours the same contract: ``put`` never overwrites, ``patch``
only touches ``s3_url`` and fails on unknown calls, and every list operation
returns records newest first (``created_at`` then ``call_id``, descending) so
repeated reads over the same data come back in the same order.
"""

from __future__ import annotations

import json
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .db import build_engine, fetch_db_info
from .errors import DuplicateKey, InternalError, NotFound, StoreUnavailable
from .logging_utils import get_logger
from .schemas import TranscriptionRecord

T = TypeVar("T")

BACKEND_MEMORY = "memory"
BACKEND_POSTGRES = "postgres"
TRANSIENT_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)

RECORD_COLUMNS = (
    "call_id",
    "participant_id",
    "text",
    "s3_url",
    "created_at",
    "mentor_id",
    "session_id",
    "transcript_txt_url",
    "transcript_vtt_url",
    "segments",
    "word_count",
    "duration_seconds",
    "language",
    "call_started_at",
    "call_ended_at",
    "metadata",
)
JSON_COLUMNS = {"segments", "metadata"}
SELECT_COLUMNS = ", ".join(RECORD_COLUMNS)

logger = get_logger(__name__)


def _ordering_key(record: TranscriptionRecord) -> tuple:
    return (record.created_at, record.call_id)


def _within_window(
    record: TranscriptionRecord,
    started_from: Optional[datetime],
    ended_to: Optional[datetime],
) -> bool:
    if started_from is not None:
        if record.call_started_at is None or record.call_started_at < started_from:
            return False
    if ended_to is not None:
        if record.call_ended_at is None or record.call_ended_at > ended_to:
            return False
    return True


class RecordStore(ABC):
    backend: str = ""

    @abstractmethod
    def put(self, record: TranscriptionRecord) -> TranscriptionRecord:
        """Insert a new record. Raises DuplicateKey if the call already exists."""

    @abstractmethod
    def get(self, call_id: str) -> TranscriptionRecord:
        """Return the record for ``call_id``. Raises NotFound."""

    @abstractmethod
    def patch(self, call_id: str, s3_url: str) -> TranscriptionRecord:
        """Set ``s3_url`` on an existing record and return the result."""

    @abstractmethod
    def list_all(self) -> List[TranscriptionRecord]:
        ...

    @abstractmethod
    def list_by_participant(self, participant_id: str) -> List[TranscriptionRecord]:
        ...

    @abstractmethod
    def list_by_mentor(self, mentor_id: str) -> List[TranscriptionRecord]:
        ...

    @abstractmethod
    def list_by_call_window(
        self,
        started_from: Optional[datetime] = None,
        ended_to: Optional[datetime] = None,
    ) -> List[TranscriptionRecord]:
        """Records whose call started at or after ``started_from`` and ended at
        or before ``ended_to``. Records missing a bounded timestamp never match."""

    def describe(self) -> Dict[str, object]:
        return {"backend": self.backend}


class MemoryRecordStore(RecordStore):
    """In-process store. Writes are serialized per ``call_id``."""

    backend = BACKEND_MEMORY

    def __init__(self) -> None:
        self._records: Dict[str, TranscriptionRecord] = {}
        self._registry_lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, call_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._key_locks.setdefault(call_id, threading.Lock())

    def _existing_lock_for(self, call_id: str) -> Optional[threading.Lock]:
        # Unknown ids never get a lock entry.
        with self._registry_lock:
            if call_id not in self._records:
                return None
            return self._key_locks.setdefault(call_id, threading.Lock())

    def _lookup(self, call_id: str) -> Optional[TranscriptionRecord]:
        with self._registry_lock:
            return self._records.get(call_id)

    def _snapshot(self) -> List[TranscriptionRecord]:
        with self._registry_lock:
            records = list(self._records.values())
        records.sort(key=_ordering_key, reverse=True)
        return [record.model_copy(deep=True) for record in records]

    def put(self, record: TranscriptionRecord) -> TranscriptionRecord:
        with self._lock_for(record.call_id):
            if self._lookup(record.call_id) is not None:
                raise DuplicateKey(record.call_id)
            stored = record.model_copy(deep=True)
            with self._registry_lock:
                self._records[record.call_id] = stored
        return stored.model_copy(deep=True)

    def get(self, call_id: str) -> TranscriptionRecord:
        record = self._lookup(call_id)
        if record is None:
            raise NotFound(call_id)
        return record.model_copy(deep=True)

    def patch(self, call_id: str, s3_url: str) -> TranscriptionRecord:
        lock = self._existing_lock_for(call_id)
        if lock is None:
            raise NotFound(call_id)
        with lock:
            current = self._lookup(call_id)
            if current.s3_url != s3_url:
                current = current.model_copy(update={"s3_url": s3_url})
                with self._registry_lock:
                    self._records[call_id] = current
        return current.model_copy(deep=True)

    def list_all(self) -> List[TranscriptionRecord]:
        return self._snapshot()

    def list_by_participant(self, participant_id: str) -> List[TranscriptionRecord]:
        return [
            record
            for record in self._snapshot()
            if record.participant_id == participant_id
        ]

    def list_by_mentor(self, mentor_id: str) -> List[TranscriptionRecord]:
        return [record for record in self._snapshot() if record.mentor_id == mentor_id]

    def list_by_call_window(
        self,
        started_from: Optional[datetime] = None,
        ended_to: Optional[datetime] = None,
    ) -> List[TranscriptionRecord]:
        return [
            record
            for record in self._snapshot()
            if _within_window(record, started_from, ended_to)
        ]

    def describe(self) -> Dict[str, object]:
        with self._registry_lock:
            size = len(self._records)
        return {"backend": self.backend, "records": size}


def _record_params(record: TranscriptionRecord) -> Dict[str, Any]:
    params = record.model_dump()
    params["segments"] = json.dumps(params["segments"])
    params["metadata"] = json.dumps(params["metadata"])
    return params


def _row_to_record(row: Mapping[str, Any]) -> TranscriptionRecord:
    data = dict(row)
    for column in JSON_COLUMNS:
        value = data.get(column)
        if isinstance(value, str):
            data[column] = json.loads(value)
    data["segments"] = data.get("segments") or []
    data["metadata"] = data.get("metadata") or {}
    return TranscriptionRecord.model_validate(data)


class SqlRecordStore(RecordStore):
    """PostgreSQL-backed store.

    ``patch`` is a single-row ``UPDATE``, so PostgreSQL's row lock serializes
    concurrent patches to the same call. Reads and patches are retried on
    transient connectivity errors; inserts are not, because a lost commit
    acknowledgement would come back as a false duplicate.
    """

    backend = BACKEND_POSTGRES

    def __init__(
        self,
        engine: Engine,
        *,
        timeout_s: float = 5.0,
        max_attempts: int = 3,
        retry_backoff_s: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._timeout_ms = max(1, int(timeout_s * 1000))
        self._max_attempts = max(1, int(max_attempts))
        self._retry_backoff_s = max(0.0, float(retry_backoff_s))
        self._sleep = sleep

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        with self._engine.begin() as conn:
            conn.execute(text(f"SET LOCAL statement_timeout = {self._timeout_ms}"))
            yield conn

    def _log_retry(self, operation: str) -> Callable[[RetryCallState], None]:
        def _before_sleep(retry_state: RetryCallState) -> None:
            logger.warning(
                "record_store.retry operation=%s attempt=%s delay_s=%.2f error=%s",
                operation,
                retry_state.attempt_number,
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
                str(retry_state.outcome.exception()) if retry_state.outcome else "",
            )

        return _before_sleep

    def _execute(self, fn: Callable[[Connection], T]) -> T:
        with self._transaction() as conn:
            return fn(conn)

    def _run(
        self,
        operation: str,
        fn: Callable[[Connection], T],
        *,
        retry: bool = True,
        **context: Any,
    ) -> T:
        attempts = self._max_attempts if retry else 1
        retrying = Retrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            wait=wait_exponential(multiplier=self._retry_backoff_s),
            stop=stop_after_attempt(attempts),
            sleep=self._sleep,
            before_sleep=self._log_retry(operation),
            reraise=True,
        )
        try:
            return retrying(self._execute, fn)
        except TRANSIENT_ERRORS as exc:
            logger.error(
                "record_store.unavailable operation=%s attempts=%s error=%s",
                operation,
                attempts,
                str(exc),
            )
            raise StoreUnavailable(
                f"record store {operation} failed: {exc}",
                operation=operation,
                attempts=attempts,
                **context,
            ) from exc
        except SQLAlchemyError as exc:
            logger.exception(
                "record_store.failed operation=%s error=%s", operation, str(exc)
            )
            raise InternalError(
                f"record store {operation} failed: {exc}",
                operation=operation,
                **context,
            ) from exc

    def put(self, record: TranscriptionRecord) -> TranscriptionRecord:
        placeholders = ", ".join(
            f"CAST(:{column} AS jsonb)" if column in JSON_COLUMNS else f":{column}"
            for column in RECORD_COLUMNS
        )

        def _insert(conn: Connection) -> Optional[Mapping[str, Any]]:
            return conn.execute(
                text(
                    f"""
                    INSERT INTO transcriptions ({SELECT_COLUMNS})
                    VALUES ({placeholders})
                    ON CONFLICT (call_id) DO NOTHING
                    RETURNING {SELECT_COLUMNS}
                    """
                ),
                _record_params(record),
            ).mappings().first()

        row = self._run("put", _insert, retry=False, call_id=record.call_id)
        if row is None:
            raise DuplicateKey(record.call_id)
        return _row_to_record(row)

    def get(self, call_id: str) -> TranscriptionRecord:
        def _select(conn: Connection) -> Optional[Mapping[str, Any]]:
            return conn.execute(
                text(
                    f"SELECT {SELECT_COLUMNS} FROM transcriptions WHERE call_id = :call_id"
                ),
                {"call_id": call_id},
            ).mappings().first()

        row = self._run("get", _select, call_id=call_id)
        if row is None:
            raise NotFound(call_id)
        return _row_to_record(row)

    def patch(self, call_id: str, s3_url: str) -> TranscriptionRecord:
        def _update(conn: Connection) -> Optional[Mapping[str, Any]]:
            return conn.execute(
                text(
                    f"""
                    UPDATE transcriptions
                    SET s3_url = :s3_url
                    WHERE call_id = :call_id
                    RETURNING {SELECT_COLUMNS}
                    """
                ),
                {"call_id": call_id, "s3_url": s3_url},
            ).mappings().first()

        row = self._run("patch", _update, call_id=call_id)
        if row is None:
            raise NotFound(call_id)
        return _row_to_record(row)

    def list_all(self) -> List[TranscriptionRecord]:
        def _select(conn: Connection) -> List[Mapping[str, Any]]:
            return conn.execute(
                text(
                    f"""
                    SELECT {SELECT_COLUMNS}
                    FROM transcriptions
                    ORDER BY created_at DESC, call_id DESC
                    """
                )
            ).mappings().all()

        return [_row_to_record(row) for row in self._run("list_all", _select)]

    def list_by_participant(self, participant_id: str) -> List[TranscriptionRecord]:
        def _select(conn: Connection) -> List[Mapping[str, Any]]:
            return conn.execute(
                text(
                    f"""
                    SELECT {SELECT_COLUMNS}
                    FROM transcriptions
                    WHERE participant_id = :participant_id
                    ORDER BY created_at DESC, call_id DESC
                    """
                ),
                {"participant_id": participant_id},
            ).mappings().all()

        rows = self._run(
            "list_by_participant", _select, participant_id=participant_id
        )
        return [_row_to_record(row) for row in rows]

    def list_by_mentor(self, mentor_id: str) -> List[TranscriptionRecord]:
        def _select(conn: Connection) -> List[Mapping[str, Any]]:
            return conn.execute(
                text(
                    f"""
                    SELECT {SELECT_COLUMNS}
                    FROM transcriptions
                    WHERE mentor_id = :mentor_id
                    ORDER BY created_at DESC, call_id DESC
                    """
                ),
                {"mentor_id": mentor_id},
            ).mappings().all()

        rows = self._run("list_by_mentor", _select, mentor_id=mentor_id)
        return [_row_to_record(row) for row in rows]

    def list_by_call_window(
        self,
        started_from: Optional[datetime] = None,
        ended_to: Optional[datetime] = None,
    ) -> List[TranscriptionRecord]:
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        if started_from is not None:
            clauses.append("call_started_at >= :started_from")
            params["started_from"] = started_from
        if ended_to is not None:
            clauses.append("call_ended_at <= :ended_to")
            params["ended_to"] = ended_to
        where_sql = " AND ".join(clauses) if clauses else "TRUE"

        def _select(conn: Connection) -> List[Mapping[str, Any]]:
            return conn.execute(
                text(
                    f"""
                    SELECT {SELECT_COLUMNS}
                    FROM transcriptions
                    WHERE {where_sql}
                    ORDER BY created_at DESC, call_id DESC
                    """
                ),
                params,
            ).mappings().all()

        rows = self._run(
            "list_by_call_window",
            _select,
            started_from=started_from,
            ended_to=ended_to,
        )
        return [_row_to_record(row) for row in rows]

    def describe(self) -> Dict[str, object]:
        return {
            "backend": self.backend,
            "db": self._run("describe", fetch_db_info, retry=False),
        }


def build_record_store(config: Settings) -> RecordStore:
    backend = config.record_store_backend.strip().lower()
    if backend == BACKEND_MEMORY:
        return MemoryRecordStore()
    if backend == BACKEND_POSTGRES:
        return SqlRecordStore(
            build_engine(config),
            timeout_s=config.store_timeout_s,
            max_attempts=config.store_max_attempts,
            retry_backoff_s=config.store_retry_backoff_s,
        )
    raise ValueError(f"unsupported record store backend: {config.record_store_backend}")
