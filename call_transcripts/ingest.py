from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from .logging_utils import get_logger
from .schemas import IngestionRequest, TranscriptionRecord, parse_payload
from .store import RecordStore

WORD_RE = re.compile(r"\S+")

logger = get_logger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def count_words(text: str) -> int:
    return len(WORD_RE.findall(text))


def spoken_word_count(request: IngestionRequest) -> int:
    # Speaker labels in the formatted text are not spoken words.
    if request.segments:
        return sum(count_words(segment.text) for segment in request.segments)
    return count_words(request.text)


def build_record(request: IngestionRequest, created_at: datetime) -> TranscriptionRecord:
    return TranscriptionRecord(
        **request.model_dump(),
        s3_url=None,
        created_at=created_at,
        word_count=spoken_word_count(request),
    )


class TranscriptionIngestor:
    """Creates a record for each transcription-completed event.

    Payloads are validated before the store is touched. A duplicate call id
    is surfaced as DuplicateKey rather than merged into the stored record.
    """

    def __init__(
        self, store: RecordStore, *, clock: Callable[[], datetime] = now_utc
    ) -> None:
        self._store = store
        self._clock = clock

    def ingest_payload(self, raw: Mapping[str, Any]) -> TranscriptionRecord:
        return self.ingest(parse_payload(IngestionRequest, raw))

    def ingest(self, request: IngestionRequest) -> TranscriptionRecord:
        record = build_record(request, self._clock())
        stored = self._store.put(record)
        logger.info(
            "transcription.ingested call_id=%s participant_id=%s words=%s segments=%s",
            stored.call_id,
            stored.participant_id,
            stored.word_count,
            len(stored.segments),
        )
        return stored
