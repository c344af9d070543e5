from __future__ import annotations

from typing import Any, Mapping

from .logging_utils import get_logger
from .schemas import AttachmentRequest, TranscriptionRecord, parse_payload
from .store import RecordStore

logger = get_logger(__name__)


class AttachmentUpdater:
    """Links an uploaded object to an already ingested transcription.

    An attachment for an unknown call is an out-of-order or orphaned event;
    NotFound propagates to the caller and no record is created.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def attach_payload(self, raw: Mapping[str, Any]) -> TranscriptionRecord:
        return self._apply(parse_payload(AttachmentRequest, raw))

    def attach(self, call_id: str, s3_url: str) -> TranscriptionRecord:
        return self.attach_payload({"callId": call_id, "s3Url": s3_url})

    def _apply(self, request: AttachmentRequest) -> TranscriptionRecord:
        record = self._store.patch(request.call_id, request.s3_url)
        logger.info(
            "transcription.attachment_set call_id=%s s3_url=%s",
            record.call_id,
            record.s3_url,
        )
        return record
