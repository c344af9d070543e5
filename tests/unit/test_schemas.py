from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from call_transcripts.errors import InvalidPayload
from call_transcripts.schemas import (
    AttachmentRequest,
    AttachmentState,
    IngestionRequest,
    TranscriptionRecord,
    parse_payload,
)


def test_ingestion_request_accepts_camel_case_and_strips_ids() -> None:
    request = IngestionRequest.model_validate(
        {"callId": " c1 ", "participantId": "alice", "text": "hello"}
    )
    assert request.call_id == "c1"
    assert request.participant_id == "alice"
    assert request.segments == []

    with pytest.raises(ValidationError):
        IngestionRequest.model_validate({"callId": "c1", "participantId": "alice", "text": "   "})


def test_parse_payload_reports_missing_fields() -> None:
    with pytest.raises(InvalidPayload) as excinfo:
        parse_payload(IngestionRequest, {"participantId": "alice"})
    assert "callId" in str(excinfo.value)
    assert "text" in str(excinfo.value)
    assert excinfo.value.context["fields"] == "callId,text"


def test_parse_payload_rejects_non_object() -> None:
    with pytest.raises(InvalidPayload):
        parse_payload(IngestionRequest, ["c1", "alice", "hello"])


@pytest.mark.parametrize(
    "s3_url",
    ["s3://bucket/c1.wav", "https://bucket.s3.amazonaws.com/c1.wav"],
)
def test_attachment_request_accepts_object_references(s3_url: str) -> None:
    assert AttachmentRequest(call_id="c1", s3_url=s3_url).s3_url == s3_url


@pytest.mark.parametrize(
    "s3_url",
    ["", "not a url", "s3://bucket", "s3://bucket/", "ftp://host/file", "https:///c1.wav"],
)
def test_attachment_request_rejects_malformed_references(s3_url: str) -> None:
    with pytest.raises(ValidationError):
        AttachmentRequest(call_id="c1", s3_url=s3_url)


def test_record_response_is_camel_case_with_attachment_status() -> None:
    record = TranscriptionRecord(
        call_id="c1",
        participant_id="alice",
        text="hello",
        created_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
    )
    assert record.attachment_state is AttachmentState.PENDING

    body = record.to_response()
    assert body["callId"] == "c1"
    assert body["participantId"] == "alice"
    assert body["s3Url"] is None
    assert body["createdAt"].startswith("2026-10-01T00:00:00")
    assert body["attachmentStatus"] == "pending"

    attached = record.model_copy(update={"s3_url": "s3://bucket/c1.wav"})
    assert attached.to_response()["attachmentStatus"] == "attached"
