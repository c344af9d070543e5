from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from .errors import InvalidPayload, TranscriptFetchError
from .ingest import TranscriptionIngestor
from .logging_utils import get_logger
from .schemas import (
    IngestionRequest,
    StreamCallDetails,
    StreamWebhookEvent,
    TranscriptionRecord,
    TranscriptSegment,
    parse_payload,
)

EVENT_STARTED = "call.transcription_started"
EVENT_STOPPED = "call.transcription_stopped"
EVENT_FAILED = "call.transcription_failed"
EVENT_READY = "call.transcription_ready"
ACK_MESSAGES = {
    EVENT_STARTED: "Transcription started",
    EVENT_STOPPED: "Transcription stopped",
}
SPEAKER_KEYS = ("speaker_id", "speaker", "user_id")
UNKNOWN_PARTICIPANT = "unknown"
DEFAULT_LANGUAGE = "en"
MAX_ERROR_DETAIL = 400

logger = get_logger(__name__)

TranscriptFetcher = Callable[[str, float], List[TranscriptSegment]]


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    success: bool
    message: str
    record: Optional[TranscriptionRecord] = None

    @property
    def stored(self) -> bool:
        return self.record is not None

    def to_response(self) -> Dict[str, Any]:
        if self.record is None:
            return {"success": self.success, "message": self.message}
        return {
            "success": self.success,
            "message": self.message,
            "callId": self.record.call_id,
            "segments": len(self.record.segments),
            "wordCount": self.record.word_count,
            "stored": True,
        }


def _first_text(item: Mapping[str, Any], keys: tuple) -> Optional[str]:
    for key in keys:
        value = item.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _as_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_jsonl_segments(body: str) -> List[TranscriptSegment]:
    segments: List[TranscriptSegment] = []
    for line_no, line in enumerate(body.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("transcript.line_skipped line=%s error=%s", line_no, str(exc))
            continue
        if not isinstance(item, dict):
            logger.warning("transcript.line_skipped line=%s error=not an object", line_no)
            continue
        text = str(item.get("text") or "").strip()
        if not text:
            continue
        segments.append(
            TranscriptSegment(
                speaker_id=_first_text(item, SPEAKER_KEYS),
                text=text,
                start_time=_as_optional_str(item.get("start_time")),
                end_time=_as_optional_str(item.get("end_time")),
                confidence=_as_confidence(item.get("confidence")),
            )
        )
    return segments


def format_transcript(segments: List[TranscriptSegment]) -> str:
    lines = []
    for segment in segments:
        if segment.speaker_id:
            lines.append(f"{segment.speaker_id}: {segment.text}")
        else:
            lines.append(segment.text)
    return "\n".join(lines)


def call_id_from_cid(call_cid: str) -> str:
    # Provider cids look like "<call type>:<call id>".
    _, sep, call_id = call_cid.partition(":")
    return call_id if sep and call_id else call_cid


def fetch_transcript(url: str, timeout_s: float) -> List[TranscriptSegment]:
    timeout = httpx.Timeout(timeout_s)
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.get(url)
    except httpx.HTTPError as exc:
        raise TranscriptFetchError(
            f"transcript download failed: {exc}", url=url
        ) from exc

    if response.status_code != 200:
        detail = response.text.strip()[:MAX_ERROR_DETAIL]
        raise TranscriptFetchError(
            f"transcript host returned {response.status_code}: {detail}",
            url=url,
            status=response.status_code,
        )
    return parse_jsonl_segments(response.text)


class StreamWebhookHandler:
    """Turns provider call-transcription events into ingestions."""

    def __init__(
        self,
        ingestor: TranscriptionIngestor,
        *,
        fetch_timeout_s: float = 30.0,
        fetcher: Optional[TranscriptFetcher] = None,
    ) -> None:
        self._ingestor = ingestor
        self._fetch_timeout_s = fetch_timeout_s
        self._fetcher = fetcher

    def handle_payload(self, raw: Mapping[str, Any]) -> WebhookOutcome:
        event = parse_payload(StreamWebhookEvent, raw)
        logger.info("webhook.received type=%s call_cid=%s", event.type, event.call_cid)

        if event.type in ACK_MESSAGES:
            return WebhookOutcome(event.type, True, ACK_MESSAGES[event.type])
        if event.type == EVENT_FAILED:
            logger.warning("webhook.transcription_failed call_cid=%s", event.call_cid)
            return WebhookOutcome(event.type, False, "Transcription failed")
        if event.type == EVENT_READY:
            return self._ingest_ready(event)

        logger.info("webhook.unhandled type=%s", event.type)
        return WebhookOutcome(event.type, True, f"Webhook received: {event.type}")

    def _fetch(self, url: str) -> List[TranscriptSegment]:
        fetcher = self._fetcher or fetch_transcript
        return fetcher(url, self._fetch_timeout_s)

    def _ingest_ready(self, event: StreamWebhookEvent) -> WebhookOutcome:
        transcription = event.call_transcription
        if transcription is None or not transcription.url:
            raise InvalidPayload("No transcription URL provided", call_cid=event.call_cid)
        call_cid = transcription.call_cid or event.call_cid
        if not call_cid:
            raise InvalidPayload("Missing call_cid")

        segments = self._fetch(transcription.url)
        if not segments:
            raise InvalidPayload("Transcription is empty", call_cid=call_cid)

        call = event.call or StreamCallDetails()
        participant_id = next(
            (member.id for member in (call.members or []) if member.id),
            UNKNOWN_PARTICIPANT,
        )
        mentor_id = call.created_by.id if call.created_by else None
        request = parse_payload(
            IngestionRequest,
            {
                "call_id": call_id_from_cid(call_cid),
                "participant_id": participant_id,
                "text": format_transcript(segments),
                "mentor_id": mentor_id,
                "session_id": call.session_id,
                "transcript_txt_url": transcription.url,
                "transcript_vtt_url": transcription.subtitle_url,
                "segments": segments,
                "duration_seconds": call.duration_seconds,
                "language": DEFAULT_LANGUAGE,
                "call_started_at": call.started_at,
                "call_ended_at": call.ended_at,
                "metadata": {"stream_call_cid": call_cid, "webhook_event": event.type},
            },
        )
        record = self._ingestor.ingest(request)
        return WebhookOutcome(event.type, True, "Transcription stored", record=record)
