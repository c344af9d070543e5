from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from .attachments import AttachmentUpdater
from .config import Settings
from .ingest import TranscriptionIngestor, now_utc
from .queries import TranscriptionQueries
from .store import RecordStore, build_record_store
from .webhooks import StreamWebhookHandler, TranscriptFetcher


class TranscriptionService:
    """Wires the record store into the ingestion, attachment and query paths."""

    def __init__(
        self,
        store: RecordStore,
        *,
        fetch_timeout_s: float = 30.0,
        fetcher: Optional[TranscriptFetcher] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.store = store
        self.ingestor = TranscriptionIngestor(store, clock=clock)
        self.attachments = AttachmentUpdater(store)
        self.queries = TranscriptionQueries(store)
        self.webhooks = StreamWebhookHandler(
            self.ingestor, fetch_timeout_s=fetch_timeout_s, fetcher=fetcher
        )

    @classmethod
    def from_settings(cls, config: Settings) -> "TranscriptionService":
        return cls(
            build_record_store(config),
            fetch_timeout_s=config.transcript_fetch_timeout_s,
        )
