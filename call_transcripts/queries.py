from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import InvalidPayload
from .schemas import TranscriptionRecord
from .store import RecordStore


@dataclass(frozen=True)
class TranscriptionList:
    records: List[TranscriptionRecord] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.records)

    def to_response(self) -> Dict[str, Any]:
        return {
            "transcriptions": [record.to_response() for record in self.records],
            "count": self.count,
        }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds are read as UTC so they compare against stored timestamps.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _require_filter_value(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not value.strip():
        raise InvalidPayload(f"Invalid query: {name} must not be empty", **{name: value})
    return value


class TranscriptionQueries:
    """Read-only views over the record store."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def get(self, call_id: str) -> TranscriptionRecord:
        return self._store.get(call_id)

    def list_all(self) -> TranscriptionList:
        return TranscriptionList(records=self._store.list_all())

    def list_by_participant(self, participant_id: str) -> TranscriptionList:
        return TranscriptionList(records=self._store.list_by_participant(participant_id))

    def list_by_mentor(self, mentor_id: str) -> TranscriptionList:
        return TranscriptionList(records=self._store.list_by_mentor(mentor_id))

    def list_by_call_window(
        self,
        started_from: Optional[datetime] = None,
        ended_to: Optional[datetime] = None,
    ) -> TranscriptionList:
        started_from = _as_utc(started_from)
        ended_to = _as_utc(ended_to)
        if started_from is not None and ended_to is not None and ended_to < started_from:
            raise InvalidPayload(
                "Invalid query: ended_to is before started_from",
                started_from=started_from.isoformat(),
                ended_to=ended_to.isoformat(),
            )
        return TranscriptionList(
            records=self._store.list_by_call_window(started_from, ended_to)
        )

    def search(
        self,
        participant_id: Optional[str] = None,
        mentor_id: Optional[str] = None,
        started_from: Optional[datetime] = None,
        ended_to: Optional[datetime] = None,
    ) -> TranscriptionList:
        """Dispatch a listing request to exactly one filter.

        ``None`` means "not given". An empty or blank participant or mentor is
        rejected rather than read as "no filter".
        """
        participant_id = _require_filter_value("participant", participant_id)
        mentor_id = _require_filter_value("mentor", mentor_id)
        window = started_from is not None or ended_to is not None
        given = [
            name
            for name, present in (
                ("participant", participant_id is not None),
                ("mentor", mentor_id is not None),
                ("call window", window),
            )
            if present
        ]
        if len(given) > 1:
            raise InvalidPayload(
                "Invalid query: only one filter may be given",
                filters=given,
            )
        if participant_id is not None:
            return self.list_by_participant(participant_id)
        if mentor_id is not None:
            return self.list_by_mentor(mentor_id)
        if window:
            return self.list_by_call_window(started_from, ended_to)
        return self.list_all()
