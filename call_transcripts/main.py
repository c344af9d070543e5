from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Query, Request, Response

from .config import settings
from .errors import StoreUnavailable, TranscriptionError, register_error_handlers
from .logging_utils import configure_logging, get_logger, request_id_middleware
from .service import TranscriptionService

logger = get_logger(__name__)
_service_lock = threading.Lock()


def get_service(request: Request) -> TranscriptionService:
    service = request.app.state.service
    if service is None:
        with _service_lock:
            service = request.app.state.service
            if service is None:
                service = TranscriptionService.from_settings(settings)
                request.app.state.service = service
    return service


ServiceDep = Annotated[TranscriptionService, Depends(get_service)]


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    if app.state.service is None:
        app.state.service = TranscriptionService.from_settings(settings)
    if not settings.skip_store_check:
        try:
            info = app.state.service.store.describe()
        except TranscriptionError as exc:
            raise RuntimeError(f"record store check failed: {exc}") from exc
        logger.info("service.start store=%s", info)
    yield


def create_app(service: Optional[TranscriptionService] = None) -> FastAPI:
    app = FastAPI(title="Call Transcripts API", lifespan=lifespan)
    app.state.service = service
    app.middleware("http")(request_id_middleware)
    register_error_handlers(app)

    @app.get("/health")
    def health(service: ServiceDep) -> dict:
        try:
            info = service.store.describe()
        except TranscriptionError as exc:
            raise StoreUnavailable(f"health check failed: {exc}") from exc
        return {"status": "ok", "store": info}

    @app.get("/transcriptions")
    def list_transcriptions_endpoint(
        service: ServiceDep,
        participant: Optional[str] = Query(None),
        mentor: Optional[str] = Query(None),
        started_from: Optional[datetime] = Query(None),
        ended_to: Optional[datetime] = Query(None),
    ) -> dict:
        return service.queries.search(
            participant_id=participant,
            mentor_id=mentor,
            started_from=started_from,
            ended_to=ended_to,
        ).to_response()

    @app.get("/transcriptions/{call_id}")
    def get_transcription_endpoint(call_id: str, service: ServiceDep) -> dict:
        return service.queries.get(call_id).to_response()

    @app.post("/transcriptions", status_code=201)
    def ingest_transcription_endpoint(
        service: ServiceDep, payload: Dict[str, Any] = Body(...)
    ) -> dict:
        record = service.ingestor.ingest_payload(payload)
        return {"success": True, "transcription": record.to_response()}

    @app.post("/transcriptions/attachment")
    def attach_transcription_endpoint(
        service: ServiceDep, payload: Dict[str, Any] = Body(...)
    ) -> dict:
        record = service.attachments.attach_payload(payload)
        return {
            "success": True,
            "message": "S3 URL updated successfully",
            "callId": record.call_id,
            "s3Url": record.s3_url,
        }

    @app.post("/webhooks/stream-transcription")
    def stream_transcription_webhook(
        response: Response,
        service: ServiceDep,
        payload: Dict[str, Any] = Body(...),
    ) -> dict:
        outcome = service.webhooks.handle_payload(payload)
        if outcome.stored:
            response.status_code = 201
        return outcome.to_response()

    @app.get("/webhooks/test")
    def webhook_test_get() -> dict:
        logger.info("webhook_test.get")
        return {
            "status": "success",
            "message": "Test webhook is working",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/webhooks/test")
    def webhook_test_post(payload: Any = Body(None)) -> dict:
        logger.info("webhook_test.post body=%s", payload)
        return {
            "status": "success",
            "message": "Test webhook POST is working",
            "receivedBody": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
