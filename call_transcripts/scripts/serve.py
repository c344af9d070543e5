from __future__ import annotations

import argparse

import uvicorn

from call_transcripts.config import settings
from call_transcripts.logging_utils import configure_logging, get_logger


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the call transcripts API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    logger.info(
        "api.start host=%s port=%s store_backend=%s",
        args.host,
        args.port,
        settings.record_store_backend,
    )
    uvicorn.run(
        "call_transcripts.main:app",
        host=args.host,
        port=args.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
