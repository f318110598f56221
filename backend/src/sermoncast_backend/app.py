# Application factory and FastAPI setup.

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .job_tracker import TranscriptionJobTracker
from .media import LocalMediaStorage
from .records import RecordStore
from .routers import health, records, transcriptions, uploads
from .settings import get_settings
from .tasks.transcribe import TranscriptionDispatcher, openai_transcribe_fn
from .uploads import UploadSessionStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    logger.info("Shutting down transcription dispatcher")
    app.state.dispatcher.shutdown(wait=False)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    app = FastAPI(title="SermonCast Backend", version="0.1.0", lifespan=_lifespan)

    settings = get_settings()
    for directory in (
        settings.chunk_root,
        settings.assembled_root,
        settings.media_root,
        settings.records_root,
    ):
        directory.mkdir(parents=True, exist_ok=True)

    storage = LocalMediaStorage(settings.media_root)
    record_store = RecordStore(settings.records_root)
    tracker = TranscriptionJobTracker(retention_seconds=settings.job_retention_seconds)

    app.state.settings = settings
    app.state.sessions = UploadSessionStore(settings.chunk_root)
    app.state.storage = storage
    app.state.records = record_store
    app.state.tracker = tracker
    app.state.dispatcher = TranscriptionDispatcher(
        tracker=tracker,
        records=record_store,
        transcribe_fn=openai_transcribe_fn(settings, storage),
        max_workers=settings.transcribe_workers,
    )

    app.include_router(health.router)
    app.include_router(uploads.router)
    app.include_router(records.router)
    app.include_router(transcriptions.router)
    return app
