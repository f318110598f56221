# Request-scoped accessors for the services created in the app factory.

from __future__ import annotations

from fastapi import Request

from ..job_tracker import TranscriptionJobTracker
from ..media import LocalMediaStorage
from ..records import RecordStore
from ..tasks.transcribe import TranscriptionDispatcher
from ..uploads import UploadSessionStore


def get_sessions(request: Request) -> UploadSessionStore:
    return request.app.state.sessions


def get_storage(request: Request) -> LocalMediaStorage:
    return request.app.state.storage


def get_records(request: Request) -> RecordStore:
    return request.app.state.records


def get_tracker(request: Request) -> TranscriptionJobTracker:
    return request.app.state.tracker


def get_dispatcher(request: Request) -> TranscriptionDispatcher:
    return request.app.state.dispatcher


__all__ = [
    "get_dispatcher",
    "get_records",
    "get_sessions",
    "get_storage",
    "get_tracker",
]
