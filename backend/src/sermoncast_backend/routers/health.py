# Health-check endpoints.

from fastapi import APIRouter, Request, status

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", status_code=status.HTTP_200_OK)
async def read_health(request: Request) -> dict[str, str | int]:
    """Readiness probe; also reports how many transcription jobs are tracked."""
    tracker = request.app.state.tracker
    return {"status": "ok", "tracked_jobs": len(tracker)}
