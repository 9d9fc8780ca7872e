"""Server-sent events relay of task notifications."""

import logging
import queue

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ytflow.api.dependencies import get_coordinator
from ytflow.models.events import EventType, Notification
from ytflow.pipeline.coordinator import FlowCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["events"])

KEEPALIVE_SECONDS = 15


def _is_final(notification: Notification) -> bool:
    if notification.type == EventType.COMPLETE:
        return True
    return notification.type == EventType.STAGE_FAILED and not notification.data.get(
        "will_retry", False
    )


@router.get("/events/{task_id}")
def stream_events(task_id: str, coordinator: FlowCoordinator = Depends(get_coordinator)):
    """Stream a task's notifications until it completes or fails."""
    broadcaster = coordinator.broadcaster
    subscription = broadcaster.subscribe(task_id)
    try:
        snapshot = coordinator.task_status(task_id)
    except Exception:
        broadcaster.unsubscribe(task_id, subscription)
        raise

    def generate():
        try:
            yield Notification(
                task_id=task_id, type=EventType.STATUS_CHANGE, data=snapshot
            ).to_sse()
            if snapshot["status"] in ("completed", "failed"):
                return
            while True:
                try:
                    notification = subscription.get(timeout=KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield notification.to_sse()
                if _is_final(notification):
                    return
        finally:
            broadcaster.unsubscribe(task_id, subscription)
            logger.debug(f"SSE client for {task_id} disconnected")

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
