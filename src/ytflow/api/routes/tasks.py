"""Task endpoints."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ytflow.api.dependencies import get_coordinator
from ytflow.models.errors import TaskNotFoundError
from ytflow.models.flow import FlowOptions
from ytflow.pipeline.coordinator import FlowCoordinator

router = APIRouter(prefix="/api/v1", tags=["tasks"])


class CreateTaskRequest(BaseModel):
    url: str = Field(..., min_length=1)
    options: FlowOptions = Field(default_factory=FlowOptions)


@router.post("/tasks", status_code=201)
def create_task(
    request: CreateTaskRequest,
    coordinator: FlowCoordinator = Depends(get_coordinator),
):
    """Start processing a video URL."""
    handle = coordinator.producer.create_flow(request.url, request.options)
    return {
        "task_id": handle.task_id,
        "status": "processing",
        "estimated_duration": handle.estimated_duration,
        "message": "Video processing started",
    }


@router.get("/tasks")
def list_tasks(coordinator: FlowCoordinator = Depends(get_coordinator)):
    """List all tasks, newest first."""
    tasks = coordinator.list_tasks()
    return {"tasks": tasks, "total": len(tasks)}


@router.get("/tasks/{task_id}")
def get_task(task_id: str, coordinator: FlowCoordinator = Depends(get_coordinator)):
    return coordinator.task_status(task_id)


@router.get("/tasks/{task_id}/files")
def list_task_files(task_id: str, coordinator: FlowCoordinator = Depends(get_coordinator)):
    """List artifacts recorded for a task and the files on disk."""
    manifest = coordinator.store.load(task_id)
    if manifest is None:
        raise TaskNotFoundError(task_id)
    return {
        "task_id": task_id,
        "artifacts": manifest.files,
        "files": coordinator.store.list_files(task_id),
    }


@router.delete("/tasks/{task_id}")
def delete_task(task_id: str, coordinator: FlowCoordinator = Depends(get_coordinator)):
    """Delete a task and its files. A running stage is not interrupted."""
    coordinator.producer.delete_task(task_id)
    return {"task_id": task_id, "status": "deleted"}


@router.post("/tasks/{task_id}/retry")
def retry_task(task_id: str, coordinator: FlowCoordinator = Depends(get_coordinator)):
    """Restart a failed task from its first incomplete stage."""
    handle = coordinator.producer.retry_task(task_id)
    return {
        "task_id": handle.task_id,
        "status": "processing",
        "estimated_duration": handle.estimated_duration,
        "message": "Task retry started",
    }
