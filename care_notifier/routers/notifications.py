"""Notification router: HTTP surface of the scheduling engine."""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from care_notifier.errors import NotFoundError, PersistenceError, ValidationError
from care_notifier.schemas.notification import (
    DeliveryEventRequest,
    DeliveryRecordResponse,
    RescheduleRequest,
    TaskNotificationConfig,
)
from care_notifier.services.scheduler import TaskNotificationScheduler

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def get_scheduler(request: Request) -> TaskNotificationScheduler:
    """Dependency returning the engine owned by the application."""
    return request.app.state.scheduler


@router.post("/schedule", response_model=Dict[str, Any], status_code=status.HTTP_201_CREATED)
async def schedule_notification(
    config: TaskNotificationConfig,
    scheduler: TaskNotificationScheduler = Depends(get_scheduler),
):
    """Schedule the notification for one task."""
    try:
        batch_id = await scheduler.schedule(config)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.to_dict())
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    return {
        "task_id": config.task_id,
        "batch_id": batch_id,
        "scheduled": batch_id is not None,
    }


@router.post("/schedule/batch", response_model=Dict[str, Any])
async def schedule_notifications(
    configs: List[TaskNotificationConfig],
    scheduler: TaskNotificationScheduler = Depends(get_scheduler),
):
    """Schedule many tasks at once; per-task failures are reported, not raised."""
    outcome = await scheduler.schedule_multiple(configs)
    return outcome.to_dict()


@router.delete("/tasks/{task_id}", response_model=Dict[str, Any])
async def cancel_notifications(
    task_id: str,
    task_removed: bool = Query(False, description="The task was deleted; soft-delete its recurrence"),
    scheduler: TaskNotificationScheduler = Depends(get_scheduler),
):
    """Cancel pending notifications for a task."""
    try:
        await scheduler.cancel(task_id, task_removed=task_removed)
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())
    return {"task_id": task_id, "cancelled": True}


@router.post("/tasks/{task_id}/reschedule", response_model=Dict[str, Any])
async def reschedule_notifications(
    task_id: str,
    request: RescheduleRequest,
    scheduler: TaskNotificationScheduler = Depends(get_scheduler),
):
    """Move a task's notification to a new due date."""
    try:
        batch_id = await scheduler.reschedule(task_id, request.due_date)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    return {"task_id": task_id, "batch_id": batch_id, "scheduled": batch_id is not None}


@router.get("/tasks/{task_id}/deliveries", response_model=List[DeliveryRecordResponse])
async def list_deliveries(
    task_id: str,
    scheduler: TaskNotificationScheduler = Depends(get_scheduler),
):
    """Delivery history of a task."""
    return await scheduler.get_delivery_records(task_id)


@router.post("/overdue/process", response_model=Dict[str, Any])
async def process_overdue(scheduler: TaskNotificationScheduler = Depends(get_scheduler)):
    """Run an overdue sweep now."""
    results = await scheduler.process_overdue()
    return {
        "results": [result.to_dict() for result in results],
        "count": len(results),
        "escalated": sum(1 for result in results if result.notified),
    }


@router.post("/users/{user_id}/optimize-timing", response_model=Dict[str, Any])
async def optimize_timing(
    user_id: str,
    configs: List[TaskNotificationConfig],
    scheduler: TaskNotificationScheduler = Depends(get_scheduler),
):
    """Suggested delivery instants for a user's tasks."""
    instants = await scheduler.optimize_timing(user_id, configs)
    return {
        "user_id": user_id,
        "instants": [
            {"task_id": config.task_id, "deliver_at": instant.isoformat()}
            for config, instant in zip(configs, instants)
        ],
    }


@router.get("/stats", response_model=Dict[str, Any])
async def get_stats(scheduler: TaskNotificationScheduler = Depends(get_scheduler)):
    """Engine counters and gauges."""
    return scheduler.get_stats()


@router.post("/deliveries/{handle}/events", response_model=Dict[str, Any])
async def delivery_event(
    handle: str,
    event: DeliveryEventRequest,
    scheduler: TaskNotificationScheduler = Depends(get_scheduler),
):
    """Transport callback: a delivery was sent, delivered, read or failed."""
    applied = await scheduler.on_delivery_event(handle, event.status, event.timestamp, event.reason)
    if not applied:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown delivery handle: {handle}",
        )
    return {"handle": handle, "status": event.status, "applied": True}
