"""Task-focused notification content."""
from typing import Dict, List

from care_notifier.schemas.notification import (
    NotificationContent,
    TaskNotificationConfig,
    TaskPriority,
    TaskType,
)

PLANT_CARE_CATEGORY = "plant_care"
OVERDUE_CATEGORY = "overdue_tasks"

TASK_ICONS: Dict[TaskType, str] = {
    TaskType.WATERING: "💧",
    TaskType.FEEDING: "🧪",
    TaskType.INSPECTION: "🔍",
    TaskType.PRUNING: "✂️",
    TaskType.TRAINING: "🪴",
    TaskType.DEFOLIATION: "🍃",
    TaskType.FLUSHING: "🚿",
    TaskType.HARVEST: "🧺",
    TaskType.TRANSPLANT: "🏺",
}

URGENCY_ICONS: Dict[str, str] = {
    "moderate": "⚠️",
    "high": "🚨",
    "critical": "🔴",
}


def task_icon(task_type: TaskType) -> str:
    return TASK_ICONS.get(task_type, "🌱")


def _content_priority(tasks: List[TaskNotificationConfig]) -> str:
    if any(task.priority in (TaskPriority.HIGH, TaskPriority.CRITICAL) for task in tasks):
        return "high"
    return "normal"


def build_task_content(tasks: List[TaskNotificationConfig], batch_id: str) -> NotificationContent:
    """
    Build the notification shown for a batch of tasks.

    A single task gets its own title; several tasks for the same plant are
    summarised as "You have N tasks for <plant>".
    """
    if not tasks:
        return NotificationContent(
            title="🌱 Plant Care Reminder",
            body="You have a plant care task to complete",
            data={"batchId": batch_id, "taskIds": []},
        )

    data = {
        "batchId": batch_id,
        "taskIds": [task.task_id for task in tasks],
        "plantIds": sorted({task.plant_id for task in tasks}),
    }

    if len(tasks) == 1:
        task = tasks[0]
        data["taskType"] = task.task_type.value
        return NotificationContent(
            title=f"{task_icon(task.task_type)} {task.task_title or task.task_type.value.title()}",
            body=f"Time to {task.task_type.value} your {task.plant_name}!",
            category_id=PLANT_CARE_CATEGORY,
            priority=_content_priority(tasks),
            data=data,
        )

    plant_names = list(dict.fromkeys(task.plant_name for task in tasks))
    task_types = list(dict.fromkeys(task.task_type.value for task in tasks))

    if len(plant_names) == 1:
        body = f"You have {len(tasks)} tasks for {plant_names[0]}: {', '.join(task_types)}"
    else:
        body = f"You have {len(tasks)} tasks across {len(plant_names)} plants"

    return NotificationContent(
        title="🌱 Multiple Plant Care Tasks",
        body=body,
        category_id=PLANT_CARE_CATEGORY,
        priority=_content_priority(tasks),
        data=data,
    )


def build_escalation_content(task: TaskNotificationConfig, severity: str, days_overdue: int) -> NotificationContent:
    """Build the high-priority notification for an overdue task."""
    icon = URGENCY_ICONS.get(severity, "⚠️")
    unit = "day" if days_overdue == 1 else "days"
    return NotificationContent(
        title=f"{icon} Overdue Plant Care",
        body=f"{task.plant_name} needs {task.task_type.value} ({days_overdue} {unit} overdue)",
        category_id=OVERDUE_CATEGORY,
        priority="high",
        data={
            "taskId": task.task_id,
            "plantId": task.plant_id,
            "isOverdue": True,
            "escalationLevel": severity,
        },
    )
