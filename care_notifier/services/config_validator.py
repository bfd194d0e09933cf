"""Notification Config Validator."""
from typing import Any, Dict

from care_notifier.schemas.notification import TaskNotificationConfig

MAX_INTERVAL_HOURS = 8760  # one year


class NotificationConfigValidator:
    """Validate task notification configs before they enter the engine."""

    @staticmethod
    def validate(config: TaskNotificationConfig) -> Dict[str, Any]:
        """
        Validate a task notification config.

        Args:
            config: Config built by the task-management layer

        Returns:
            Dict with validation result
        """
        result = {
            "valid": True,
            "errors": [],
            "warnings": []
        }

        if not config.task_id or not config.task_id.strip():
            result["errors"].append("task_id must not be empty")

        if not config.plant_id or not config.plant_id.strip():
            result["errors"].append("plant_id must not be empty")

        if config.estimated_duration is not None and config.estimated_duration <= 0:
            result["errors"].append("estimated_duration must be positive")

        if config.interval_hours is not None:
            if not NotificationConfigValidator.is_valid_interval(config.interval_hours):
                result["errors"].append(
                    f"interval_hours must be between 1 and {MAX_INTERVAL_HOURS}"
                )

        if config.max_notifications is not None and config.max_notifications < 1:
            result["errors"].append("max_notifications must be at least 1")

        if not config.plant_name:
            result["warnings"].append("plant_name is empty, notifications will not name the plant")

        if not config.task_title:
            result["warnings"].append("task_title is empty, the task type will be used as title")

        result["valid"] = not result["errors"]
        return result

    @staticmethod
    def is_valid_interval(hours: int) -> bool:
        return 0 < hours <= MAX_INTERVAL_HOURS
