"""
cascade_services.notifications -- user alert collaborator.

Contract:
    ``Notifier.notify(alert)`` delivers a fire-and-forget alert. Stages
    call ``notify_safely`` so a failing delivery is logged and never
    aborts the stage that raised the alert.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from cascade_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Alert:
    user_ids: tuple[str, ...]
    title: str
    message: str
    severity: AlertSeverity = AlertSeverity.INFO
    metadata: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class Notifier(Protocol):
    def notify(self, alert: Alert) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes the alert to the structured log."""

    def notify(self, alert: Alert) -> None:
        logger.info(
            "user_alert",
            extra={
                "user_ids": list(alert.user_ids),
                "title": alert.title,
                "alert_message": alert.message,
                "severity": alert.severity.value,
                "metadata": dict(alert.metadata),
            },
        )


def notify_safely(notifier: Notifier | None, alert: Alert) -> bool:
    """Deliver ``alert``; return False instead of raising when delivery fails."""
    if notifier is None:
        return False
    try:
        notifier.notify(alert)
    except Exception:
        logger.warning(
            "alert_delivery_failed",
            extra={"title": alert.title, "severity": alert.severity.value},
            exc_info=True,
        )
        return False
    return True
