"""Readiness of a cluster object derived from its status conditions."""

from enum import StrEnum
from dataclasses import dataclass
from typing import Any

__all__ = [
    "Status",
    "StatusInfo",
    "status_from_conditions",
]

READY_CONDITION = "Ready"


class Status(StrEnum):
    """Readiness of a resource as reported by its controller."""

    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"
    MISSING = "Missing"


@dataclass
class StatusInfo:
    """Readiness status and the controller message for a resource."""

    status: Status
    message: str | None = None

    @property
    def ready(self) -> bool:
        return self.status == Status.READY

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.message:
            return f"{self.status}: {self.message}"
        return str(self.status)


def status_from_conditions(
    obj: dict[str, Any] | None, condition_type: str = READY_CONDITION
) -> StatusInfo:
    """Interpret the status condition of a kubernetes object.

    A condition with status `True` is ready, `False` is failed and anything
    else, including a missing condition, is still pending.
    """
    if obj is None:
        return StatusInfo(Status.MISSING, "object not found")
    conditions = (obj.get("status") or {}).get("conditions") or []
    for condition in conditions:
        if condition.get("type") != condition_type:
            continue
        message = condition.get("message")
        if (value := condition.get("status")) == "True":
            return StatusInfo(Status.READY, message)
        if value == "False":
            return StatusInfo(Status.FAILED, message)
        return StatusInfo(Status.PENDING, message)
    return StatusInfo(Status.PENDING, f"no {condition_type} condition reported")
