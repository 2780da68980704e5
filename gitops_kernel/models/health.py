"""Health Status: derived each pass, never persisted on its own."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from gitops_kernel.models.resource import ResourceKey


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    MISSING = "Missing"
    UNKNOWN = "Unknown"


# Worst first. Application health is the first status any resource has.
HEALTH_PRECEDENCE = [
    HealthStatus.DEGRADED,
    HealthStatus.PROGRESSING,
    HealthStatus.MISSING,
    HealthStatus.UNKNOWN,
    HealthStatus.HEALTHY,
]


class ResourceHealth(BaseModel):
    key: ResourceKey
    status: HealthStatus
    message: Optional[str] = None


class ApplicationHealth(BaseModel):
    status: HealthStatus
    resources: List[ResourceHealth] = []
