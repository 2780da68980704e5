"""
Live-State Observer: fresh snapshot of what an application owns on the platform.

Queries by ownership label only. The result is independent of the desired
set, so resources that exist but are no longer declared (prune candidates)
and declared resources not yet created (create candidates) both fall out of
the diff naturally.
"""

import asyncio
from datetime import datetime, timezone

import structlog

from gitops_kernel.cluster.platform import Platform
from gitops_kernel.errors import PlatformUnavailable
from gitops_kernel.models.application import Application
from gitops_kernel.models.resource import OWNERSHIP_LABEL, LiveResourceSet

logger = structlog.get_logger(__name__)


class LiveStateObserver:

    def __init__(self, platform: Platform, timeout_seconds: float = 30.0):
        self.platform = platform
        self.timeout_seconds = timeout_seconds

    async def observe(self, app: Application) -> LiveResourceSet:
        """Raises PlatformUnavailable on failure or timeout."""
        try:
            resources = await asyncio.wait_for(
                self.platform.list({OWNERSHIP_LABEL: app.name}),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise PlatformUnavailable(f"listing resources for {app.name} timed out")

        logger.debug("observed", application=app.name, resources=len(resources))
        return LiveResourceSet(
            application=app.name,
            resources=resources,
            observed_at=datetime.now(timezone.utc),
        )
