"""
Source Tracker: decides when an application's source has changed.

Resolves the configured revision to an immutable content hash on every
check. A check reports `changed` only when the hash differs from the last
hash marked as processed for that application. Webhook-style notifications
flag the matching applications so their loops check immediately.
"""

import asyncio
from typing import Dict, List, Optional, Set

import structlog
from pydantic import BaseModel

from gitops_kernel.errors import SourceUnavailable
from gitops_kernel.models.application import Application
from gitops_kernel.source.backends import SourceBackend

logger = structlog.get_logger(__name__)


def normalize_repo_url(url: str) -> str:
    url = url.strip().lower().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    return url


class SourceCheck(BaseModel):
    """Result of resolving an application's source."""

    application: str
    revision: str
    content_hash: str
    changed: bool


class SourceTracker:
    """Tracks the last processed content hash per application."""

    def __init__(self, backend: SourceBackend, timeout_seconds: float = 30.0):
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self._apps: Dict[str, Application] = {}
        self._processed: Dict[str, str] = {}
        self._pending: Set[str] = set()

    def track(self, app: Application) -> None:
        """Start (or keep) tracking an application. A changed source forgets the old hash."""
        old = self._apps.get(app.name)
        if old is not None and old.source != app.source:
            self._processed.pop(app.name, None)
        self._apps[app.name] = app

    def untrack(self, name: str) -> None:
        self._apps.pop(name, None)
        self._processed.pop(name, None)
        self._pending.discard(name)

    def last_processed(self, name: str) -> Optional[str]:
        return self._processed.get(name)

    def mark_processed(self, name: str, content_hash: str) -> None:
        self._processed[name] = content_hash

    def forget(self, name: str) -> None:
        """Treat the next check as a change."""
        self._processed.pop(name, None)

    async def check(self, app: Application, force: bool = False) -> SourceCheck:
        """
        Resolve the application's revision. Raises SourceUnavailable on
        network, auth or timeout failures.
        """
        self._pending.discard(app.name)
        try:
            content_hash = await asyncio.wait_for(
                self.backend.resolve(app.source.repo_url, app.source.revision),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise SourceUnavailable(
                f"resolving {app.source.repo_url}@{app.source.revision} timed out"
            )

        changed = force or content_hash != self._processed.get(app.name)
        if changed:
            logger.info(
                "source_changed",
                application=app.name,
                revision=app.source.revision,
                content_hash=content_hash,
                previous=self._processed.get(app.name),
            )
        return SourceCheck(
            application=app.name,
            revision=app.source.revision,
            content_hash=content_hash,
            changed=changed,
        )

    async def fetch(self, app: Application, content_hash: str) -> Dict[str, str]:
        """Files under the application's path at a resolved hash."""
        try:
            return await asyncio.wait_for(
                self.backend.fetch(app.source.repo_url, content_hash, app.source.path),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise SourceUnavailable(f"fetching {app.source.repo_url}@{content_hash} timed out")

    def notify(self, repo_url: str, revision: Optional[str] = None) -> List[str]:
        """
        Handle a push notification. Returns the names of applications that
        track the repository (and revision, when given) and flags them.
        """
        target = normalize_repo_url(repo_url)
        matched = []
        for name, app in sorted(self._apps.items()):
            if normalize_repo_url(app.source.repo_url) != target:
                continue
            if revision is not None and not _revision_matches(app.source.revision, revision):
                continue
            self._pending.add(name)
            matched.append(name)
        logger.info("source_notification", repo_url=repo_url, revision=revision, matched=matched)
        return matched

    def is_pending(self, name: str) -> bool:
        return name in self._pending


def _revision_matches(tracked: str, pushed: str) -> bool:
    """A push to refs/heads/main matches an application tracking "main"."""
    if tracked == pushed or tracked == "HEAD":
        return True
    for prefix in ("refs/heads/", "refs/tags/"):
        if pushed.startswith(prefix) and pushed[len(prefix):] == tracked:
            return True
    return False
