"""
Sync windows: temporal authority over when an application may sync.

A window opens at every fire time of its cron schedule and stays open for
`duration_minutes`. Deny windows block while open. If any allow window is
configured, syncs are blocked whenever no allow window is open.
"""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from croniter import croniter

from gitops_kernel.models.application import SyncWindow, SyncWindowKind


def is_window_active(window: SyncWindow, current_time: datetime) -> bool:
    """Determine if a window is open at `current_time`."""
    try:
        if croniter.match(window.schedule, current_time):
            return True
        last_start = croniter(window.schedule, current_time).get_prev(datetime)
    except (ValueError, KeyError):
        # Invalid cron expression: the window never opens
        return False
    return current_time < last_start + timedelta(minutes=window.duration_minutes)


def blocking_window(
    windows: List[SyncWindow],
    manual: bool = False,
    current_time: Optional[datetime] = None,
) -> Optional[SyncWindow]:
    """
    Return the window that forbids a sync right now, or None if syncing is
    allowed. Manual syncs pass windows that set `manual_sync`.
    """
    if not windows:
        return None
    if current_time is None:
        current_time = datetime.now(timezone.utc)

    for window in windows:
        if window.kind == SyncWindowKind.DENY and is_window_active(window, current_time):
            if manual and window.manual_sync:
                continue
            return window

    allows = [w for w in windows if w.kind == SyncWindowKind.ALLOW]
    if allows and not any(is_window_active(w, current_time) for w in allows):
        if manual and any(w.manual_sync for w in allows):
            return None
        return allows[0]
    return None
