"""
Per node group exponential backoff after failed scale-ups.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class BackoffEntry:
    """Backoff state of a single node group"""
    group_id: str
    backoff_until: datetime
    duration: timedelta
    failures: int
    last_failure: datetime


class ExponentialBackoff:
    """
    Doubles the backoff window of a node group on every consecutive failure.

    A failure that comes more than reset_timeout after the previous one starts
    again from the initial window.
    """

    def __init__(self,
                 initial_backoff: timedelta = timedelta(minutes=5),
                 max_backoff: timedelta = timedelta(minutes=30),
                 reset_timeout: timedelta = timedelta(hours=3)):
        if initial_backoff <= timedelta(0):
            raise ValueError("initial_backoff must be positive")
        if max_backoff < initial_backoff:
            raise ValueError("max_backoff must be >= initial_backoff")

        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.reset_timeout = reset_timeout
        self._entries: Dict[str, BackoffEntry] = {}

    def backoff(self, group_id: str, now: datetime) -> datetime:
        """
        Register a failure for the node group.

        Returns:
            Time until which the group is backed off
        """
        entry = self._entries.get(group_id)
        if entry is None or now - entry.last_failure > self.reset_timeout:
            duration = self.initial_backoff
            failures = 1
        else:
            duration = min(entry.duration * 2, self.max_backoff)
            failures = entry.failures + 1

        entry = BackoffEntry(
            group_id=group_id,
            backoff_until=now + duration,
            duration=duration,
            failures=failures,
            last_failure=now,
        )
        self._entries[group_id] = entry
        logger.warning(f"Node group {group_id} backed off until {entry.backoff_until} "
                       f"after {failures} consecutive failure(s)")
        return entry.backoff_until

    def is_backed_off(self, group_id: str, now: datetime) -> bool:
        entry = self._entries.get(group_id)
        return entry is not None and now < entry.backoff_until

    def remove_backoff(self, group_id: str) -> None:
        if self._entries.pop(group_id, None) is not None:
            logger.info(f"Backoff removed for node group {group_id}")

    def get_entry(self, group_id: str) -> Optional[BackoffEntry]:
        return self._entries.get(group_id)

    def remove_stale_entries(self, now: datetime) -> None:
        """Forget groups whose last failure is older than the reset timeout"""
        stale = [group_id for group_id, entry in self._entries.items()
                 if now - entry.last_failure > self.reset_timeout]
        for group_id in stale:
            del self._entries[group_id]
