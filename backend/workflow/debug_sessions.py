"""Single-slot debug sessions (selector finder, action recorder).

Each slot holds at most one active lease. Acquiring a slot that is
already held displaces the previous owner: its lease is invalidated and
its ``on_displaced`` callback runs. Releasing a stale lease is a no-op.

Usage:
    sessions = DebugSessions()
    lease = sessions.action_recorder.acquire(execution_id, page_session)
    ...
    sessions.action_recorder.release(lease)
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

_lease_ids = itertools.count(1)


@dataclass
class DebugLease:
    """Ownership token for a debug session slot."""
    slot: str
    owner_id: str
    session: Any = None
    token: int = field(default_factory=lambda: next(_lease_ids))
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    on_displaced: Optional[Callable[["DebugLease"], None]] = field(default=None, repr=False)
    active: bool = True


class DebugSessionSlot:
    """A named slot that holds at most one active debug session."""

    def __init__(self, name: str):
        self.name = name
        self._lease: Optional[DebugLease] = None

    @property
    def active(self) -> Optional[DebugLease]:
        return self._lease

    @property
    def owner_id(self) -> Optional[str]:
        return self._lease.owner_id if self._lease else None

    def acquire(
        self,
        owner_id: str,
        session: Any = None,
        on_displaced: Optional[Callable[[DebugLease], None]] = None,
    ) -> DebugLease:
        """Take the slot, displacing any current holder."""
        previous = self._lease
        lease = DebugLease(slot=self.name, owner_id=owner_id, session=session, on_displaced=on_displaced)
        self._lease = lease

        if previous is not None:
            previous.active = False
            logger.info(
                "Debug session displaced",
                slot=self.name,
                previous_owner=previous.owner_id,
                owner=owner_id,
            )
            if previous.on_displaced is not None:
                try:
                    previous.on_displaced(previous)
                except Exception as e:
                    logger.warning("Displacement callback failed", slot=self.name, error=str(e))

        logger.debug("Debug session acquired", slot=self.name, owner=owner_id)
        return lease

    def release(self, lease: Optional[DebugLease]) -> bool:
        """Release ``lease`` if it still holds the slot. Returns True if released."""
        if lease is None or self._lease is None or self._lease.token != lease.token:
            if lease is not None:
                lease.active = False
            return False
        lease.active = False
        self._lease = None
        logger.debug("Debug session released", slot=self.name, owner=lease.owner_id)
        return True

    def release_owner(self, owner_id: str) -> bool:
        """Release the slot if ``owner_id`` holds it."""
        if self._lease is not None and self._lease.owner_id == owner_id:
            return self.release(self._lease)
        return False


class DebugSessions:
    """The debug session slots of one process, injected where needed."""

    def __init__(self):
        self.selector_finder = DebugSessionSlot("selector-finder")
        self.action_recorder = DebugSessionSlot("action-recorder")

    def release_owner(self, owner_id: str) -> None:
        self.selector_finder.release_owner(owner_id)
        self.action_recorder.release_owner(owner_id)

    def to_dict(self) -> dict:
        return {
            slot.name: slot.owner_id
            for slot in (self.selector_finder, self.action_recorder)
        }
