"""
Session Notification Tracker
============================
Decides, for one attendance-taking session, whether a recognized student
should produce a user-facing notification. It only suppresses repeated
pop-ups for a face that stays in view; attendance records are written by
the backend alone.

Rules:
- First sight in the session -> notify
- Seen again within the cooldown -> suppressed ("Already Marked")
- Seen again after the cooldown -> "Duplicate Punch" notice, or suppressed
  when the duplicate policy is "suppress"
"""

import time
import logging
from enum import Enum
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 10.0


class NotificationKind(str, Enum):
    MARKED_PRESENT = "MARKED_PRESENT"
    ALREADY_MARKED = "ALREADY_MARKED"
    DUPLICATE_PUNCH = "DUPLICATE_PUNCH"


class DuplicatePolicy(str, Enum):
    NOTIFY = "notify"
    SUPPRESS = "suppress"


class NotificationDecision:
    """Outcome of one sighting."""

    __slots__ = ("student_id", "kind", "notify", "first_sighting")

    def __init__(self, student_id: str, kind: NotificationKind, notify: bool, first_sighting: bool):
        self.student_id = student_id
        self.kind = kind
        self.notify = notify
        self.first_sighting = first_sighting

    def __repr__(self):
        return f"<NotificationDecision(student={self.student_id}, kind={self.kind.value}, notify={self.notify})>"


class SessionTracker:
    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.NOTIFY,
        clock: Callable[[], float] = time.monotonic
    ):
        self.cooldown_seconds = cooldown_seconds
        self.duplicate_policy = DuplicatePolicy(duplicate_policy)
        self._clock = clock
        self._last_notified: Dict[str, float] = {}

    def __contains__(self, student_id: str) -> bool:
        return student_id in self._last_notified

    def __len__(self) -> int:
        return len(self._last_notified)

    def observe(self, student_id: str, record_created: Optional[bool] = None) -> NotificationDecision:
        """
        Register a sighting and decide how to present it.

        `record_created` is the backend's answer for this sighting; a first
        sighting of a student already marked earlier today is reported as
        ALREADY_MARKED but still notified once.
        """
        now = self._clock()
        last = self._last_notified.get(student_id)

        if last is None:
            self._last_notified[student_id] = now
            kind = NotificationKind.ALREADY_MARKED if record_created is False else NotificationKind.MARKED_PRESENT
            return NotificationDecision(student_id, kind, notify=True, first_sighting=True)

        if now - last <= self.cooldown_seconds:
            return NotificationDecision(student_id, NotificationKind.ALREADY_MARKED,
                                        notify=False, first_sighting=False)

        if self.duplicate_policy is DuplicatePolicy.SUPPRESS:
            return NotificationDecision(student_id, NotificationKind.ALREADY_MARKED,
                                        notify=False, first_sighting=False)

        self._last_notified[student_id] = now
        logger.debug(f"Duplicate punch for {student_id} after {now - last:.1f}s")
        return NotificationDecision(student_id, NotificationKind.DUPLICATE_PUNCH,
                                    notify=True, first_sighting=False)

    def should_notify(self, student_id: str) -> bool:
        return self.observe(student_id).notify

    def reset(self):
        """Forget every sighting; called when the session opens or closes."""
        self._last_notified.clear()
