"""
Pause and abort accumulator for a single reconciliation pass.

Strategy code records which pause reasons to add or remove and whether to abort;
the result is folded into the new status exactly once, when it is persisted.
"""
import logging
from datetime import datetime
from typing import List, Optional

from rollout_controller import timeutil
from rollout_controller.rollout_types import (
    PauseCondition,
    PauseReason,
    Rollout,
    RolloutPause,
    RolloutStatus,
)

logger = logging.getLogger(__name__)


def get_pause_condition(rollout: Rollout, reason: PauseReason) -> Optional[PauseCondition]:
    for cond in rollout.status.pause_conditions:
        if cond.reason == reason:
            return cond
    return None


class PauseContext:
    """Pause/abort changes requested during one pass over a rollout."""

    def __init__(self, rollout: Rollout, log: Optional[logging.LoggerAdapter] = None):
        self.rollout = rollout
        self.log = log or logger
        self.add_pause_reasons: List[PauseReason] = []
        self.remove_pause_reasons: List[PauseReason] = []
        self.clear_pause_reasons = False
        self.abort_requested = False
        self.abort_removed = False
        self.abort_message = ""

    def has_add_pause(self) -> bool:
        return len(self.add_pause_reasons) > 0

    def is_aborted(self) -> bool:
        if self.abort_removed:
            return False
        return self.abort_requested or self.rollout.status.abort

    def add_abort(self, message: str) -> None:
        self.abort_requested = True
        self.abort_message = message

    def remove_abort(self) -> None:
        self.abort_removed = True

    def add_pause_condition(self, reason: PauseReason) -> None:
        self.add_pause_reasons.append(reason)

    def remove_pause_condition(self, reason: PauseReason) -> None:
        self.remove_pause_reasons.append(reason)

    def clear_pause_conditions(self) -> None:
        self.clear_pause_reasons = True

    def calculate_pause_status(self, new_status: RolloutStatus) -> None:
        """
        Apply the accumulated requests to a freshly built status.

        An abort wins over everything else and keeps its original timestamp. Otherwise the
        previous pause conditions are carried over minus the removed reasons, and newly added
        reasons start now and mark the pause as controller initiated.

        Args:
            new_status: Status being compiled this pass, updated in place
        """
        now = timeutil.now()
        previous = self.rollout.status
        if self.abort_requested:
            new_status.abort = True
            new_status.aborted_at = previous.aborted_at or now
            return

        new_status.abort = previous.abort
        new_status.aborted_at = previous.aborted_at
        if not self.abort_removed and previous.abort:
            return
        new_status.abort = False
        new_status.aborted_at = None

        if self.clear_pause_reasons:
            return

        controller_pause = previous.controller_pause
        to_remove = set(self.remove_pause_reasons)
        conditions: List[PauseCondition] = []
        existing = set()
        for cond in previous.pause_conditions:
            if cond.reason not in to_remove:
                conditions.append(cond)
            existing.add(cond.reason)

        for reason in self.add_pause_reasons:
            if reason in existing:
                continue
            self.log.info(f"Adding pause reason {reason.value} with start time {timeutil.format_time(now)}")
            conditions.append(PauseCondition(reason=reason, start_time=now))
            existing.add(reason)
            controller_pause = True

        if not conditions:
            return
        new_status.controller_pause = controller_pause
        new_status.pause_conditions = conditions

    def completed_canary_pause_step(self, pause: RolloutPause) -> bool:
        """
        True once a canary pause step is over.

        A timed pause completes when its duration has elapsed since the pause began;
        an indefinite pause completes when it was resumed externally.
        """
        condition = get_pause_condition(self.rollout, PauseReason.CANARY_PAUSE_STEP)
        duration = pause.duration_seconds()
        if duration is not None:
            if condition is not None and timeutil.now() > self._deadline(condition.start_time, duration):
                self.log.info("Rollout has waited the duration of the pause step")
                return True
        elif self.rollout.status.controller_pause and condition is None:
            self.log.info("Rollout has been unpaused")
            return True
        return False

    def completed_blue_green_pause(self) -> bool:
        condition = get_pause_condition(self.rollout, PauseReason.BLUE_GREEN_PAUSE)
        if condition is not None:
            seconds = self.rollout.spec.strategy.blue_green.auto_promotion_seconds
            if seconds != 0:
                return timeutil.now() > self._deadline(condition.start_time, seconds)
        elif self.rollout.status.controller_pause:
            return True
        return False

    @staticmethod
    def _deadline(start: datetime, seconds: int) -> datetime:
        return timeutil.parse_time(start) + timeutil.seconds(seconds)
