"""Garbage collection of old stack versions.

`collect` is a pure function of the snapshot and the prescaling state, so that
repeated passes over an unchanged StackSet agree on what to delete.
"""

from stackset_controller.logger import ControllerLogger
from stackset_controller.model import Stack, StackSetSnapshot
from stackset_controller.prescaling import PrescalingState

logger = ControllerLogger("stack_gc").logger


class StackGarbageCollector:
    def __init__(self, negligible_weight: float = 0.0):
        self.negligible_weight = negligible_weight

    def has_traffic(self, stack: Stack) -> bool:
        return stack.desired_weight > self.negligible_weight or stack.actual_weight > self.negligible_weight

    def candidates(self, snapshot: StackSetSnapshot) -> list[Stack]:
        """Stacks without desired or observed traffic, oldest first."""
        return [s for s in snapshot.by_creation() if not self.has_traffic(s)]

    def ineligibility(self, stack: Stack, snapshot: StackSetSnapshot, state: PrescalingState) -> str | None:
        """Return why `stack` must be kept, or None if it may be deleted."""
        retention = snapshot.stackset.retention
        newest = snapshot.by_creation()[::-1][: retention.retention_count]
        if any(s.name == stack.name for s in newest):
            return f"within the newest {retention.retention_count} stacks"
        if snapshot.now - stack.created <= retention.min_age:
            return f"younger than {retention.min_age}"
        if stack.desired_weight > self.negligible_weight:
            return "has desired traffic"
        if stack.actual_weight > self.negligible_weight:
            return "still receives traffic"
        record = state.active(stack.name)
        if record is not None:
            return f"prescaling window active until {record.window_end.isoformat()}"
        return None

    def collect(self, snapshot: StackSetSnapshot, state: PrescalingState) -> tuple[str, ...]:
        doomed = []
        for stack in self.candidates(snapshot):
            reason = self.ineligibility(stack, snapshot, state)
            if reason is None:
                doomed.append(stack.name)
            else:
                logger.debug(f"Keeping {stack.name}: {reason}")
        return tuple(doomed)


__all__ = ["StackGarbageCollector"]
