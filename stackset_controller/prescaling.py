"""Prescaling of stacks that start receiving traffic.

When a stack goes from (effectively) no traffic to some traffic, it is sized to
absorb all the capacity that was serving before the shift: its replica floor
becomes the sum of the effective replicas of the stacks already serving. The
floor holds for the StackSet's prescaling window and is then dropped without a
ramp-down.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping

from stackset_controller.logger import ControllerLogger
from stackset_controller.model import PrescalingConfig, PrescalingRecord, Stack, StackSetSnapshot
from stackset_controller.traffic import WeightIncrease

logger = ControllerLogger("prescaling").logger


@dataclass(frozen=True)
class PrescalingState:
    """Prescaling records of one StackSet as seen at `now`."""

    now: datetime
    records: Mapping[str, PrescalingRecord] = field(default_factory=dict, hash=False)

    def record(self, stack: str) -> PrescalingRecord | None:
        return self.records.get(stack)

    def active(self, stack: str) -> PrescalingRecord | None:
        record = self.records.get(stack)
        if record is not None and record.is_active(self.now):
            return record
        return None

    def active_stacks(self) -> set[str]:
        return {name for name, record in self.records.items() if record.is_active(self.now)}


class PrescalingEngine:
    def __init__(self, negligible_weight: float = 0.0):
        self.negligible_weight = negligible_weight

    def is_negligible(self, weight: float) -> bool:
        return weight <= self.negligible_weight

    def is_serving(self, stack: Stack) -> bool:
        return not self.is_negligible(stack.previous_weight) or not self.is_negligible(stack.actual_weight)

    def compute_floor(self, stack: str, siblings: Iterable[Stack], exclude: set[str] | None = None) -> int:
        exclude = exclude or set()
        return sum(
            s.effective_replicas
            for s in siblings
            if s.name != stack and s.name not in exclude and self.is_serving(s)
        )

    def on_weight_increase(
        self,
        stack: Stack,
        previous_weight: float,
        new_weight: float,
        siblings: Iterable[Stack],
        config: PrescalingConfig,
        now: datetime,
        exclude: set[str] | None = None,
    ) -> PrescalingRecord | None:
        """Create or refresh the prescaling record of `stack`.

        Returns the record in force afterwards, which may be the existing one.
        """
        existing = stack.prescaling
        if not config.enabled:
            return existing
        if new_weight <= previous_weight or not self.is_negligible(previous_weight):
            return existing
        if existing is not None and existing.is_active(now) and new_weight <= existing.trigger_weight:
            return existing

        floor = self.compute_floor(stack.name, siblings, exclude)
        record = PrescalingRecord(
            floor=floor,
            window_start=now,
            window_end=now + config.timeout,
            previous_weight=previous_weight,
            trigger_weight=new_weight,
        )
        logger.info(
            f"Prescaling {stack.name} to {floor} replicas until {record.window_end.isoformat()} "
            f"(traffic {previous_weight} -> {new_weight})"
        )
        return record

    def apply(self, snapshot: StackSetSnapshot, increases: Iterable[WeightIncrease]) -> PrescalingState:
        records = {s.name: s.prescaling for s in snapshot.stacks if s.prescaling is not None}
        increases = list(increases)
        arming = {
            inc.stack for inc in increases
            if self.is_negligible(inc.previous_weight) and inc.new_weight > inc.previous_weight
        }
        for inc in increases:
            stack = snapshot.stack(inc.stack)
            if stack is None:
                continue
            record = self.on_weight_increase(
                stack,
                inc.previous_weight,
                inc.new_weight,
                snapshot.stacks,
                snapshot.stackset.prescaling,
                snapshot.now,
                exclude=arming,
            )
            if record is not None:
                records[stack.name] = record
        return PrescalingState(now=snapshot.now, records=records)


__all__ = ["PrescalingEngine", "PrescalingState"]
