"""Replica arbitration.

Three sources compete for a stack's replica count: the static `replicas` of the
Stack, the floor of an active prescaling record and the autoscaler. Exactly one
value is written per stack and tick, either to the Deployment or to the HPA's
minReplicas, depending on whether an HPA is bound to the stack.
"""

from stackset_controller.logger import ControllerLogger
from stackset_controller.model import (
    EffectiveReplicaTarget,
    Stack,
    StackSetSnapshot,
    TargetMode,
    WriteTarget,
)
from stackset_controller.prescaling import PrescalingState

logger = ControllerLogger("arbiter").logger


class ReplicaArbiter:
    def effective(self, stack: Stack, state: PrescalingState) -> EffectiveReplicaTarget:
        record = state.active(stack.name)

        if stack.autoscaler is not None:
            if record is not None:
                replicas = stack.autoscaler.clamp(max(stack.replicas, record.floor))
                mode = TargetMode.PRESCALED
            else:
                # the autoscaler owns the replica count, only its floor is restored
                replicas = stack.autoscaler.min_replicas
                mode = TargetMode.AUTOSCALED
            return EffectiveReplicaTarget(stack.name, mode, replicas, WriteTarget.AUTOSCALER_MIN_REPLICAS)

        if record is not None:
            return EffectiveReplicaTarget(
                stack.name,
                TargetMode.PRESCALED,
                max(stack.replicas, record.floor),
                WriteTarget.DEPLOYMENT_REPLICAS,
            )
        return EffectiveReplicaTarget(stack.name, TargetMode.STATIC, stack.replicas, WriteTarget.DEPLOYMENT_REPLICAS)

    def arbitrate(self, snapshot: StackSetSnapshot, state: PrescalingState) -> dict[str, EffectiveReplicaTarget]:
        targets = {}
        for stack in snapshot.stacks:
            target = self.effective(stack, state)
            if stack.mode == TargetMode.PRESCALED and target.mode != TargetMode.PRESCALED:
                logger.info(f"Prescaling window of {stack.name} is over, back to {target.mode.value} ({target.replicas})")
            elif stack.mode is not None and stack.mode != target.mode:
                logger.info(f"{stack.name}: {stack.mode.value} -> {target.mode.value} ({target.replicas})")
            targets[stack.name] = target
        return targets


__all__ = ["ReplicaArbiter"]
