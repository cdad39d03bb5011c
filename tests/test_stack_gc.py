from datetime import timedelta

from conftest import T0

from stackset_controller.model import PrescalingRecord, RetentionPolicy, Stack, StackSet, StackSetSnapshot
from stackset_controller.prescaling import PrescalingState
from stackset_controller.stack_gc import StackGarbageCollector


def stack(version, age_minutes, desired=0.0, actual=0.0):
    return Stack(
        stackset="app",
        version=version,
        replicas=1,
        created=T0 - timedelta(minutes=age_minutes),
        desired_weight=desired,
        actual_weight=actual,
    )


def snapshot(stacks, retention_count=1, min_age=timedelta(0)):
    stackset = StackSet(
        name="app",
        namespace="default",
        retention=RetentionPolicy(retention_count=retention_count, min_age=min_age),
    )
    return StackSetSnapshot(stackset, tuple(stacks), T0)


def no_records():
    return PrescalingState(now=T0)


def active_record(*names):
    record = PrescalingRecord(3, T0 - timedelta(minutes=1), T0 + timedelta(minutes=4), 0.0, 100.0)
    return PrescalingState(now=T0, records={name: record for name in names})


def test_collects_old_stacks_without_traffic_oldest_first():
    snap = snapshot([stack("v3", 10, desired=100, actual=100), stack("v1", 30), stack("v2", 20)])

    assert StackGarbageCollector().collect(snap, no_records()) == ("app-v1", "app-v2")


def test_newest_stacks_are_retained():
    snap = snapshot([stack("v1", 30), stack("v2", 20), stack("v3", 10)], retention_count=2)

    assert StackGarbageCollector().collect(snap, no_records()) == ("app-v1",)


def test_stacks_younger_than_min_age_are_kept():
    snap = snapshot(
        [stack("v1", 30), stack("v2", 5), stack("v3", 1, desired=100)],
        min_age=timedelta(minutes=10),
    )

    assert StackGarbageCollector().collect(snap, no_records()) == ("app-v1",)


def test_stacks_with_traffic_are_never_candidates():
    snap = snapshot([stack("v1", 30, actual=20), stack("v2", 20, desired=5), stack("v3", 10, desired=95, actual=80)])

    assert StackGarbageCollector().candidates(snap) == []
    assert StackGarbageCollector().collect(snap, no_records()) == ()


def test_negligible_traffic_counts_as_none():
    snap = snapshot([stack("v1", 30, actual=0.2), stack("v2", 10, desired=100, actual=99.8)])

    assert StackGarbageCollector(negligible_weight=0.5).collect(snap, no_records()) == ("app-v1",)


def test_active_prescaling_window_holds_deletion():
    snap = snapshot([stack("v1", 300), stack("v2", 200), stack("v3", 10, desired=100)])
    gc = StackGarbageCollector()

    assert gc.collect(snap, active_record("app-v1")) == ("app-v2",)
    assert gc.ineligibility(snap.stack("app-v1"), snap, active_record("app-v1")).startswith("prescaling window")


def test_expired_prescaling_window_does_not_hold():
    expired = PrescalingRecord(3, T0 - timedelta(minutes=10), T0 - timedelta(minutes=5), 0.0, 100.0)
    state = PrescalingState(now=T0, records={"app-v1": expired})
    snap = snapshot([stack("v1", 30), stack("v2", 10, desired=100)])

    assert StackGarbageCollector().collect(snap, state) == ("app-v1",)


def test_collect_is_deterministic():
    stacks = [stack("v1", 30), stack("v2", 30), stack("v3", 20), stack("v4", 10, desired=100)]
    gc = StackGarbageCollector()

    first = gc.collect(snapshot(stacks), no_records())
    second = gc.collect(snapshot(list(reversed(stacks))), no_records())

    assert first == second == ("app-v1", "app-v2", "app-v3")
