from datetime import datetime, timedelta, timezone

import pytest
from conftest import T0, stack_resource, stackset_resource

from stackset_controller.errors import MisconfigurationError
from stackset_controller.model import (
    AutoscalerBounds,
    PrescalingRecord,
    TargetMode,
    format_time,
    parse_autoscaler,
    parse_time,
    parse_traffic,
    stack_from_resource,
    stackset_from_resource,
)

DEFAULT_TIMEOUT = timedelta(minutes=5)


def test_stackset_from_resource():
    obj = stackset_resource(traffic={"app-v1": 100}, timeout="90s", limit=3, min_age=600, version="v2")

    stackset = stackset_from_resource(obj, DEFAULT_TIMEOUT)

    assert stackset.name == "app"
    assert stackset.version == "v2"
    assert stackset.retention.retention_count == 3
    assert stackset.retention.min_age == timedelta(minutes=10)
    assert stackset.prescaling.enabled
    assert stackset.prescaling.timeout == timedelta(seconds=90)
    assert stackset.desired_traffic.as_dict() == {"app-v1": 100.0}


def test_stackset_without_annotations_uses_defaults():
    obj = stackset_resource(prescale=False, timeout=None)
    del obj["spec"]["stackLifecycle"]

    stackset = stackset_from_resource(obj, DEFAULT_TIMEOUT)

    assert not stackset.prescaling.enabled
    assert stackset.prescaling.timeout == DEFAULT_TIMEOUT
    assert stackset.retention.retention_count == 10
    assert stackset.retention.min_age == timedelta(0)


def test_negative_retention_is_a_misconfiguration():
    with pytest.raises(MisconfigurationError, match="limit"):
        stackset_from_resource(stackset_resource(limit=-1), DEFAULT_TIMEOUT)


def test_stack_from_resource_reads_status():
    obj = stack_resource("app", "v2", T0, replicas=2, autoscaler=(1, 4))
    obj["status"] = {
        "desiredTrafficWeight": 10,
        "actualTrafficWeight": 25,
        "targetMode": "Prescaled",
        "prescaling": {
            "active": True,
            "replicas": 6,
            "desiredTrafficWeight": 10,
            "previousTrafficWeight": 0,
            "lastTrafficIncrease": "2026-03-02T12:00:00Z",
            "windowEnd": "2026-03-02T12:05:00Z",
        },
    }

    stack = stack_from_resource(obj, "app", T0 + timedelta(hours=1))

    assert stack.name == "app-v2"
    assert stack.replicas == 2
    assert stack.created == T0
    assert stack.autoscaler == AutoscalerBounds(1, 4)
    assert stack.previous_weight == 25.0
    assert stack.mode == TargetMode.PRESCALED
    assert stack.prescaling == PrescalingRecord(6, T0, T0 + timedelta(minutes=5), 0.0, 10.0)


def test_stack_without_creation_timestamp_is_created_at_pass_time():
    obj = stack_resource("app", "v3", T0)
    del obj["metadata"]["creationTimestamp"]
    now = T0 + timedelta(minutes=7)

    stack = stack_from_resource(obj, "app", now)

    assert stack.created == now
    assert stack.version == "v3"


def test_malformed_prescaling_status_is_ignored():
    assert PrescalingRecord.from_status({"replicas": 3}) is None
    assert PrescalingRecord.from_status({"lastTrafficIncrease": "yesterday", "windowEnd": "never"}) is None


@pytest.mark.parametrize(
    "raw",
    [
        {"minReplicas": 5, "maxReplicas": 2},
        {"minReplicas": 1},
        {"minReplicas": "1", "maxReplicas": 3},
    ],
)
def test_parse_autoscaler_rejects_bad_bounds(raw):
    with pytest.raises(MisconfigurationError):
        parse_autoscaler(raw, "Stack app-v1.spec.autoscaler")


def test_parse_autoscaler_defaults_minimum_to_one():
    assert parse_autoscaler({"maxReplicas": 3}, "x") == AutoscalerBounds(1, 3)
    assert parse_autoscaler(None, "x") is None


def test_bounds_clamp():
    bounds = AutoscalerBounds(2, 5)
    assert [bounds.clamp(n) for n in (0, 3, 9)] == [2, 3, 5]


def test_parse_traffic_rejects_non_numeric_weight():
    with pytest.raises(MisconfigurationError):
        parse_traffic([{"stackName": "app-v1", "weight": "lots"}])


def test_time_helpers_use_utc():
    naive = parse_time("2026-03-02T12:00:00")
    assert naive == T0
    assert format_time(datetime(2026, 3, 2, 14, 0, tzinfo=timezone(timedelta(hours=2)))) == "2026-03-02T12:00:00Z"
