from datetime import timedelta

import pytest

from stackset_controller.config import (
    CONFIG_PATH_ENV,
    NAMESPACE_ENV,
    ControllerConfig,
    config_from_dict,
    load_config,
    parse_duration,
)
from stackset_controller.errors import MisconfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    monkeypatch.delenv(CONFIG_PATH_ENV, raising=False)
    monkeypatch.delenv(NAMESPACE_ENV, raising=False)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("90s", timedelta(seconds=90)),
        ("1m", timedelta(minutes=1)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("500ms", timedelta(milliseconds=500)),
        ("2m30.5s", timedelta(minutes=2, seconds=30.5)),
        ("120", timedelta(seconds=120)),
        (45, timedelta(seconds=45)),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "soon", "5 m", "1d", "m5", -3, True])
def test_parse_duration_rejects_garbage(value):
    with pytest.raises(MisconfigurationError):
        parse_duration(value)


def test_config_from_dict_maps_camel_case_keys():
    cfg = config_from_dict(
        {
            "namespace": "shop",
            "intervalSeconds": 5,
            "workers": 4,
            "defaultPrescalingTimeout": "10m",
            "negligibleWeight": 0.5,
            "logLevel": "debug",
            "inCluster": False,
        }
    )

    assert cfg.namespace == "shop"
    assert cfg.interval_seconds == 5.0
    assert cfg.workers == 4
    assert cfg.default_prescaling_timeout == timedelta(minutes=10)
    assert cfg.negligible_weight == 0.5
    assert cfg.log_level_value == 10
    assert cfg.in_cluster is False
    assert cfg.convergence_tolerance == ControllerConfig().convergence_tolerance


@pytest.mark.parametrize(
    "raw",
    [
        {"interval": 5},
        {"workers": 0},
        {"workers": "two"},
        {"intervalSeconds": 0},
        {"convergenceTolerance": "high"},
        {"defaultPrescalingTimeout": "later"},
    ],
)
def test_config_from_dict_rejects_invalid_values(raw):
    with pytest.raises(MisconfigurationError):
        config_from_dict(raw)


def test_load_config_reads_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("namespace: shop\nworkers: 3\ndefaultPrescalingTimeout: 90s\n")

    cfg = load_config(str(path))

    assert cfg.namespace == "shop"
    assert cfg.workers == 3
    assert cfg.default_prescaling_timeout == timedelta(seconds=90)


def test_load_config_missing_file_gives_defaults(tmp_path):
    assert load_config(str(tmp_path / "absent.yaml")) == ControllerConfig()


def test_load_config_path_and_namespace_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("namespace: shop\nlogLevel: WARNING\n")
    monkeypatch.setenv(CONFIG_PATH_ENV, str(path))
    monkeypatch.setenv(NAMESPACE_ENV, "checkout")

    cfg = load_config()

    assert cfg.namespace == "checkout"
    assert cfg.log_level == "WARNING"


def test_empty_config_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")

    assert load_config(str(path)) == ControllerConfig()


@pytest.mark.parametrize("content", ["namespace: [shop\n", "- a\n- b\n"])
def test_unparsable_config_file_is_rejected(tmp_path, content):
    path = tmp_path / "config.yaml"
    path.write_text(content)

    with pytest.raises(MisconfigurationError):
        load_config(str(path))
