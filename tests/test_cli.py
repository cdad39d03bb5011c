import argparse
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from conftest import stackset_resource

from stackset_controller import cli
from stackset_controller.config import ACTUAL_WEIGHTS_ANNOTATION, DESIRED_WEIGHTS_ANNOTATION


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("STACKSET_NAMESPACE", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("namespace: shop\ninCluster: false\n")
    return str(path)


@pytest.fixture
def custom(monkeypatch):
    api = MagicMock()
    api.get_namespaced_custom_object.return_value = stackset_resource("app")
    api.list_namespaced_custom_object.return_value = {
        "items": [{"metadata": {"name": "app-v1"}}, {"metadata": {"name": "app-v2"}}]
    }
    monkeypatch.setattr(cli, "build_apis", lambda cfg: {"custom": api, "networking": MagicMock()})
    return api


def test_parse_weights():
    assert cli.parse_weights(["app-v1=40", "app-v2=60.5"]) == {"app-v1": 40.0, "app-v2": 60.5}


@pytest.mark.parametrize("pair", ["app-v1", "=40", "app-v1=lots"])
def test_parse_weights_rejects_malformed_pairs(pair):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_weights([pair])


def test_invalid_config_exits_with_2(tmp_path, capsys):
    path = tmp_path / "config.yaml"
    path.write_text("workers: 0\n")

    assert cli.main(["--config", str(path), "run", "--once"]) == 2
    assert "workers" in capsys.readouterr().err


def test_set_traffic_persists_complete_mapping(config_file, custom, capsys):
    code = cli.main(["--config", config_file, "set-traffic", "app", "app-v2=100"])

    assert code == 0
    body = custom.patch_namespaced_custom_object.call_args.args[-1]
    assert body == {"spec": {"traffic": [{"stackName": "app-v1", "weight": 0.0}, {"stackName": "app-v2", "weight": 100.0}]}}
    assert json.loads(capsys.readouterr().out) == {"app-v1": 0.0, "app-v2": 100.0}


def test_set_traffic_rejects_bad_total(config_file, custom):
    assert cli.main(["--config", config_file, "set-traffic", "app", "app-v1=30", "app-v2=30"]) == 1
    custom.patch_namespaced_custom_object.assert_not_called()


def ingress(annotations):
    return SimpleNamespace(metadata=SimpleNamespace(annotations=annotations))


@pytest.fixture
def networking(monkeypatch):
    api = MagicMock()
    api.read_namespaced_ingress.return_value = ingress({})
    monkeypatch.setattr(cli, "build_apis", lambda cfg: {"custom": MagicMock(), "networking": api})
    return api


def test_await_desired_traffic_reads_ingress_handover(config_file, networking, capsys):
    networking.read_namespaced_ingress.return_value = ingress(
        {
            DESIRED_WEIGHTS_ANNOTATION: json.dumps({"app-v2": 100}),
            ACTUAL_WEIGHTS_ANNOTATION: json.dumps({"app-v1": 100}),
        }
    )

    code = cli.main(["--config", config_file, "await-traffic", "app", "app-v2=100", "--kind", "desired", "--timeout", "0"])

    assert code == 0
    assert json.loads(capsys.readouterr().out) == {"app-v2": 100.0}
    networking.read_namespaced_ingress.assert_called_with(name="app", namespace="shop")


def test_await_actual_traffic(config_file, networking, capsys):
    networking.read_namespaced_ingress.return_value = ingress({ACTUAL_WEIGHTS_ANNOTATION: json.dumps({"app-v2": 100})})

    code = cli.main(["--config", config_file, "await-traffic", "app", "app-v2=100", "--timeout", "0"])

    assert code == 0
    assert json.loads(capsys.readouterr().out) == {"app-v2": 100.0}


def test_await_traffic_times_out(config_file, networking):
    networking.read_namespaced_ingress.return_value = ingress({ACTUAL_WEIGHTS_ANNOTATION: json.dumps({"app-v1": 100})})

    code = cli.main(["--config", config_file, "await-traffic", "app", "app-v2=100", "--kind", "desired", "--timeout", "0"])

    assert code == 1
