from __future__ import annotations

from pathlib import Path

import pytest

from cluster_operator.src.config import (
    DEFAULT_RABBITMQ_IMAGE,
    OperatorConfig,
    env_int,
    load_operator_config,
)
from cluster_operator.src.errors import OperatorConfigError


def test_env_int_returns_default_when_unset() -> None:
    assert env_int("TEST_INT", 5, env={}) == 5


def test_env_int_parses_value() -> None:
    assert env_int("TEST_INT", 5, env={"TEST_INT": "12"}) == 12


def test_env_int_rejects_non_integer() -> None:
    with pytest.raises(OperatorConfigError, match="TEST_INT must be an integer"):
        env_int("TEST_INT", 5, env={"TEST_INT": "abc"})


def test_env_int_enforces_bounds() -> None:
    with pytest.raises(OperatorConfigError, match=">= 1"):
        env_int("TEST_INT", 5, minimum=1, env={"TEST_INT": "0"})
    with pytest.raises(OperatorConfigError, match="<= 10"):
        env_int("TEST_INT", 5, maximum=10, env={"TEST_INT": "11"})


def test_env_int_reads_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_INT", "7")

    assert env_int("TEST_INT", 5) == 7


def test_load_operator_config_defaults() -> None:
    assert load_operator_config({}) == OperatorConfig()
    assert OperatorConfig().image == DEFAULT_RABBITMQ_IMAGE


def test_load_operator_config_from_environment() -> None:
    config = load_operator_config(
        {
            "OPERATOR_NAMESPACE": "ops",
            "WATCH_NAMESPACE": "messaging",
            "DEFAULT_RABBITMQ_IMAGE": "registry.local/rabbitmq:3.8",
            "DEFAULT_IMAGE_PULL_SECRET": "registry-creds",
            "SERVICE_TYPE": "LoadBalancer",
            "PERSISTENCE_STORAGE": "20Gi",
            "PERSISTENCE_STORAGE_CLASS_NAME": "ssd",
            "METRICS_PORT": "9000",
        }
    )

    assert config.namespace == "ops"
    assert config.watch_namespace == "messaging"
    assert config.image == "registry.local/rabbitmq:3.8"
    assert config.image_pull_secret == "registry-creds"
    assert config.service_type == "LoadBalancer"
    assert config.persistence_storage == "20Gi"
    assert config.persistence_storage_class_name == "ssd"
    assert config.metrics_port == 9000


def test_load_operator_config_from_file_with_env_override(tmp_path: Path) -> None:
    config_file = tmp_path / "operator.yaml"
    config_file.write_text(
        """
image: registry.local/rabbitmq:file
imagePullSecret: file-secret
service:
  type: NodePort
  annotations:
    lb.example.com/internal: "true"
persistence:
  storage: 5Gi
  storageClassName: standard
""",
        encoding="utf-8",
    )

    config = load_operator_config(
        {"OPERATOR_CONFIG_FILE": str(config_file), "PERSISTENCE_STORAGE": "8Gi"}
    )

    assert config.image == "registry.local/rabbitmq:file"
    assert config.image_pull_secret == "file-secret"
    assert config.service_type == "NodePort"
    assert config.service_annotations == {"lb.example.com/internal": "true"}
    assert config.persistence_storage == "8Gi"
    assert config.persistence_storage_class_name == "standard"


def test_empty_pull_secret_means_none() -> None:
    assert load_operator_config({"DEFAULT_IMAGE_PULL_SECRET": "  "}).image_pull_secret is None


def test_invalid_service_type_is_rejected() -> None:
    with pytest.raises(OperatorConfigError, match="service type"):
        load_operator_config({"SERVICE_TYPE": "ExternalName"})


def test_blank_operator_namespace_is_rejected() -> None:
    with pytest.raises(OperatorConfigError):
        load_operator_config({"OPERATOR_NAMESPACE": " "})


def test_missing_config_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(OperatorConfigError, match="cannot read"):
        load_operator_config({"OPERATOR_CONFIG_FILE": str(tmp_path / "missing.yaml")})


def test_config_file_must_be_a_mapping(tmp_path: Path) -> None:
    config_file = tmp_path / "operator.yaml"
    config_file.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(OperatorConfigError, match="mapping"):
        load_operator_config({"OPERATOR_CONFIG_FILE": str(config_file)})


def test_invalid_yaml_is_rejected(tmp_path: Path) -> None:
    config_file = tmp_path / "operator.yaml"
    config_file.write_text("image: [unterminated\n", encoding="utf-8")

    with pytest.raises(OperatorConfigError, match="not valid YAML"):
        load_operator_config({"OPERATOR_CONFIG_FILE": str(config_file)})


def test_metrics_port_out_of_range_is_rejected() -> None:
    with pytest.raises(OperatorConfigError):
        load_operator_config({"METRICS_PORT": "70000"})
