from pathlib import Path
from typing import Any

import pytest

from platform_log_tail.config import (
    Config,
    ContainerState,
    ExportConfig,
    KubeClientAuthType,
    KubeConfig,
    OutputType,
    RestartConfig,
    RestartPolicyType,
    SelectorConfig,
    TailConfig,
)
from platform_log_tail.config_factory import EnvironConfigFactory


CA_DATA_PEM = "this-is-certificate-authority-public-key"
TOKEN = "this-is-token"


@pytest.fixture
def cert_authority_path(tmp_path: Path) -> str:
    ca_path = tmp_path / "ca.crt"
    ca_path.write_text(CA_DATA_PEM)
    return str(ca_path)


@pytest.fixture
def token_path(tmp_path: Path) -> str:
    token_path = tmp_path / "token"
    token_path.write_text(TOKEN + "\n")
    return str(token_path)


@pytest.fixture
def environ(cert_authority_path: str, token_path: str) -> dict[str, Any]:
    return {
        "NP_LOG_TAIL_K8S_API_URL": "https://localhost:8443",
        "NP_LOG_TAIL_K8S_AUTH_TYPE": "token",
        "NP_LOG_TAIL_K8S_CA_PATH": cert_authority_path,
        "NP_LOG_TAIL_K8S_TOKEN_PATH": token_path,
        "NP_LOG_TAIL_K8S_AUTH_CERT_PATH": "/cert_path",
        "NP_LOG_TAIL_K8S_AUTH_CERT_KEY_PATH": "/cert_key_path",
        "NP_LOG_TAIL_K8S_CLIENT_CONN_TIMEOUT": "111",
        "NP_LOG_TAIL_K8S_CLIENT_READ_TIMEOUT": "222",
        "NP_LOG_TAIL_K8S_CLIENT_CONN_POOL_SIZE": "333",
        "NP_LOG_TAIL_K8S_WATCH_TIMEOUT": "444",
    }


def test_create_defaults(environ: dict[str, Any], token_path: str) -> None:
    config = EnvironConfigFactory(environ).create()

    assert config == Config(
        kube=KubeConfig(
            endpoint_url="https://localhost:8443",
            cert_authority_data_pem=CA_DATA_PEM,
            auth_type=KubeClientAuthType.TOKEN,
            token=TOKEN,
            token_path=token_path,
            auth_cert_path="/cert_path",
            auth_cert_key_path="/cert_key_path",
            client_conn_timeout_s=111,
            client_read_timeout_s=222,
            client_conn_pool_size=333,
            watch_timeout_s=444,
        ),
    )
    assert config.selector == SelectorConfig()
    assert config.tail.since_seconds == 172800
    assert config.outputs == (OutputType.CONSOLE,)


def test_create_custom(environ: dict[str, Any]) -> None:
    environ.update(
        {
            "NP_LOG_TAIL_NAMESPACES": "default, kube-system",
            "NP_LOG_TAIL_ALL_NAMESPACES": "false",
            "NP_LOG_TAIL_POD_QUERY": "^web-",
            "NP_LOG_TAIL_LABEL_SELECTOR": "app=web",
            "NP_LOG_TAIL_FIELD_SELECTOR": "status.phase=Running",
            "NP_LOG_TAIL_NODE_NAME": "node-1",
            "NP_LOG_TAIL_CONTAINER": "^app$",
            "NP_LOG_TAIL_EXCLUDE_CONTAINER": "istio",
            "NP_LOG_TAIL_CONTAINER_STATES": "running,terminated",
            "NP_LOG_TAIL_INIT_CONTAINERS": "false",
            "NP_LOG_TAIL_EPHEMERAL_CONTAINERS": "0",
            "NP_LOG_TAIL_INCLUDE": "error,warn",
            "NP_LOG_TAIL_EXCLUDE": "healthz",
            "NP_LOG_TAIL_HIGHLIGHT": "timeout",
            "NP_LOG_TAIL_MAX_CONCURRENT_TAILS": "5",
            "NP_LOG_TAIL_MAX_LOG_REQUESTS": "7",
            "NP_LOG_TAIL_FOLLOW": "false",
            "NP_LOG_TAIL_RESUME": "false",
            "NP_LOG_TAIL_TIMESTAMPS": "true",
            "NP_LOG_TAIL_ONLY_LOG_LINES": "yes",
            "NP_LOG_TAIL_SINCE_SECONDS": "-",
            "NP_LOG_TAIL_TAIL_LINES": "10",
            "NP_LOG_TAIL_RESTART_POLICY": "backoff",
            "NP_LOG_TAIL_RESTART_BACKOFF_INITIAL": "0.5",
            "NP_LOG_TAIL_RESTART_BACKOFF_MAX": "5",
            "NP_LOG_TAIL_RESTART_BACKOFF_FACTOR": "3",
            "NP_LOG_TAIL_OUTPUT": "console,export",
            "NP_LOG_TAIL_EXPORT_PATH": "/tmp/logs.ndjson",
            "NP_LOG_TAIL_EXPORT_BATCH_SIZE": "10",
            "NP_LOG_TAIL_EXPORT_QUEUE_SIZE": "20",
            "NP_LOG_TAIL_EXPORT_TIMEOUT": "1.5",
            "NP_LOG_TAIL_SHUTDOWN_TIMEOUT": "3",
        }
    )

    config = EnvironConfigFactory(environ).create()

    assert config.selector == SelectorConfig(
        namespaces=("default", "kube-system"),
        all_namespaces=False,
        pod_query="^web-",
        label_selector="app=web",
        field_selector="status.phase=Running",
        node_name="node-1",
        container_query="^app$",
        exclude_container_query="istio",
        container_states=(ContainerState.RUNNING, ContainerState.TERMINATED),
        init_containers=False,
        ephemeral_containers=False,
    )
    assert config.tail == TailConfig(
        follow=False,
        timestamps=True,
        only_log_lines=True,
        since_seconds=None,
        tail_lines=10,
        include=("error", "warn"),
        exclude=("healthz",),
        highlight=("timeout",),
        resume=False,
        max_concurrent_tails=5,
        max_log_requests=7,
    )
    assert config.restart == RestartConfig(
        policy=RestartPolicyType.BACKOFF,
        backoff_initial_s=0.5,
        backoff_max_s=5.0,
        backoff_factor=3.0,
    )
    assert config.outputs == (OutputType.CONSOLE, OutputType.EXPORT)
    assert config.export == ExportConfig(
        path="/tmp/logs.ndjson", batch_size=10, queue_size=20, timeout_s=1.5
    )
    assert config.shutdown_timeout_s == 3.0


def test_create_without_auth(environ: dict[str, Any]) -> None:
    environ["NP_LOG_TAIL_K8S_AUTH_TYPE"] = "none"
    del environ["NP_LOG_TAIL_K8S_CA_PATH"]
    del environ["NP_LOG_TAIL_K8S_TOKEN_PATH"]

    config = EnvironConfigFactory(environ).create()

    assert config.kube.auth_type == KubeClientAuthType.NONE
    assert config.kube.cert_authority_data_pem is None
    assert config.kube.token is None


def test_create_invalid_bool(environ: dict[str, Any]) -> None:
    environ["NP_LOG_TAIL_FOLLOW"] = "maybe"

    with pytest.raises(ValueError, match="NP_LOG_TAIL_FOLLOW"):
        EnvironConfigFactory(environ).create()


def test_create_invalid_container_state(environ: dict[str, Any]) -> None:
    environ["NP_LOG_TAIL_CONTAINER_STATES"] = "sleeping"

    with pytest.raises(ValueError):
        EnvironConfigFactory(environ).create()


def test_create_without_api_url(environ: dict[str, Any]) -> None:
    del environ["NP_LOG_TAIL_K8S_API_URL"]

    with pytest.raises(KeyError):
        EnvironConfigFactory(environ).create()
