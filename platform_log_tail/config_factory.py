import logging
import os
from collections.abc import Mapping
from pathlib import Path

from .config import (
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


logger = logging.getLogger(__name__)


class EnvironConfigFactory:
    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ or os.environ

    def _get_bool(self, name: str, *, default: bool) -> bool:
        value = self._environ.get(name)
        if value is None or value == "":
            return default
        value = value.lower()
        if value in ("1", "true", "yes"):
            return True
        if value in ("0", "false", "no"):
            return False
        msg = f'"{name}" can be "true"/"1" or "false"/"0"'
        raise ValueError(msg)

    def _get_list(self, name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
        value = self._environ.get(name)
        if not value:
            return default
        return tuple(item.strip() for item in value.split(",") if item.strip())

    def _get_optional_int(self, name: str, default: int | None) -> int | None:
        value = self._environ.get(name)
        if value is None:
            return default
        if value in ("", "-"):
            return None
        return int(value)

    def create(self) -> Config:
        return Config(
            kube=self._create_kube(),
            selector=self._create_selector(),
            tail=self._create_tail(),
            restart=self._create_restart(),
            outputs=self._create_outputs(),
            export=self._create_export(),
            shutdown_timeout_s=float(
                self._environ.get(
                    "NP_LOG_TAIL_SHUTDOWN_TIMEOUT", Config.shutdown_timeout_s
                )
            ),
        )

    def _create_kube(self) -> KubeConfig:
        endpoint_url = self._environ["NP_LOG_TAIL_K8S_API_URL"]
        auth_type = KubeClientAuthType(
            self._environ.get("NP_LOG_TAIL_K8S_AUTH_TYPE", KubeConfig.auth_type.value)
        )
        ca_path = self._environ.get("NP_LOG_TAIL_K8S_CA_PATH")
        ca_data = Path(ca_path).read_text() if ca_path else None

        token_path = self._environ.get("NP_LOG_TAIL_K8S_TOKEN_PATH")
        token = Path(token_path).read_text().strip() if token_path else None

        return KubeConfig(
            endpoint_url=endpoint_url,
            cert_authority_data_pem=ca_data,
            auth_type=auth_type,
            auth_cert_path=self._environ.get("NP_LOG_TAIL_K8S_AUTH_CERT_PATH"),
            auth_cert_key_path=self._environ.get("NP_LOG_TAIL_K8S_AUTH_CERT_KEY_PATH"),
            token=token,
            token_path=token_path,
            client_conn_timeout_s=int(
                self._environ.get("NP_LOG_TAIL_K8S_CLIENT_CONN_TIMEOUT")
                or KubeConfig.client_conn_timeout_s
            ),
            client_read_timeout_s=int(
                self._environ.get("NP_LOG_TAIL_K8S_CLIENT_READ_TIMEOUT")
                or KubeConfig.client_read_timeout_s
            ),
            client_conn_pool_size=int(
                self._environ.get("NP_LOG_TAIL_K8S_CLIENT_CONN_POOL_SIZE")
                or KubeConfig.client_conn_pool_size
            ),
            watch_timeout_s=int(
                self._environ.get("NP_LOG_TAIL_K8S_WATCH_TIMEOUT")
                or KubeConfig.watch_timeout_s
            ),
        )

    def _create_selector(self) -> SelectorConfig:
        states = tuple(
            ContainerState(state)
            for state in self._get_list("NP_LOG_TAIL_CONTAINER_STATES")
        )
        return SelectorConfig(
            namespaces=self._get_list(
                "NP_LOG_TAIL_NAMESPACES", tuple(SelectorConfig.namespaces)
            ),
            all_namespaces=self._get_bool(
                "NP_LOG_TAIL_ALL_NAMESPACES", default=SelectorConfig.all_namespaces
            ),
            pod_query=self._environ.get(
                "NP_LOG_TAIL_POD_QUERY", SelectorConfig.pod_query
            ),
            label_selector=self._environ.get(
                "NP_LOG_TAIL_LABEL_SELECTOR", SelectorConfig.label_selector
            ),
            field_selector=self._environ.get(
                "NP_LOG_TAIL_FIELD_SELECTOR", SelectorConfig.field_selector
            ),
            node_name=self._environ.get(
                "NP_LOG_TAIL_NODE_NAME", SelectorConfig.node_name
            ),
            container_query=self._environ.get(
                "NP_LOG_TAIL_CONTAINER", SelectorConfig.container_query
            ),
            exclude_container_query=self._environ.get(
                "NP_LOG_TAIL_EXCLUDE_CONTAINER", SelectorConfig.exclude_container_query
            ),
            container_states=states or SelectorConfig.container_states,
            init_containers=self._get_bool(
                "NP_LOG_TAIL_INIT_CONTAINERS", default=SelectorConfig.init_containers
            ),
            ephemeral_containers=self._get_bool(
                "NP_LOG_TAIL_EPHEMERAL_CONTAINERS",
                default=SelectorConfig.ephemeral_containers,
            ),
        )

    def _create_tail(self) -> TailConfig:
        return TailConfig(
            follow=self._get_bool("NP_LOG_TAIL_FOLLOW", default=TailConfig.follow),
            timestamps=self._get_bool(
                "NP_LOG_TAIL_TIMESTAMPS", default=TailConfig.timestamps
            ),
            only_log_lines=self._get_bool(
                "NP_LOG_TAIL_ONLY_LOG_LINES", default=TailConfig.only_log_lines
            ),
            since_seconds=self._get_optional_int(
                "NP_LOG_TAIL_SINCE_SECONDS", TailConfig.since_seconds
            ),
            tail_lines=self._get_optional_int(
                "NP_LOG_TAIL_TAIL_LINES", TailConfig.tail_lines
            ),
            include=self._get_list("NP_LOG_TAIL_INCLUDE"),
            exclude=self._get_list("NP_LOG_TAIL_EXCLUDE"),
            highlight=self._get_list("NP_LOG_TAIL_HIGHLIGHT"),
            resume=self._get_bool("NP_LOG_TAIL_RESUME", default=TailConfig.resume),
            max_concurrent_tails=int(
                self._environ.get("NP_LOG_TAIL_MAX_CONCURRENT_TAILS")
                or TailConfig.max_concurrent_tails
            ),
            max_log_requests=int(
                self._environ.get("NP_LOG_TAIL_MAX_LOG_REQUESTS")
                or TailConfig.max_log_requests
            ),
        )

    def _create_restart(self) -> RestartConfig:
        return RestartConfig(
            policy=RestartPolicyType(
                self._environ.get(
                    "NP_LOG_TAIL_RESTART_POLICY", RestartConfig.policy.value
                )
            ),
            backoff_initial_s=float(
                self._environ.get(
                    "NP_LOG_TAIL_RESTART_BACKOFF_INITIAL",
                    RestartConfig.backoff_initial_s,
                )
            ),
            backoff_max_s=float(
                self._environ.get(
                    "NP_LOG_TAIL_RESTART_BACKOFF_MAX", RestartConfig.backoff_max_s
                )
            ),
            backoff_factor=float(
                self._environ.get(
                    "NP_LOG_TAIL_RESTART_BACKOFF_FACTOR", RestartConfig.backoff_factor
                )
            ),
        )

    def _create_outputs(self) -> tuple[OutputType, ...]:
        outputs = tuple(
            OutputType(output) for output in self._get_list("NP_LOG_TAIL_OUTPUT")
        )
        return outputs or tuple(Config.outputs)

    def _create_export(self) -> ExportConfig:
        return ExportConfig(
            path=self._environ.get("NP_LOG_TAIL_EXPORT_PATH", ExportConfig.path),
            batch_size=int(
                self._environ.get(
                    "NP_LOG_TAIL_EXPORT_BATCH_SIZE", ExportConfig.batch_size
                )
            ),
            queue_size=int(
                self._environ.get(
                    "NP_LOG_TAIL_EXPORT_QUEUE_SIZE", ExportConfig.queue_size
                )
            ),
            timeout_s=float(
                self._environ.get("NP_LOG_TAIL_EXPORT_TIMEOUT", ExportConfig.timeout_s)
            ),
        )
