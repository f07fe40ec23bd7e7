import enum
from collections.abc import Sequence
from dataclasses import dataclass, field


class KubeClientAuthType(str, enum.Enum):
    NONE = "none"
    TOKEN = "token"
    CERTIFICATE = "certificate"


@dataclass(frozen=True)
class KubeConfig:
    endpoint_url: str
    cert_authority_data_pem: str | None = field(default=None, repr=False)
    cert_authority_path: str | None = None
    auth_type: KubeClientAuthType = KubeClientAuthType.CERTIFICATE
    auth_cert_path: str | None = field(default=None, repr=False)
    auth_cert_key_path: str | None = None
    token_path: str | None = None
    token: str | None = field(default=None, repr=False)
    client_conn_timeout_s: int = 300
    client_read_timeout_s: int = 300
    client_conn_pool_size: int = 100
    watch_timeout_s: int = 300


class ContainerState(str, enum.Enum):
    RUNNING = "running"
    WAITING = "waiting"
    TERMINATED = "terminated"
    ALL = "all"


@dataclass(frozen=True)
class SelectorConfig:
    namespaces: Sequence[str] = ("default",)
    all_namespaces: bool = False
    pod_query: str = ".*"
    label_selector: str = ""
    field_selector: str = ""
    node_name: str = ""
    container_query: str = ".*"
    exclude_container_query: str = ""
    container_states: Sequence[ContainerState] = (ContainerState.RUNNING,)
    init_containers: bool = True
    ephemeral_containers: bool = True


@dataclass(frozen=True)
class TailConfig:
    follow: bool = True
    timestamps: bool = False
    only_log_lines: bool = False
    since_seconds: int | None = 48 * 60 * 60
    tail_lines: int | None = None
    include: Sequence[str] = ()
    exclude: Sequence[str] = ()
    highlight: Sequence[str] = ()
    resume: bool = True
    max_concurrent_tails: int = 50
    max_log_requests: int = 50


class RestartPolicyType(str, enum.Enum):
    IMMEDIATE = "immediate"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class RestartConfig:
    policy: RestartPolicyType = RestartPolicyType.IMMEDIATE
    backoff_initial_s: float = 1.0
    backoff_max_s: float = 30.0
    backoff_factor: float = 2.0


class OutputType(str, enum.Enum):
    CONSOLE = "console"
    EXPORT = "export"


@dataclass(frozen=True)
class ExportConfig:
    path: str = "-"
    batch_size: int = 512
    queue_size: int = 1024
    timeout_s: float = 30.0


@dataclass(frozen=True)
class Config:
    kube: KubeConfig
    selector: SelectorConfig = SelectorConfig()
    tail: TailConfig = TailConfig()
    restart: RestartConfig = RestartConfig()
    outputs: Sequence[OutputType] = (OutputType.CONSOLE,)
    export: ExportConfig = ExportConfig()
    shutdown_timeout_s: float = 10.0
