from __future__ import annotations

import asyncio
import enum
import logging
import ssl
import typing as t
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

import aiohttp
import orjson
import trafaret
from yarl import URL

from .config import KubeClientAuthType, KubeConfig
from .utils import format_date, parse_date
from .validators import create_watch_event_validator


logger = logging.getLogger(__name__)

type JSON = dict[str, t.Any]


class KubeClientException(Exception):
    pass


class KubeClientUnauthorized(KubeClientException):
    pass


class ResourceNotFound(KubeClientException):
    pass


class ResourceGone(KubeClientException):
    pass


class ResourceBadRequest(KubeClientException):
    pass


@dataclass(frozen=True)
class Metadata:
    name: str | None
    namespace: str | None = None
    uid: str | None = None
    resource_version: str | None = None
    labels: t.Mapping[str, str] = field(default_factory=dict)
    annotations: t.Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_primitive(cls, payload: JSON) -> t.Self:
        return cls(
            name=payload.get("name"),
            namespace=payload.get("namespace"),
            uid=payload.get("uid"),
            resource_version=payload.get("resourceVersion"),
            labels=payload.get("labels") or {},
            annotations=payload.get("annotations") or {},
        )


class PodPhase(enum.StrEnum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class PodRestartPolicy(enum.StrEnum):
    ALWAYS = "Always"
    NEVER = "Never"
    ON_FAILURE = "OnFailure"


class ContainerKind(enum.StrEnum):
    REGULAR = "regular"
    INIT = "init"
    EPHEMERAL = "ephemeral"


@dataclass(frozen=True)
class Container:
    name: str
    kind: ContainerKind = ContainerKind.REGULAR

    @classmethod
    def from_primitive(
        cls, payload: JSON, kind: ContainerKind = ContainerKind.REGULAR
    ) -> t.Self:
        return cls(name=payload["name"], kind=kind)


@dataclass(frozen=True)
class ContainerStatus:
    name: str
    container_id: str | None = None
    restart_count: int = 0
    state: t.Mapping[str, t.Any] = field(default_factory=dict)
    last_state: t.Mapping[str, t.Any] = field(default_factory=dict)

    pod_restart_policy: PodRestartPolicy = PodRestartPolicy.ALWAYS

    @classmethod
    def from_primitive(cls, payload: JSON) -> t.Self:
        return cls(
            name=payload["name"],
            container_id=(payload.get("containerID") or "").split("://")[-1] or None,
            restart_count=payload.get("restartCount") or 0,
            state=payload.get("state") or {},
            last_state=payload.get("lastState") or {},
        )

    def with_pod_restart_policy(self, value: PodRestartPolicy) -> t.Self:
        return replace(self, pod_restart_policy=value)

    @property
    def is_waiting(self) -> bool:
        return "waiting" in self.state if self.state else True

    @property
    def is_running(self) -> bool:
        return "running" in self.state

    @property
    def is_terminated(self) -> bool:
        return "terminated" in self.state

    @property
    def can_restart(self) -> bool:
        if self.pod_restart_policy == PodRestartPolicy.NEVER:
            return False
        if self.pod_restart_policy == PodRestartPolicy.ALWAYS:
            return True
        assert self.pod_restart_policy == PodRestartPolicy.ON_FAILURE
        try:
            return self.state["terminated"]["exitCode"] != 0
        except KeyError:
            return True

    @property
    def started_at(self) -> datetime | None:
        try:
            if self.is_running:
                date_str = self.state["running"]["startedAt"]
            else:
                date_str = self.state["terminated"]["startedAt"]
            if not date_str:
                return None
        except KeyError:
            # waiting
            return None
        return parse_date(date_str)


@dataclass(frozen=True)
class PodSpec:
    node_name: str | None = None
    restart_policy: PodRestartPolicy = PodRestartPolicy.ALWAYS
    containers: t.Sequence[Container] = field(default_factory=list)
    init_containers: t.Sequence[Container] = field(default_factory=list)
    ephemeral_containers: t.Sequence[Container] = field(default_factory=list)

    @classmethod
    def from_primitive(cls, payload: JSON) -> t.Self:
        return cls(
            node_name=payload.get("nodeName"),
            restart_policy=PodRestartPolicy(
                payload.get("restartPolicy") or cls.restart_policy
            ),
            containers=[
                Container.from_primitive(c) for c in payload.get("containers") or ()
            ],
            init_containers=[
                Container.from_primitive(c, ContainerKind.INIT)
                for c in payload.get("initContainers") or ()
            ],
            ephemeral_containers=[
                Container.from_primitive(c, ContainerKind.EPHEMERAL)
                for c in payload.get("ephemeralContainers") or ()
            ],
        )


@dataclass(frozen=True)
class PodStatus:
    phase: PodPhase = PodPhase.PENDING
    container_statuses: t.Sequence[ContainerStatus] = field(default_factory=list)

    @classmethod
    def from_primitive(cls, payload: JSON) -> t.Self:
        statuses = []
        for key in (
            "initContainerStatuses",
            "containerStatuses",
            "ephemeralContainerStatuses",
        ):
            statuses.extend(
                ContainerStatus.from_primitive(s) for s in payload.get(key) or ()
            )
        return cls(
            phase=PodPhase(payload.get("phase") or PodPhase.PENDING.value),
            container_statuses=statuses,
        )

    @property
    def is_running(self) -> bool:
        return self.phase == PodPhase.RUNNING


@dataclass(frozen=True)
class Pod:
    metadata: Metadata
    spec: PodSpec = field(default_factory=PodSpec)
    status: PodStatus = field(default_factory=PodStatus)

    @classmethod
    def from_primitive(cls, payload: JSON) -> t.Self:
        return cls(
            metadata=Metadata.from_primitive(payload.get("metadata") or {}),
            spec=PodSpec.from_primitive(payload.get("spec") or {}),
            status=PodStatus.from_primitive(payload.get("status") or {}),
        )

    @property
    def name(self) -> str:
        assert self.metadata.name, "pod must have a name"
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace or ""

    @property
    def all_containers(self) -> t.Sequence[Container]:
        return [
            *self.spec.init_containers,
            *self.spec.containers,
            *self.spec.ephemeral_containers,
        ]

    def get_container_status(self, name: str) -> ContainerStatus:
        for status in self.status.container_statuses:
            if status.name == name:
                break
        else:
            status = ContainerStatus(name=name)
        return status.with_pod_restart_policy(self.spec.restart_policy)

    def get_container_id(self, name: str) -> str | None:
        for status in self.status.container_statuses:
            if status.name == name:
                return status.container_id
        return None


@dataclass(frozen=True)
class PodList:
    items: t.Sequence[Pod]
    resource_version: str | None = None

    @classmethod
    def from_primitive(cls, payload: JSON) -> t.Self:
        return cls(
            items=[Pod.from_primitive(p) for p in payload.get("items") or ()],
            resource_version=(payload.get("metadata") or {}).get("resourceVersion"),
        )


class WatchEventType(enum.StrEnum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    pod: Pod


class KubeClient:
    def __init__(
        self,
        *,
        base_url: str,
        cert_authority_path: str | None = None,
        cert_authority_data_pem: str | None = None,
        auth_type: KubeClientAuthType = KubeClientAuthType.CERTIFICATE,
        auth_cert_path: str | None = None,
        auth_cert_key_path: str | None = None,
        token: str | None = None,
        token_path: str | None = None,
        token_update_interval_s: float = 300,
        conn_timeout_s: int = KubeConfig.client_conn_timeout_s,
        read_timeout_s: int = KubeConfig.client_read_timeout_s,
        conn_pool_size: int = KubeConfig.client_conn_pool_size,
        watch_timeout_s: int = KubeConfig.watch_timeout_s,
        watch_reconnect_interval_s: float = 1.0,
        trace_configs: list[aiohttp.TraceConfig] | None = None,
    ) -> None:
        self._base_url = URL(base_url)
        self._cert_authority_path = cert_authority_path
        self._cert_authority_data_pem = cert_authority_data_pem
        self._auth_type = auth_type
        self._auth_cert_path = auth_cert_path
        self._auth_cert_key_path = auth_cert_key_path
        self._token = token
        self._token_path = token_path
        self._token_update_interval_s = token_update_interval_s

        self._conn_timeout_s = conn_timeout_s
        self._read_timeout_s = read_timeout_s
        self._conn_pool_size = conn_pool_size
        self._watch_timeout_s = watch_timeout_s
        self._watch_reconnect_interval_s = watch_reconnect_interval_s
        self._trace_configs = trace_configs

        self._session: aiohttp.ClientSession | None = None
        self._token_updater_task: asyncio.Task[None] | None = None

    def _create_ssl_context(self) -> ssl.SSLContext | bool:
        if self._base_url.scheme != "https":
            return True
        ssl_context = ssl.create_default_context(
            cafile=self._cert_authority_path, cadata=self._cert_authority_data_pem
        )
        if self._auth_type == KubeClientAuthType.CERTIFICATE:
            assert self._auth_cert_path, "client certificate is required"
            ssl_context.load_cert_chain(
                self._auth_cert_path,  # type: ignore
                self._auth_cert_key_path,
            )
        return ssl_context

    async def init(self) -> None:
        connector = aiohttp.TCPConnector(
            limit=self._conn_pool_size, ssl=self._create_ssl_context()
        )
        if self._auth_type == KubeClientAuthType.TOKEN and self._token_path:
            if not self._token:
                self._token = await self._read_token()
            self._token_updater_task = asyncio.create_task(self._start_token_updater())
        timeout = aiohttp.ClientTimeout(
            connect=self._conn_timeout_s, total=self._read_timeout_s
        )
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            trace_configs=self._trace_configs,
            read_bufsize=2**20,
        )

    async def _read_token(self) -> str:
        assert self._token_path
        token = await asyncio.to_thread(Path(self._token_path).read_text)
        return token.strip()

    async def _start_token_updater(self) -> None:
        while True:
            await asyncio.sleep(self._token_update_interval_s)
            try:
                token = await self._read_token()
            except OSError:
                logger.exception("Failed to update kube token")
                continue
            if token != self._token:
                self._token = token
                logger.info("Kube token was refreshed")

    async def close(self) -> None:
        if self._token_updater_task:
            self._token_updater_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._token_updater_task
            self._token_updater_task = None
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> t.Self:
        await self.init()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def _api_v1_url(self) -> URL:
        return self._base_url / "api/v1"

    def _generate_namespace_url(self, namespace: str) -> URL:
        return self._api_v1_url / "namespaces" / namespace

    def _generate_pods_url(self, namespace: str | None = None) -> URL:
        if namespace is None:
            return self._api_v1_url / "pods"
        return self._generate_namespace_url(namespace) / "pods"

    def _generate_pod_log_url(self, pod_name: str, namespace: str) -> URL:
        return self._generate_pods_url(namespace) / pod_name / "log"

    def _get_headers(self) -> dict[str, str]:
        if self._auth_type == KubeClientAuthType.TOKEN and self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    def _raise_for_status(self, payload: JSON) -> None:
        kind = payload.get("kind")
        if kind != "Status" or payload.get("status") == "Success":
            return
        code = payload.get("code")
        reason = payload.get("reason")
        message = payload.get("message") or str(payload)
        if code in (401, 403) or reason in ("Unauthorized", "Forbidden"):
            raise KubeClientUnauthorized(message)
        if code == 404 or reason == "NotFound":
            raise ResourceNotFound(message)
        if code == 410 or reason in ("Gone", "Expired"):
            raise ResourceGone(message)
        if code == 400 or reason == "BadRequest":
            raise ResourceBadRequest(message)
        raise KubeClientException(message)

    async def _raise_for_response(self, response: aiohttp.ClientResponse) -> None:
        if response.status < 400:
            return
        text = await response.text()
        try:
            payload = orjson.loads(text)
        except orjson.JSONDecodeError:
            payload = {"kind": "Status", "code": response.status, "message": text}
        if not isinstance(payload, dict):
            payload = {"kind": "Status", "code": response.status, "message": text}
        payload.setdefault("kind", "Status")
        payload.setdefault("code", response.status)
        self._raise_for_status(payload)
        msg = f"Unexpected response status {response.status}: {text}"
        raise KubeClientException(msg)

    async def _request(self, *args: t.Any, **kwargs: t.Any) -> JSON:
        assert self._session, "client is not initialized"
        headers = {**kwargs.pop("headers", {}), **self._get_headers()}
        async with self._session.request(*args, headers=headers, **kwargs) as response:
            await self._raise_for_response(response)
            payload = await response.json(loads=orjson.loads)
            logger.debug("k8s response payload: %s", payload)
            self._raise_for_status(payload)
            return payload

    @staticmethod
    def _build_params(**kwargs: t.Any) -> dict[str, str]:
        params = {}
        for key, value in kwargs.items():
            if value is None or value == "":
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            params[key] = str(value)
        return params

    async def get_pods(
        self,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> PodList:
        """Return the pods of `namespace`, or of all namespaces if it is None."""
        payload = await self._request(
            method="GET",
            url=self._generate_pods_url(namespace),
            params=self._build_params(
                labelSelector=label_selector, fieldSelector=field_selector
            ),
        )
        return PodList.from_primitive(payload)

    async def get_pod(self, pod_name: str, *, namespace: str) -> Pod:
        payload = await self._request(
            method="GET", url=self._generate_pods_url(namespace) / pod_name
        )
        return Pod.from_primitive(payload)

    async def _watch_pods_once(
        self,
        *,
        namespace: str | None,
        label_selector: str | None,
        field_selector: str | None,
        resource_version: str | None,
    ) -> AsyncIterator[tuple[WatchEventType, JSON]]:
        assert self._session, "client is not initialized"
        validator = create_watch_event_validator()
        params = self._build_params(
            watch=True,
            allowWatchBookmarks=True,
            labelSelector=label_selector,
            fieldSelector=field_selector,
            resourceVersion=resource_version,
            timeoutSeconds=self._watch_timeout_s,
        )
        timeout = aiohttp.ClientTimeout(
            connect=self._conn_timeout_s,
            sock_read=self._watch_timeout_s + self._conn_timeout_s,
        )
        async with self._session.get(
            self._generate_pods_url(namespace),
            params=params,
            headers=self._get_headers(),
            timeout=timeout,
        ) as response:
            await self._raise_for_response(response)
            async for line in response.content:
                if not line.strip():
                    continue
                try:
                    event = validator.check(orjson.loads(line))
                except (orjson.JSONDecodeError, trafaret.DataError):
                    logger.warning("Skipping invalid watch event: %r", line)
                    continue
                event_type = WatchEventType(event["type"])
                if event_type == WatchEventType.ERROR:
                    self._raise_for_status(event["object"])
                    continue
                yield event_type, event["object"]

    async def watch_pods(
        self,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> AsyncIterator[WatchEvent]:
        """List and then watch pods, reconnecting transparently.

        The initial list is reported as ADDED events. Whenever the resource
        version expires the pods are listed again and the difference with the
        previously known state is reported.
        Raise KubeClientException for errors the watch can not recover from.
        """
        known: dict[str, Pod] = {}
        resource_version: str | None = None
        while True:
            if resource_version is None:
                try:
                    pod_list = await self.get_pods(
                        namespace=namespace,
                        label_selector=label_selector,
                        field_selector=field_selector,
                    )
                except (aiohttp.ClientError, TimeoutError) as exc:
                    logger.warning("Pods list failed, retrying: %r", exc)
                    await asyncio.sleep(self._watch_reconnect_interval_s)
                    continue
                current = {f"{p.namespace}/{p.name}": p for p in pod_list.items}
                for key, pod in known.items():
                    if key not in current:
                        yield WatchEvent(WatchEventType.DELETED, pod)
                for key, pod in current.items():
                    event_type = (
                        WatchEventType.MODIFIED if key in known else WatchEventType.ADDED
                    )
                    yield WatchEvent(event_type, pod)
                known = current
                resource_version = pod_list.resource_version
            try:
                async for event_type, payload in self._watch_pods_once(
                    namespace=namespace,
                    label_selector=label_selector,
                    field_selector=field_selector,
                    resource_version=resource_version,
                ):
                    metadata = payload.get("metadata") or {}
                    resource_version = (
                        metadata.get("resourceVersion") or resource_version
                    )
                    if event_type == WatchEventType.BOOKMARK:
                        continue
                    pod = Pod.from_primitive(payload)
                    key = f"{pod.namespace}/{pod.name}"
                    if event_type == WatchEventType.DELETED:
                        known.pop(key, None)
                    else:
                        known[key] = pod
                    yield WatchEvent(event_type, pod)
            except ResourceGone:
                logger.info("Pods watch expired at %s, relisting", resource_version)
                resource_version = None
            except (aiohttp.ClientError, TimeoutError) as exc:
                logger.warning("Pods watch interrupted, reconnecting: %r", exc)
                await asyncio.sleep(self._watch_reconnect_interval_s)

    @asynccontextmanager
    async def create_pod_container_logs_stream(
        self,
        pod_name: str,
        container_name: str,
        namespace: str,
        *,
        follow: bool = True,
        timestamps: bool = True,
        since_seconds: int | None = None,
        since: datetime | None = None,
        tail_lines: int | None = None,
        previous: bool = False,
        conn_timeout_s: float | None = None,
        read_timeout_s: float | None = None,
    ) -> AsyncIterator[aiohttp.StreamReader]:
        assert self._session, "client is not initialized"
        params = self._build_params(
            container=container_name,
            follow=follow,
            timestamps=timestamps,
            previous=previous or None,
            sinceSeconds=since_seconds if since is None else None,
            sinceTime=format_date(since) if since else None,
            tailLines=tail_lines,
        )
        timeout = aiohttp.ClientTimeout(
            connect=conn_timeout_s or self._conn_timeout_s,
            sock_read=read_timeout_s,
        )
        async with self._session.get(
            self._generate_pod_log_url(pod_name, namespace),
            params=params,
            headers=self._get_headers(),
            timeout=timeout,
        ) as response:
            await self._raise_for_response(response)
            yield response.content


def create_kube_client(
    config: KubeConfig, trace_configs: list[aiohttp.TraceConfig] | None = None
) -> KubeClient:
    return KubeClient(
        base_url=config.endpoint_url,
        cert_authority_path=config.cert_authority_path,
        cert_authority_data_pem=config.cert_authority_data_pem,
        auth_type=config.auth_type,
        auth_cert_path=config.auth_cert_path,
        auth_cert_key_path=config.auth_cert_key_path,
        token=config.token,
        token_path=config.token_path,
        conn_timeout_s=config.client_conn_timeout_s,
        read_timeout_s=config.client_read_timeout_s,
        conn_pool_size=config.client_conn_pool_size,
        watch_timeout_s=config.watch_timeout_s,
        trace_configs=trace_configs,
    )
