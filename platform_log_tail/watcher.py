import enum
import logging
import re
from collections.abc import AsyncGenerator, Iterator, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass

import trafaret
from aioitertools.asyncio import as_generated

from .base import ShutdownRequested, ShutdownToken, Target, TargetKey
from .config import ContainerState, SelectorConfig
from .kube_client import (
    Container,
    ContainerKind,
    KubeClient,
    KubeClientException,
    Pod,
    WatchEvent,
    WatchEventType,
)
from .utils import asyncgeneratorcontextmanager
from .validators import create_label_requirement_validator


logger = logging.getLogger(__name__)


class WatchChannelError(Exception):
    pass


_SET_REQUIREMENT_RE = re.compile(
    r"^(?P<key>\S+)\s+(?P<operator>in|notin)\s*\((?P<values>[^()]*)\)$"
)
_EQUALITY_REQUIREMENT_RE = re.compile(
    r"^(?P<key>[^\s=!]+)\s*(?P<operator>==|=|!=)\s*(?P<value>\S*)$"
)


def _split_requirements(expr: str) -> list[str]:
    parts = []
    depth = 0
    current = ""
    for char in expr:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            parts.append(current.strip())
            current = ""
        else:
            current += char
    if depth != 0:
        msg = f"Unbalanced parentheses in label selector {expr!r}"
        raise ValueError(msg)
    parts.append(current.strip())
    return [part for part in parts if part]


@dataclass(frozen=True)
class LabelRequirement:
    key: str
    operator: str
    values: tuple[str, ...] = ()

    @classmethod
    def parse(cls, expr: str) -> "LabelRequirement":
        payload: dict[str, object]
        if match := _SET_REQUIREMENT_RE.match(expr):
            values = [v.strip() for v in match["values"].split(",") if v.strip()]
            payload = {
                "key": match["key"],
                "operator": match["operator"],
                "values": values,
            }
        elif match := _EQUALITY_REQUIREMENT_RE.match(expr):
            payload = {
                "key": match["key"],
                "operator": match["operator"],
                "values": [match["value"]],
            }
        elif expr.startswith("!"):
            payload = {"key": expr[1:].strip(), "operator": "!"}
        else:
            payload = {"key": expr, "operator": "exists"}
        try:
            data = create_label_requirement_validator().check(payload)
        except trafaret.DataError as exc:
            msg = f"Invalid label requirement {expr!r}: {exc.as_dict()}"
            raise ValueError(msg) from exc
        return cls(
            key=data["key"], operator=data["operator"], values=tuple(data["values"])
        )

    def matches(self, labels: Mapping[str, str]) -> bool:
        match self.operator:
            case "=" | "==" | "in":
                return self.key in labels and labels[self.key] in self.values
            case "!=" | "notin":
                return labels.get(self.key) not in self.values
            case "exists":
                return self.key in labels
            case "!":
                return self.key not in labels
        msg = f"Unknown operator {self.operator!r}"
        raise ValueError(msg)

    def __str__(self) -> str:
        match self.operator:
            case "=" | "==" | "!=":
                return f"{self.key}{self.operator}{self.values[0]}"
            case "in" | "notin":
                return f"{self.key} {self.operator} ({','.join(self.values)})"
            case "!":
                return f"!{self.key}"
        return self.key


@dataclass(frozen=True)
class LabelSelector:
    requirements: tuple[LabelRequirement, ...] = ()

    @classmethod
    def parse(cls, expr: str) -> "LabelSelector":
        """Parse `k=v,k!=v,k,!k,k in (a,b),k notin (a,b)` expressions."""
        return cls(
            tuple(LabelRequirement.parse(p) for p in _split_requirements(expr))
        )

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(r.matches(labels) for r in self.requirements)

    def __str__(self) -> str:
        return ",".join(map(str, self.requirements))


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        msg = f"Invalid pattern {pattern!r}: {exc}"
        raise ValueError(msg) from exc


@dataclass(frozen=True)
class Selector:
    namespaces: tuple[str, ...] = ("default",)
    all_namespaces: bool = False
    pod_query: re.Pattern[str] = re.compile(".*")
    label_selector: LabelSelector = LabelSelector()
    field_selector: str = ""
    node_name: str = ""
    container_query: re.Pattern[str] = re.compile(".*")
    exclude_container_query: re.Pattern[str] | None = None
    container_states: frozenset[ContainerState] = frozenset([ContainerState.RUNNING])
    init_containers: bool = True
    ephemeral_containers: bool = True

    @classmethod
    def from_config(cls, config: SelectorConfig) -> "Selector":
        return cls(
            namespaces=tuple(config.namespaces),
            all_namespaces=config.all_namespaces,
            pod_query=_compile(config.pod_query),
            label_selector=LabelSelector.parse(config.label_selector),
            field_selector=config.field_selector,
            node_name=config.node_name,
            container_query=_compile(config.container_query),
            exclude_container_query=(
                _compile(config.exclude_container_query)
                if config.exclude_container_query
                else None
            ),
            container_states=frozenset(config.container_states),
            init_containers=config.init_containers,
            ephemeral_containers=config.ephemeral_containers,
        )

    def matches_pod(self, pod: Pod) -> bool:
        if not self.all_namespaces and pod.namespace not in self.namespaces:
            return False
        if not self.pod_query.search(pod.name):
            return False
        if self.node_name and pod.spec.node_name != self.node_name:
            return False
        return self.label_selector.matches(pod.metadata.labels)

    def _matches_kind(self, container: Container) -> bool:
        if container.kind == ContainerKind.INIT:
            return self.init_containers
        if container.kind == ContainerKind.EPHEMERAL:
            return self.ephemeral_containers
        return True

    def _matches_state(self, pod: Pod, container: Container) -> bool:
        if ContainerState.ALL in self.container_states:
            return True
        status = pod.get_container_status(container.name)
        return (
            (ContainerState.RUNNING in self.container_states and status.is_running)
            or (ContainerState.WAITING in self.container_states and status.is_waiting)
            or (
                ContainerState.TERMINATED in self.container_states
                and status.is_terminated
            )
        )

    def matches_container(self, pod: Pod, container: Container) -> bool:
        if not self._matches_kind(container):
            return False
        if not self.container_query.search(container.name):
            return False
        if self.exclude_container_query and self.exclude_container_query.search(
            container.name
        ):
            return False
        return self._matches_state(pod, container)

    def iter_targets(self, pod: Pod) -> Iterator[Target]:
        if not self.matches_pod(pod):
            return
        for container in pod.all_containers:
            if self.matches_container(pod, container):
                yield Target(
                    namespace=pod.namespace,
                    pod_name=pod.name,
                    container_name=container.name,
                    node_name=pod.spec.node_name or "",
                    labels=pod.metadata.labels,
                    annotations=pod.metadata.annotations,
                    pod_uid=pod.metadata.uid,
                    container_id=pod.get_container_id(container.name),
                )


class TargetEventType(enum.StrEnum):
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class TargetEvent:
    type: TargetEventType
    target: Target


class TargetWatcher:
    def __init__(
        self,
        kube_client: KubeClient,
        selector: Selector,
        *,
        shutdown: ShutdownToken | None = None,
    ) -> None:
        self._kube_client = kube_client
        self._selector = selector
        self._shutdown = shutdown or ShutdownToken()
        self._tracked: dict[tuple[str, str], dict[TargetKey, Target]] = {}

    @property
    def targets(self) -> list[Target]:
        return [t for targets in self._tracked.values() for t in targets.values()]

    def process(self, event: WatchEvent) -> list[TargetEvent]:
        """Turn a pod event into target additions and removals."""
        pod = event.pod
        pod_key = (pod.namespace, pod.name)
        current: dict[TargetKey, Target] = {}
        if event.type != WatchEventType.DELETED:
            current = {t.key: t for t in self._selector.iter_targets(pod)}
        tracked = self._tracked.get(pod_key, {})

        result = [
            TargetEvent(TargetEventType.REMOVED, target)
            for key, target in tracked.items()
            if key not in current
        ]
        for key, target in current.items():
            previous = tracked.get(key)
            if previous is None:
                result.append(TargetEvent(TargetEventType.ADDED, target))
            elif not previous.is_same_instance(target):
                logger.info("Container %s was restarted", key)
                result.append(TargetEvent(TargetEventType.REMOVED, previous))
                result.append(TargetEvent(TargetEventType.ADDED, target))

        if current:
            self._tracked[pod_key] = current
        else:
            self._tracked.pop(pod_key, None)
        return result

    def _get_namespaces(self) -> Sequence[str | None]:
        if self._selector.all_namespaces:
            return [None]
        return self._selector.namespaces

    async def list_targets(self) -> list[Target]:
        """Return the targets matching the selector right now."""
        targets = []
        try:
            for namespace in self._get_namespaces():
                pod_list = await self._kube_client.get_pods(
                    namespace=namespace,
                    label_selector=str(self._selector.label_selector) or None,
                    field_selector=self._selector.field_selector or None,
                )
                for pod in pod_list.items:
                    targets.extend(self._selector.iter_targets(pod))
        except KubeClientException as exc:
            msg = f"Failed to list pods: {exc}"
            raise WatchChannelError(msg) from exc
        return targets

    @asyncgeneratorcontextmanager
    async def watch(self) -> AsyncGenerator[TargetEvent, None]:
        """Yield target events until shutdown or until all pod watches end.

        Raise WatchChannelError if a pod watch can not be continued.
        """
        watches = [
            self._kube_client.watch_pods(
                namespace=namespace,
                label_selector=str(self._selector.label_selector) or None,
                field_selector=self._selector.field_selector or None,
            )
            for namespace in self._get_namespaces()
        ]
        async with aclosing(as_generated(watches)) as events:
            while not self._shutdown.is_set():
                try:
                    event = await self._shutdown.wait_for(anext(events))
                except (ShutdownRequested, StopAsyncIteration):
                    return
                except KubeClientException as exc:
                    msg = f"Pods watch failed: {exc}"
                    raise WatchChannelError(msg) from exc
                for target_event in self.process(event):
                    yield target_event
