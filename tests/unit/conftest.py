import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import pytest

from platform_log_tail.base import LogLine, Sink, SinkKind, TailEvent, Target
from platform_log_tail.kube_client import Pod, PodList, WatchEvent


@dataclass
class StreamScript:
    chunks: Sequence[bytes | BaseException] = ()
    # a follow stream stays open once the chunks are consumed
    eof: bool = True
    error_on_open: BaseException | None = None


class ScriptedStream:
    """Minimal stand-in for aiohttp.StreamReader replaying a script."""

    def __init__(self, script: StreamScript) -> None:
        self._items = list(script.chunks)
        self._eof = script.eof
        self._hang = asyncio.Event()

    async def readany(self) -> bytes:
        await asyncio.sleep(0)
        if not self._items:
            if not self._eof:
                await self._hang.wait()
            return b""
        item = self._items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def readline(self) -> bytes:
        line = b""
        while not line.endswith(b"\n"):
            chunk = await self.readany()
            if not chunk:
                break
            pos = chunk.find(b"\n") + 1
            if pos and pos < len(chunk):
                self._items.insert(0, chunk[pos:])
                chunk = chunk[:pos]
            line += chunk
        return line


class FakeKubeClient:
    def __init__(self) -> None:
        self.scripts: dict[tuple[str, str], list[StreamScript]] = defaultdict(list)
        self.calls: list[dict[str, Any]] = []
        self.open_streams = 0
        self.max_open_streams = 0
        self.pods: dict[str | None, list[Pod]] = defaultdict(list)
        self.watch_events: dict[str | None, list[WatchEvent | BaseException]] = (
            defaultdict(list)
        )

    def add_stream(
        self,
        pod_name: str,
        container_name: str,
        *chunks: bytes | BaseException,
        eof: bool = True,
    ) -> None:
        self.scripts[pod_name, container_name].append(
            StreamScript(chunks=chunks, eof=eof)
        )

    def add_open_error(
        self, pod_name: str, container_name: str, exc: BaseException
    ) -> None:
        self.scripts[pod_name, container_name].append(
            StreamScript(error_on_open=exc)
        )

    @asynccontextmanager
    async def create_pod_container_logs_stream(
        self, pod_name: str, container_name: str, namespace: str, **kwargs: Any
    ) -> AsyncIterator[ScriptedStream]:
        self.calls.append(
            {
                "pod_name": pod_name,
                "container_name": container_name,
                "namespace": namespace,
                **kwargs,
            }
        )
        scripts = self.scripts[pod_name, container_name]
        script = scripts.pop(0) if scripts else StreamScript(eof=False)
        if script.error_on_open is not None:
            raise script.error_on_open
        self.open_streams += 1
        self.max_open_streams = max(self.max_open_streams, self.open_streams)
        try:
            yield ScriptedStream(script)
        finally:
            self.open_streams -= 1

    async def get_pods(
        self,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> PodList:
        return PodList(items=self.pods[namespace])

    async def watch_pods(
        self,
        *,
        namespace: str | None = None,
        label_selector: str | None = None,
        field_selector: str | None = None,
    ) -> AsyncIterator[WatchEvent]:
        for event in self.watch_events[namespace]:
            await asyncio.sleep(0)
            if isinstance(event, BaseException):
                raise event
            yield event
        await asyncio.Event().wait()


class RecordingSink(Sink):
    def __init__(self, kind: SinkKind = SinkKind.DISPLAY) -> None:
        self.kind = kind
        self.lines: list[LogLine] = []
        self.events: list[tuple[TailEvent, str]] = []
        self.deadlines: list[float] = []

    @property
    def contents(self) -> list[str]:
        return [line.content for line in self.lines]

    async def emit(self, line: LogLine) -> None:
        self.lines.append(line)

    async def notify(self, event: TailEvent, target: Target) -> None:
        self.events.append((event, str(target.key)))

    async def shutdown(self, deadline: float) -> None:
        self.deadlines.append(deadline)


@dataclass
class PodFactory:
    namespace: str = "default"
    labels: dict[str, str] = field(default_factory=dict)

    def __call__(
        self,
        name: str,
        containers: Sequence[str] = ("app",),
        *,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
        node_name: str = "node-1",
        container_ids: dict[str, str] | None = None,
        states: dict[str, str] | None = None,
        init_containers: Sequence[str] = (),
        uid: str | None = None,
    ) -> Pod:
        container_ids = container_ids or {}
        states = states or {}
        statuses = []
        for container in (*init_containers, *containers):
            status: dict[str, Any] = {
                "name": container,
                "state": {states.get(container, "running"): {}},
            }
            if container in container_ids:
                status["containerID"] = f"containerd://{container_ids[container]}"
            statuses.append(status)
        return Pod.from_primitive(
            {
                "metadata": {
                    "name": name,
                    "namespace": namespace or self.namespace,
                    "uid": uid or f"{name}-uid",
                    "labels": labels if labels is not None else self.labels,
                    "annotations": annotations or {},
                },
                "spec": {
                    "nodeName": node_name,
                    "containers": [{"name": c} for c in containers],
                    "initContainers": [{"name": c} for c in init_containers],
                },
                "status": {"phase": "Running", "containerStatuses": statuses},
            }
        )


@pytest.fixture
def fake_kube_client() -> FakeKubeClient:
    return FakeKubeClient()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def create_pod() -> PodFactory:
    return PodFactory()


def create_target(
    pod_name: str = "pod", container_name: str = "app", namespace: str = "default"
) -> Target:
    return Target(
        namespace=namespace,
        pod_name=pod_name,
        container_name=container_name,
        node_name="node-1",
        pod_uid=f"{pod_name}-uid",
    )
