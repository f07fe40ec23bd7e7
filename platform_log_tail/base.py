import asyncio
import enum
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar


T = TypeVar("T")


@dataclass(frozen=True)
class TargetKey:
    namespace: str
    pod_name: str
    container_name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.pod_name}/{self.container_name}"


@dataclass(frozen=True)
class Target:
    namespace: str
    pod_name: str
    container_name: str
    node_name: str = ""
    labels: Mapping[str, str] = field(default_factory=dict, compare=False)
    annotations: Mapping[str, str] = field(default_factory=dict, compare=False)
    pod_uid: str | None = None
    container_id: str | None = None

    @property
    def key(self) -> TargetKey:
        return TargetKey(self.namespace, self.pod_name, self.container_name)

    def is_same_instance(self, other: "Target") -> bool:
        """Tell whether two snapshots describe the same container instance.

        Unknown ids (a container that has not started yet) never break
        continuity, only two different known ids do.
        """
        for ours, theirs in (
            (self.pod_uid, other.pod_uid),
            (self.container_id, other.container_id),
        ):
            if ours and theirs and ours != theirs:
                return False
        return True


@dataclass(frozen=True)
class LogLine:
    target: Target
    content: str
    timestamp: str = ""
    time: datetime | None = None
    malformed: bool = False
    highlights: Sequence[tuple[int, int]] = ()

    @property
    def namespace(self) -> str:
        return self.target.namespace

    @property
    def pod_name(self) -> str:
        return self.target.pod_name

    @property
    def container_name(self) -> str:
        return self.target.container_name

    @property
    def node_name(self) -> str:
        return self.target.node_name


class SinkKind(enum.StrEnum):
    DISPLAY = "display"
    EXPORT = "export"


class TailEvent(enum.StrEnum):
    STARTED = "started"
    STOPPED = "stopped"


class SinkError(Exception):
    pass


class Sink(ABC):
    kind: SinkKind = SinkKind.DISPLAY

    @abstractmethod
    async def emit(self, line: LogLine) -> None:
        pass

    async def notify(self, event: TailEvent, target: Target) -> None:
        return None

    async def shutdown(self, deadline: float) -> None:
        return None


class ShutdownRequested(Exception):
    pass


class ShutdownToken:
    """Process-wide cancellation signal passed explicitly to every component."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def wait_for(self, aw: Awaitable[T]) -> T:
        """Await `aw` unless shutdown comes first.

        Raise ShutdownRequested after cancelling `aw` if the token is set
        before `aw` completes.
        """
        if self.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise ShutdownRequested
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait((task, waiter), return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise ShutdownRequested
