import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, Sequence
from dataclasses import dataclass

from .base import ShutdownRequested, ShutdownToken, Sink, Target, TargetKey
from .config import RestartConfig, RestartPolicyType
from .kube_client import KubeClient
from .logs import ResumeRequest
from .tail import ContentFilter, StreamTransportError, Tail, TailOptions, TailState
from .watcher import TargetEvent, TargetEventType


logger = logging.getLogger(__name__)


class RestartPolicy(ABC):
    @abstractmethod
    def get_delay(self, attempt: int) -> float | None:
        """Return seconds to wait before the restart, or None to give up."""


class ImmediateRestartPolicy(RestartPolicy):
    def get_delay(self, attempt: int) -> float | None:
        return 0.0


class ExponentialBackoffRestartPolicy(RestartPolicy):
    def __init__(
        self, initial_s: float = 1.0, max_s: float = 30.0, factor: float = 2.0
    ) -> None:
        self._initial_s = initial_s
        self._max_s = max_s
        self._factor = factor

    def get_delay(self, attempt: int) -> float | None:
        return min(self._max_s, self._initial_s * self._factor ** max(attempt - 1, 0))


def create_restart_policy(config: RestartConfig) -> RestartPolicy:
    if config.policy == RestartPolicyType.BACKOFF:
        return ExponentialBackoffRestartPolicy(
            initial_s=config.backoff_initial_s,
            max_s=config.backoff_max_s,
            factor=config.backoff_factor,
        )
    return ImmediateRestartPolicy()


class TooManyTargetsError(Exception):
    pass


@dataclass
class _TailEntry:
    target: Target
    task: asyncio.Task[None] | None = None
    tail: Tail | None = None
    desired: bool = True


class TailManager:
    """Keep one tail running per desired target.

    At most `max_concurrent_tails` streams are open at once, the rest of the
    targets wait for a free slot in FIFO order.
    """

    def __init__(
        self,
        kube_client: KubeClient,
        sinks: Sequence[Sink],
        *,
        tail_options: TailOptions | None = None,
        content_filter: ContentFilter | None = None,
        max_concurrent_tails: int = 50,
        restart_policy: RestartPolicy | None = None,
        resume: bool = True,
        shutdown: ShutdownToken | None = None,
    ) -> None:
        self._kube_client = kube_client
        self._sinks = list(sinks)
        self._tail_options = tail_options or TailOptions()
        self._content_filter = content_filter or ContentFilter()
        self._semaphore = asyncio.Semaphore(max_concurrent_tails)
        self._restart_policy = restart_policy or ImmediateRestartPolicy()
        self._resume = resume
        self._shutdown = shutdown or ShutdownToken()
        self._entries: dict[TargetKey, _TailEntry] = {}

    @property
    def targets(self) -> list[Target]:
        return [entry.target for entry in self._entries.values()]

    @property
    def streaming_count(self) -> int:
        return sum(
            1
            for entry in self._entries.values()
            if entry.tail is not None and entry.tail.state == TailState.STREAMING
        )

    async def run(self, events: AsyncIterable[TargetEvent]) -> None:
        async for event in events:
            if event.type == TargetEventType.ADDED:
                self.add_target(event.target)
            else:
                await self.remove_target(event.target)

    async def tail_targets(
        self, targets: Sequence[Target], *, max_log_requests: int
    ) -> None:
        """Tail a fixed set of targets until all of their streams end."""
        if len(targets) > max_log_requests:
            msg = (
                f"Found {len(targets)} containers, which exceeds the limit of "
                f"{max_log_requests} log requests"
            )
            raise TooManyTargetsError(msg)
        for target in targets:
            self.add_target(target)
        await self.join()

    async def join(self) -> None:
        tasks = [e.task for e in self._entries.values() if e.task is not None]
        if tasks:
            await asyncio.wait(tasks)

    def add_target(self, target: Target) -> None:
        entry = self._entries.get(target.key)
        if entry is not None and entry.task is not None and not entry.task.done():
            logger.debug("Target %s is already tailed", target.key)
            return
        entry = _TailEntry(target)
        entry.task = asyncio.create_task(self._supervise(entry))
        self._entries[target.key] = entry

    async def remove_target(self, target: Target) -> None:
        entry = self._entries.pop(target.key, None)
        if entry is None:
            return
        await self._stop_entry(entry)

    async def _stop_entry(self, entry: _TailEntry) -> None:
        entry.desired = False
        if entry.tail is not None:
            await entry.tail.stop()
        elif entry.task is not None:
            entry.task.cancel()
        if entry.task is not None:
            await asyncio.wait([entry.task])

    async def _supervise(self, entry: _TailEntry) -> None:
        key = entry.target.key
        resume_request: ResumeRequest | None = None
        attempt = 0
        try:
            while entry.desired:
                await self._shutdown.wait_for(self._semaphore.acquire())
                try:
                    if not entry.desired:
                        return
                    await self._run_tail(entry, resume_request)
                    return
                except StreamTransportError as exc:
                    resume_request = exc.resume_request or resume_request
                finally:
                    self._semaphore.release()
                attempt += 1
                delay = self._restart_policy.get_delay(attempt)
                if delay is None:
                    logger.warning("Giving up on %s after %d restarts", key, attempt)
                    return
                if delay:
                    logger.info("Restarting tail of %s in %.1f seconds", key, delay)
                    await self._shutdown.wait_for(asyncio.sleep(delay))
        except ShutdownRequested:
            logger.debug("Tail supervisor of %s is shut down", key)
        except Exception:
            logger.exception("Tail supervisor of %s failed", key)

    async def _run_tail(
        self, entry: _TailEntry, resume_request: ResumeRequest | None
    ) -> None:
        tail = Tail(
            self._kube_client,
            entry.target,
            self._sinks,
            options=self._tail_options,
            content_filter=self._content_filter,
            shutdown=self._shutdown,
            resume_request=resume_request if self._resume else None,
        )
        await tail.start()
        entry.tail = tail
        try:
            await tail.wait()
        finally:
            entry.tail = None

    async def shutdown(self, deadline: float) -> None:
        """Stop all tails and flush the sinks within `deadline` seconds."""
        entries = list(self._entries.values())
        self._entries.clear()
        logger.info("Stopping %d tails", len(entries))
        await asyncio.gather(*(self._stop_entry(entry) for entry in entries))
        for sink in self._sinks:
            try:
                await sink.shutdown(deadline)
            except Exception:
                logger.exception("Failed to shut down sink %r", sink)
