import asyncio
import enum
import logging
import re
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import aiohttp

from .base import LogLine, ShutdownToken, Sink, SinkKind, TailEvent, Target
from .kube_client import (
    KubeClient,
    KubeClientException,
    ResourceBadRequest,
    ResourceNotFound,
)
from .logs import (
    MalformedLineError,
    ResumeRequest,
    ResumeTracker,
    ResumeWatermark,
    filter_out_rpc_error,
    iter_lines,
    remove_subsecond,
    split_log_line,
)
from .utils import parse_date, utcnow


logger = logging.getLogger(__name__)


class TailState(enum.StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    CLOSED = "closed"
    FAULTED = "faulted"


class TailError(Exception):
    pass


class StreamTransportError(TailError):
    def __init__(
        self, message: str, *, resume_request: ResumeRequest | None = None
    ) -> None:
        super().__init__(message)
        self.resume_request = resume_request


class StreamTerminalError(TailError):
    pass


@dataclass(frozen=True)
class TailOptions:
    follow: bool = True
    since_seconds: int | None = None
    since_time: datetime | None = None
    tail_lines: int | None = None
    only_log_lines: bool = False
    conn_timeout_s: float | None = None
    read_timeout_s: float | None = None


def _compile(patterns: Sequence[str]) -> tuple[re.Pattern[str], ...]:
    try:
        return tuple(re.compile(p) for p in patterns)
    except re.error as exc:
        msg = f"Invalid pattern {exc.pattern!r}: {exc}"
        raise ValueError(msg) from exc


class ContentFilter:
    def __init__(
        self,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        highlight: Sequence[str] = (),
    ) -> None:
        self._include = _compile(include)
        self._exclude = _compile(exclude)
        self._highlight = _compile(highlight)

    def accepts(self, content: str) -> bool:
        if self._include and not any(p.search(content) for p in self._include):
            return False
        return not any(p.search(content) for p in self._exclude)

    def highlight_spans(self, content: str) -> tuple[tuple[int, int], ...]:
        spans = []
        for pattern in self._highlight:
            for match in pattern.finditer(content):
                if match.end() > match.start():
                    spans.append(match.span())
        return tuple(sorted(spans))


class Tail:
    """Streaming session of a single container.

    A tail is started once and ends up either CLOSED (the stream ended, the
    source is gone, or it was stopped) or FAULTED (the transport failed and
    the stream can be resumed with `resume_request()`).
    """

    def __init__(
        self,
        kube_client: KubeClient,
        target: Target,
        sinks: Sequence[Sink],
        *,
        options: TailOptions | None = None,
        content_filter: ContentFilter | None = None,
        shutdown: ShutdownToken | None = None,
        resume_request: ResumeRequest | None = None,
    ) -> None:
        self._kube_client = kube_client
        self._target = target
        self._sinks = list(sinks)
        self._options = options or TailOptions()
        self._filter = content_filter or ContentFilter()
        self._shutdown = shutdown or ShutdownToken()
        self._resume_request = resume_request
        self._tracker = ResumeTracker()

        self._state = TailState.IDLE
        self._error: StreamTransportError | None = None
        self._task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None
        self._stop_requested = False
        # the task is only cancelled while it waits for the stream
        self._cancellable = False

    @property
    def target(self) -> Target:
        return self._target

    @property
    def state(self) -> TailState:
        return self._state

    @property
    def watermark(self) -> ResumeWatermark | None:
        return self._tracker.watermark

    def resume_request(self) -> ResumeRequest | None:
        return self._tracker.resume_request() or self._resume_request

    async def start(self) -> None:
        if self._state != TailState.IDLE:
            msg = f"Tail of {self._target.key} is already {self._state}"
            raise RuntimeError(msg)
        self._state = TailState.STREAMING
        self._task = asyncio.create_task(self._run())
        self._shutdown_task = asyncio.create_task(self._wait_shutdown())

    async def wait(self) -> None:
        """Wait until the tail ends.

        Raise StreamTransportError if it ends FAULTED.
        """
        assert self._task, "tail is not started"
        await asyncio.wait([self._task])
        if self._state == TailState.FAULTED:
            assert self._error
            raise self._error

    async def stop(self) -> None:
        self._request_stop()
        if self._task is not None:
            await asyncio.wait([self._task])
        self._state = TailState.CLOSED

    def _request_stop(self) -> None:
        self._stop_requested = True
        if self._task is not None and not self._task.done() and self._cancellable:
            self._task.cancel()

    async def _wait_shutdown(self) -> None:
        await self._shutdown.wait()
        self._request_stop()

    async def _run(self) -> None:
        key = self._target.key
        try:
            await self._notify(TailEvent.STARTED)
            await self._consume()
        except asyncio.CancelledError:
            if not self._stop_requested:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            logger.info("Tail of %s is stopped", key)
            self._state = TailState.CLOSED
        except (ResourceNotFound, ResourceBadRequest) as exc:
            error = StreamTerminalError(str(exc))
            logger.warning("Log stream of %s can not be continued: %s", key, error)
            self._state = TailState.CLOSED
        except (aiohttp.ClientError, KubeClientException, TimeoutError) as exc:
            if self._stop_requested:
                self._state = TailState.CLOSED
            else:
                resume_request = self.resume_request()
                self._error = StreamTransportError(
                    f"Log stream of {key} failed: {exc!r}",
                    resume_request=resume_request,
                )
                logger.warning(
                    "Log stream of %s failed at %s: %r", key, resume_request, exc
                )
                self._state = TailState.FAULTED
        except Exception:
            logger.exception("Tail of %s failed", key)
            self._state = TailState.CLOSED
        else:
            logger.info("Log stream of %s ended", key)
            self._state = TailState.CLOSED
        finally:
            if self._shutdown_task is not None:
                self._shutdown_task.cancel()
        # a faulted tail is restarted, so the target is not gone yet
        if self._state == TailState.CLOSED:
            await self._notify(TailEvent.STOPPED)

    def _get_stream_kwargs(self) -> dict[str, Any]:
        options = self._options
        kwargs: dict[str, Any] = {
            "follow": options.follow,
            "timestamps": True,
            "since_seconds": options.since_seconds,
            "since": options.since_time,
            "tail_lines": options.tail_lines,
        }
        if options.conn_timeout_s is not None:
            kwargs["conn_timeout_s"] = options.conn_timeout_s
        if options.read_timeout_s is not None:
            kwargs["read_timeout_s"] = options.read_timeout_s
        if self._resume_request is None:
            return kwargs
        try:
            since = self._resume_request.since_time()
        except ValueError:
            logger.warning(
                "Can not resume %s from %r, starting over",
                self._target.key,
                self._resume_request.timestamp,
            )
            self._resume_request = None
            return kwargs
        logger.info(
            "Resuming %s from %s, skipping %d lines",
            self._target.key,
            self._resume_request.timestamp,
            self._resume_request.lines_to_skip,
        )
        kwargs.update(since=since, since_seconds=None, tail_lines=None)
        return kwargs

    async def _consume(self) -> None:
        target = self._target
        if self._stop_requested:
            return
        self._cancellable = True
        try:
            async with self._kube_client.create_pod_container_logs_stream(
                pod_name=target.pod_name,
                container_name=target.container_name,
                namespace=target.namespace,
                **self._get_stream_kwargs(),
            ) as stream:
                logger.info("Started log stream of %s", target.key)
                async with aclosing(iter_lines(filter_out_rpc_error(stream))) as lines:
                    await self._consume_lines(lines)
        finally:
            self._cancellable = False

    async def _consume_lines(self, lines: AsyncIterator[str]) -> None:
        while not self._stop_requested:
            self._cancellable = True
            try:
                line = await anext(lines)
            except StopAsyncIteration:
                return
            finally:
                self._cancellable = False
            await self._process_line(line)

    async def _process_line(self, line: str) -> None:
        try:
            timestamp, content = split_log_line(line)
        except MalformedLineError as exc:
            logger.debug("Malformed line of %s: %r", self._target.key, line)
            await self._emit(
                LogLine(self._target, f"[{exc}] {line}", time=utcnow(), malformed=True)
            )
            return
        canonical = remove_subsecond(timestamp)
        self._tracker.observe(canonical)
        if self._tracker.should_skip(canonical, self._resume_request):
            logger.debug("Skipping a resent line of %s", self._target.key)
            return
        if not self._filter.accepts(content):
            return
        await self._emit(
            LogLine(
                self._target,
                content,
                timestamp=timestamp,
                time=self._parse_time(timestamp),
                highlights=self._filter.highlight_spans(content),
            )
        )

    def _parse_time(self, timestamp: str) -> datetime:
        try:
            return parse_date(timestamp)
        except ValueError:
            logger.debug("Invalid timestamp %r of %s", timestamp, self._target.key)
            return utcnow()

    async def _emit(self, line: LogLine) -> None:
        for sink in self._sinks:
            try:
                await sink.emit(line)
            except Exception:
                if sink.kind == SinkKind.DISPLAY:
                    logger.exception("Failed to display a line of %s", line.target.key)
                else:
                    logger.exception("Failed to export a line of %s", line.target.key)

    async def _notify(self, event: TailEvent) -> None:
        if self._options.only_log_lines:
            return
        for sink in self._sinks:
            try:
                await sink.notify(event, self._target)
            except Exception:
                logger.exception("Failed to announce %s of %s", event, self._target.key)
