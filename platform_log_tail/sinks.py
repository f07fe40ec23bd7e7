import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import IO, Self

import orjson
from rich.console import Console
from rich.text import Text

from .base import LogLine, Sink, SinkError, SinkKind, TailEvent, Target
from .colors import determine_colors
from .records import build_export_record


logger = logging.getLogger(__name__)

HIGHLIGHT_STYLE = "bold red"


class ConsoleSink(Sink):
    kind = SinkKind.DISPLAY

    def __init__(
        self,
        console: Console | None = None,
        err_console: Console | None = None,
        *,
        timestamps: bool = False,
        show_namespace: bool = False,
        diff_container: bool = False,
        formatter: Callable[[LogLine], Text] | None = None,
    ) -> None:
        self._console = console or Console(highlight=False)
        self._err_console = err_console or Console(stderr=True, highlight=False)
        self._timestamps = timestamps
        self._show_namespace = show_namespace
        self._diff_container = diff_container
        self._formatter = formatter or self.format_line

    def format_line(self, line: LogLine) -> Text:
        pod_style, container_style = determine_colors(
            line.pod_name, line.container_name, diff_container=self._diff_container
        )
        text = Text()
        if self._show_namespace:
            text.append(f"{line.namespace} ", style=pod_style)
        text.append(line.pod_name, style=pod_style)
        text.append(" ")
        text.append(line.container_name, style=container_style)
        text.append(" ")
        if self._timestamps and line.timestamp:
            text.append(f"{line.timestamp} ", style="dim")
        content = Text(line.content)
        for start, end in line.highlights:
            content.stylize(HIGHLIGHT_STYLE, start, end)
        text.append_text(content)
        return text

    async def emit(self, line: LogLine) -> None:
        try:
            self._console.print(self._formatter(line), soft_wrap=True)
        except OSError as exc:
            msg = f"Failed to print a line of {line.target.key}"
            raise SinkError(msg) from exc

    async def notify(self, event: TailEvent, target: Target) -> None:
        pod_style, container_style = determine_colors(
            target.pod_name, target.container_name, diff_container=self._diff_container
        )
        if event == TailEvent.STARTED:
            text = Text("+ ", style="bold bright_green")
        else:
            text = Text("- ", style="bold bright_red")
        if self._show_namespace:
            text.append(f"{target.namespace} ", style=pod_style)
        text.append(target.pod_name, style=pod_style)
        text.append(" › ")
        text.append(target.container_name, style=container_style)
        try:
            self._err_console.print(text, soft_wrap=True)
        except OSError as exc:
            msg = f"Failed to announce {target.key}"
            raise SinkError(msg) from exc


class NDJSONExportSink(Sink):
    """Export accepted lines as newline delimited JSON records.

    Records are queued and written in batches by a background task, so
    `emit` never blocks. When the queue is full the record is dropped.
    """

    kind = SinkKind.EXPORT

    def __init__(
        self,
        stream: IO[bytes],
        *,
        batch_size: int = 512,
        queue_size: int = 1024,
        timeout_s: float = 30.0,
        close_stream: bool = False,
    ) -> None:
        self._stream = stream
        self._batch_size = batch_size
        self._timeout_s = timeout_s
        self._close_stream = close_stream
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(queue_size)
        self._task: asyncio.Task[None] | None = None
        self._closing = False
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.shutdown(self._timeout_s)

    async def start(self) -> None:
        if self._task is not None:
            msg = "Export sink is already started"
            raise RuntimeError(msg)
        self._task = asyncio.create_task(self._run())

    async def emit(self, line: LogLine) -> None:
        if self._closing:
            msg = "Export sink is shut down"
            raise SinkError(msg)
        record = orjson.dumps(build_export_record(line)) + b"\n"
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Export queue is full, dropped a record of %s (%d dropped so far)",
                line.target.key,
                self._dropped,
            )

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            if record is None:
                return
            batch = [record]
            stop = False
            while len(batch) < self._batch_size and not self._queue.empty():
                record = self._queue.get_nowait()
                if record is None:
                    stop = True
                    break
                batch.append(record)
            await self._write(batch)
            if stop:
                return

    def _write_sync(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()

    async def _write(self, batch: list[bytes]) -> None:
        try:
            async with asyncio.timeout(self._timeout_s):
                await asyncio.to_thread(self._write_sync, b"".join(batch))
        except (OSError, TimeoutError):
            logger.exception("Failed to export %d records", len(batch))

    async def shutdown(self, deadline: float) -> None:
        self._closing = True
        task = self._task
        if task is None:
            return
        self._task = None
        try:
            async with asyncio.timeout(deadline):
                await self._queue.put(None)
                await task
        except TimeoutError:
            logger.warning(
                "Export sink was not flushed in %.1f seconds, %d records are lost",
                deadline,
                self._queue.qsize(),
            )
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        finally:
            if self._close_stream:
                self._stream.close()
