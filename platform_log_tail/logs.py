from __future__ import annotations

import io
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime

import aiohttp

from .utils import parse_date


logger = logging.getLogger(__name__)


error_prefixes = (
    b"rpc error: code =",
    # failed to try resolving symlinks in path "/var/log/pods/xxx.log":
    # lstat /var/log/pods/xxx.log: no such file or directory
    b"failed to try resolving",
    # Unable to retrieve container logs for docker://xxxx
    b"Unable to retrieve",
)
max_error_prefix_len = max(map(len, error_prefixes))


async def filter_out_rpc_error(stream: aiohttp.StreamReader) -> AsyncIterator[bytes]:  # noqa: C901
    # The kubelet sometimes reports a vanished container as the very last
    # line of the log stream. Such a line is dropped, but only when nothing
    # follows it.

    _is_line_start = True
    unread_buffer = b""

    async def read_chunk(*, min_line_length: int) -> tuple[bytes, bool]:
        nonlocal _is_line_start, unread_buffer
        chunk = io.BytesIO()
        is_line_start = _is_line_start
        while True:
            if unread_buffer:
                data = unread_buffer
                unread_buffer = b""
            else:
                data = await stream.readany()
                if not data:
                    break
            n_pos = data.find(b"\n") + 1
            _is_line_start = bool(n_pos)
            if n_pos:
                line, tail = data[:n_pos], data[n_pos:]
                if tail:
                    unreadline(tail)
                chunk.write(line)
                break
            chunk.write(data)
            if not is_line_start or chunk.tell() >= min_line_length:
                # a chunk from the middle of a line is returned right away
                break

        return chunk.getvalue(), is_line_start

    async def readline() -> bytes:
        nonlocal _is_line_start, unread_buffer
        _is_line_start = True
        if unread_buffer:
            n_pos = unread_buffer.find(b"\n") + 1
            if n_pos:
                line = unread_buffer[:n_pos]
                unread_buffer = unread_buffer[n_pos:]
            else:
                line = unread_buffer
                unread_buffer = b""
                line += await stream.readline()
        else:
            line = await stream.readline()
        return line

    def unreadline(data: bytes) -> None:
        nonlocal _is_line_start, unread_buffer
        _is_line_start = True
        unread_buffer = data + unread_buffer

    while True:
        chunk, is_line_start = await read_chunk(min_line_length=max_error_prefix_len)
        # `chunk` is either a part of a line or at least `max_error_prefix_len`
        # bytes from the beginning of one
        if is_line_start and chunk.startswith(error_prefixes):
            unreadline(chunk)
            line = await readline()
            next_chunk, _ = await read_chunk(min_line_length=1)
            if next_chunk:
                logger.warning("An rpc error line was not at the end of the log")
                chunk = line
                unreadline(next_chunk)
            else:
                logger.info("Skipping an rpc error line at the end of the log")
                break
        if not chunk:
            break
        yield chunk


async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Reassemble stream chunks into decoded lines without line terminators."""
    pending = b""
    async for chunk in chunks:
        pending += chunk
        while (pos := pending.find(b"\n")) >= 0:
            line, pending = pending[:pos], pending[pos + 1 :]
            yield line.rstrip(b"\r").decode(errors="replace")
    if pending:
        yield pending.rstrip(b"\r").decode(errors="replace")


class MalformedLineError(ValueError):
    pass


def split_log_line(line: str) -> tuple[str, str]:
    """Split a `<timestamp> <content>` log line on its first space."""
    idx = line.find(" ")
    if idx == -1:
        msg = "missing timestamp"
        raise MalformedLineError(msg)
    return line[:idx], line[idx + 1 :]


def remove_subsecond(timestamp: str) -> str:
    """Truncate a RFC 3339 timestamp with nanoseconds to whole seconds.

    The `sinceTime` log option only understands second precision, so resume
    positions are kept at the same granularity.
    """
    dot = timestamp.find(".")
    if dot == -1:
        return timestamp
    last = 0
    for i in range(dot, len(timestamp)):
        if timestamp[i].isdigit():
            last = i
    if last == 0:
        return timestamp
    return timestamp[:dot] + timestamp[last + 1 :]


@dataclass(frozen=True)
class ResumeWatermark:
    timestamp: str
    lines_at_timestamp: int


@dataclass
class ResumeRequest:
    timestamp: str
    lines_to_skip: int

    @classmethod
    def from_watermark(cls, watermark: ResumeWatermark) -> ResumeRequest:
        return cls(
            timestamp=watermark.timestamp, lines_to_skip=watermark.lines_at_timestamp
        )

    def since_time(self) -> datetime:
        return parse_date(self.timestamp)

    def should_skip(self, timestamp: str) -> bool:
        if not self.timestamp or self.timestamp != timestamp:
            return False
        if self.lines_to_skip <= 0:
            return False
        self.lines_to_skip -= 1
        return True


class ResumeTracker:
    def __init__(self) -> None:
        self._watermark: ResumeWatermark | None = None

    @property
    def watermark(self) -> ResumeWatermark | None:
        return self._watermark

    def observe(self, timestamp: str) -> ResumeWatermark:
        if self._watermark and self._watermark.timestamp == timestamp:
            lines = self._watermark.lines_at_timestamp + 1
        else:
            lines = 1
        self._watermark = ResumeWatermark(timestamp, lines)
        return self._watermark

    @staticmethod
    def should_skip(timestamp: str, request: ResumeRequest | None) -> bool:
        if request is None:
            return False
        return request.should_skip(timestamp)

    def resume_request(self) -> ResumeRequest | None:
        if self._watermark is None:
            return None
        return ResumeRequest.from_watermark(self._watermark)
