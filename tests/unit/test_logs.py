import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from unittest import mock

import aiohttp
import pytest

from platform_log_tail.logs import (
    MalformedLineError,
    ResumeRequest,
    ResumeTracker,
    ResumeWatermark,
    filter_out_rpc_error,
    iter_lines,
    remove_subsecond,
    split_log_line,
)


def create_reader() -> aiohttp.StreamReader:
    return aiohttp.StreamReader(
        mock.Mock(_reading_paused=False), 1024, loop=asyncio.get_running_loop()
    )


class TestSplitLogLine:
    def test_split(self) -> None:
        assert split_log_line("2024-01-02T03:04:05.0Z hello") == (
            "2024-01-02T03:04:05.0Z",
            "hello",
        )

    def test_split_on_first_space_only(self) -> None:
        assert split_log_line("2024-01-02T03:04:05Z hello  world ") == (
            "2024-01-02T03:04:05Z",
            "hello  world ",
        )

    def test_empty_content(self) -> None:
        assert split_log_line("2024-01-02T03:04:05Z ") == ("2024-01-02T03:04:05Z", "")

    def test_missing_timestamp(self) -> None:
        with pytest.raises(MalformedLineError, match="missing timestamp"):
            split_log_line("not-a-valid-line")


class TestRemoveSubsecond:
    def test_nanoseconds(self) -> None:
        assert (
            remove_subsecond("2024-01-02T03:04:05.123456789Z")
            == "2024-01-02T03:04:05Z"
        )

    def test_single_digit(self) -> None:
        assert remove_subsecond("2024-01-02T03:04:05.0Z") == "2024-01-02T03:04:05Z"

    @pytest.mark.parametrize(
        "timestamp",
        [
            "2024-01-02T03:04:05Z",
            "2024-01-02T03:04:05.Z",
            "",
            "no-dot-here",
        ],
    )
    def test_unchanged(self, timestamp: str) -> None:
        assert remove_subsecond(timestamp) == timestamp

    @pytest.mark.parametrize(
        "timestamp",
        [
            "2024-01-02T03:04:05.123456789Z",
            "2024-01-02T03:04:05.5Z",
            "2024-01-02T03:04:05Z",
        ],
    )
    def test_idempotent(self, timestamp: str) -> None:
        once = remove_subsecond(timestamp)
        assert remove_subsecond(once) == once


class TestResumeRequest:
    def test_since_time(self) -> None:
        request = ResumeRequest("2024-01-02T03:04:05Z", 2)
        assert request.since_time() == datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)

    def test_since_time_invalid(self) -> None:
        request = ResumeRequest("yesterday", 2)
        with pytest.raises(ValueError):
            request.since_time()

    def test_from_watermark(self) -> None:
        request = ResumeRequest.from_watermark(ResumeWatermark("T", 3))
        assert request == ResumeRequest(timestamp="T", lines_to_skip=3)

    def test_empty_timestamp_never_skips(self) -> None:
        request = ResumeRequest("", 5)
        assert not request.should_skip("")
        assert request.lines_to_skip == 5


class TestResumeTracker:
    def test_no_watermark(self) -> None:
        tracker = ResumeTracker()
        assert tracker.watermark is None
        assert tracker.resume_request() is None

    def test_watermark_counts_lines_at_timestamp(self) -> None:
        tracker = ResumeTracker()
        counts = [
            tracker.observe(ts).lines_at_timestamp
            for ts in ["A", "A", "A", "B", "B", "C"]
        ]
        assert counts == [1, 2, 3, 1, 2, 1]
        assert tracker.watermark == ResumeWatermark("C", 1)

    def test_resume_request(self) -> None:
        tracker = ResumeTracker()
        tracker.observe("A")
        tracker.observe("A")
        tracker.observe("A")
        assert tracker.resume_request() == ResumeRequest("A", 3)

    def test_skip_resent_lines(self) -> None:
        tracker = ResumeTracker()
        request = ResumeRequest("A", 2)
        emitted = []
        for i, ts in enumerate(["A", "A", "A", "B", "B"]):
            tracker.observe(ts)
            if not tracker.should_skip(ts, request):
                emitted.append((i, ts))
        assert emitted == [(2, "A"), (3, "B"), (4, "B")]
        assert request.lines_to_skip == 0

    def test_no_request(self) -> None:
        assert not ResumeTracker.should_skip("A", None)

    def test_different_timestamp_passes(self) -> None:
        request = ResumeRequest("A", 2)
        assert not ResumeTracker.should_skip("B", request)
        assert request.lines_to_skip == 2


class TestIterLines:
    async def test_reassemble(self) -> None:
        async def chunks() -> AsyncIterator[bytes]:
            for chunk in (b"li", b"ne1\r\nline", b"2\n", b"\xffline3"):
                yield chunk

        lines = [line async for line in iter_lines(chunks())]
        assert lines == ["line1", "line2", "�line3"]


class TestFilterOutRPCError:
    async def test_iter_eof(self) -> None:
        reader = create_reader()
        reader.feed_eof()
        chunks = [chunk async for chunk in filter_out_rpc_error(reader)]
        assert chunks == []

    async def test_read_two_lines_eof(self) -> None:
        reader = create_reader()
        reader.feed_data(b"line1\n")
        reader.feed_data(b"line2")
        reader.feed_eof()
        chunks = [chunk async for chunk in filter_out_rpc_error(reader)]
        assert chunks == [b"line1\n", b"line2"]

    @pytest.mark.parametrize(
        "trailer",
        [
            b"rpc error: code = whatever",
            b"Unable to retrieve container logs for docker://0123456789abcdef",
            b'failed to try resolving symlinks in path "/var/log/pods/xxx.log": '
            b"lstat /var/log/pods/xxx.log: no such file or directory",
        ],
    )
    async def test_trailing_error_filtered(self, trailer: bytes) -> None:
        reader = create_reader()
        reader.feed_data(b"line1\n")
        reader.feed_data(trailer)
        reader.feed_eof()
        chunks = [chunk async for chunk in filter_out_rpc_error(reader)]
        assert chunks == [b"line1\n"]

    async def test_only_last_error_filtered(self) -> None:
        reader = create_reader()
        reader.feed_data(b"line1\n")
        reader.feed_data(b"rpc error: code = whatever\n")
        reader.feed_data(b"rpc error: code = again\n")
        reader.feed_eof()
        chunks = [chunk async for chunk in filter_out_rpc_error(reader)]
        assert chunks == [b"line1\n", b"rpc error: code = whatever\n"]

    async def test_error_in_the_middle_kept(self) -> None:
        reader = create_reader()
        reader.feed_data(b"line1\n")
        reader.feed_data(b"rpc error: code = whatever\n")
        reader.feed_data(b"line2\n")
        reader.feed_eof()
        chunks = [chunk async for chunk in filter_out_rpc_error(reader)]
        assert chunks == [b"line1\n", b"rpc error: code = whatever\n", b"line2\n"]
