from __future__ import annotations

import asyncio
import io
import logging

import pytest

from devstack.services.output_relay import LineSplitter, relay_stream


class ChunkStream:
    def __init__(self, chunks: list[bytes], error: BaseException | None = None) -> None:
        self._chunks = list(chunks)
        self._error = error

    async def read(self, _n: int = -1) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        if self._error is not None:
            raise self._error
        return b""


@pytest.mark.unit
def test_line_splitter_reassembles_lines_across_chunks() -> None:
    splitter = LineSplitter()

    assert splitter.feed(b"hel") == []
    assert splitter.feed(b"lo\nwor") == ["hello"]
    assert splitter.feed(b"ld\r\n") == ["world"]
    assert splitter.flush() == []


@pytest.mark.unit
def test_line_splitter_keeps_multibyte_characters_split_between_chunks() -> None:
    encoded = "订单已创建\n".encode("utf-8")
    splitter = LineSplitter()

    assert splitter.feed(encoded[:4]) == []
    assert splitter.feed(encoded[4:]) == ["订单已创建"]


@pytest.mark.unit
def test_line_splitter_flushes_unterminated_tail() -> None:
    splitter = LineSplitter()
    splitter.feed(b"done\npartial")

    assert splitter.flush() == ["partial"]
    assert splitter.flush() == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_relay_stream_prefixes_lines_and_skips_blank_ones() -> None:
    sink = io.StringIO()
    stream = ChunkStream([b"first li", b"ne\nsecond\n\n   \nthi", b"rd"])

    await relay_stream(stream, "Worker", sink)  # type: ignore[arg-type]

    assert sink.getvalue() == "[Worker] first line\n[Worker] second\n[Worker] third\n"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_relay_stream_handles_lines_longer_than_a_chunk() -> None:
    reader = asyncio.StreamReader()
    long_line = "x" * 10_000
    reader.feed_data(f"{long_line}\nshort\n{long_line}".encode())
    reader.feed_eof()
    sink = io.StringIO()

    await relay_stream(reader, "API", sink, chunk_size=64)

    assert sink.getvalue().splitlines() == [f"[API] {long_line}", "[API] short", f"[API] {long_line}"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_relay_stream_suppresses_closed_stream_errors(caplog: pytest.LogCaptureFixture) -> None:
    sink = io.StringIO()
    stream = ChunkStream([b"bye\n"], error=BrokenPipeError())

    with caplog.at_level(logging.ERROR):
        await relay_stream(stream, "Frontend", sink)  # type: ignore[arg-type]

    assert sink.getvalue() == "[Frontend] bye\n"
    assert caplog.records == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_relay_stream_logs_other_read_errors_without_raising(caplog: pytest.LogCaptureFixture) -> None:
    sink = io.StringIO()
    stream = ChunkStream([b"half a li"], error=RuntimeError("boom"))

    with caplog.at_level(logging.ERROR):
        await relay_stream(stream, "Temporal", sink)  # type: ignore[arg-type]

    assert sink.getvalue() == "[Temporal] half a li\n"
    assert any("Temporal" in record.getMessage() for record in caplog.records)
