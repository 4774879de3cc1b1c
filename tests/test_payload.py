"""Tests for the zero-byte generator and the upload sink."""

import logging
import time

import pytest
from starlette.requests import ClientDisconnect

from h2perf.payload import CHUNK_SIZE, ZERO_CHUNK, UploadAborted, drain_body, stream_zeros


async def collect(agen):
    return [chunk async for chunk in agen]


async def body_of(*chunks, fail_after=False):
    for chunk in chunks:
        yield chunk
    if fail_after:
        raise ClientDisconnect()


class TestStreamZeros:
    """Tests for stream_zeros."""

    @pytest.mark.asyncio
    async def test_small_size_is_one_chunk(self):
        """A size below the chunk size yields a single truncated slice."""
        chunks = await collect(stream_zeros(10))

        assert [len(c) for c in chunks] == [10]
        assert bytes(chunks[0]) == b"\x00" * 10

    @pytest.mark.asyncio
    async def test_exact_chunk_size(self):
        """Exactly one chunk is produced for CHUNK_SIZE bytes."""
        chunks = await collect(stream_zeros(CHUNK_SIZE))

        assert [len(c) for c in chunks] == [CHUNK_SIZE]

    @pytest.mark.asyncio
    async def test_last_chunk_is_truncated(self):
        """The last slice carries only the remainder, never padding."""
        size = 2 * CHUNK_SIZE + 7
        chunks = await collect(stream_zeros(size))

        assert [len(c) for c in chunks] == [CHUNK_SIZE, CHUNK_SIZE, 7]
        assert sum(len(c) for c in chunks) == size

    @pytest.mark.asyncio
    async def test_chunks_share_one_buffer(self):
        """Every slice is a view of the process-wide zero chunk."""
        chunks = await collect(stream_zeros(CHUNK_SIZE + 1))

        assert all(isinstance(c, memoryview) for c in chunks)
        assert all(c.obj is ZERO_CHUNK for c in chunks)
        assert all(c.readonly for c in chunks)

    @pytest.mark.asyncio
    async def test_custom_chunk(self):
        """A smaller chunk splits the stream into more slices."""
        chunks = await collect(stream_zeros(10, chunk=memoryview(bytes(4))))

        assert [len(c) for c in chunks] == [4, 4, 2]

    @pytest.mark.asyncio
    async def test_completion_is_logged(self, caplog):
        """Draining the generator logs bytes and elapsed time."""
        with caplog.at_level(logging.INFO, logger="h2perf.payload"):
            await collect(stream_zeros(100))

        assert "GET /api/100: done bytes=100 elapsed=" in caplog.text

    @pytest.mark.asyncio
    async def test_elapsed_counts_from_given_start(self, caplog):
        """A caller-supplied start time is used for the completion line."""
        with caplog.at_level(logging.INFO, logger="h2perf.payload"):
            await collect(stream_zeros(8, start_time=time.monotonic() - 3))

        elapsed = float(caplog.text.split("elapsed=")[1].split("s")[0])
        assert elapsed >= 3.0

    @pytest.mark.asyncio
    async def test_abandoned_generator_logs_nothing(self, caplog):
        """A consumer that stops early does not produce a completion line."""
        agen = stream_zeros(3 * CHUNK_SIZE)
        with caplog.at_level(logging.INFO, logger="h2perf.payload"):
            await agen.__anext__()
            await agen.aclose()

        assert "done" not in caplog.text


class TestDrainBody:
    """Tests for drain_body."""

    @pytest.mark.asyncio
    async def test_counts_all_bytes(self):
        """Received bytes are summed until the body ends."""
        received = await drain_body(body_of(b"a" * 5, b"b" * 5), 10)

        assert received == 10

    @pytest.mark.asyncio
    async def test_stops_once_size_reached(self):
        """Data beyond the target is never pulled."""
        pulled = []

        async def chunks():
            for chunk in (b"x" * 6, b"y" * 6, b"z" * 6):
                pulled.append(chunk)
                yield chunk

        received = await drain_body(chunks(), 10)

        assert received == 12
        assert len(pulled) == 2

    @pytest.mark.asyncio
    async def test_short_body_returns_received(self):
        """A body that ends early is not an error."""
        received = await drain_body(body_of(b"abc"), 100)

        assert received == 3

    @pytest.mark.asyncio
    async def test_disconnect_raises_upload_aborted(self):
        """A client disconnect mid-read carries the byte count so far."""
        with pytest.raises(UploadAborted) as excinfo:
            await drain_body(body_of(b"abcd", fail_after=True), 100)

        assert excinfo.value.received == 4
        assert "4 bytes" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, ClientDisconnect)
