import logging
import time
from typing import AsyncIterator, Optional

from starlette.requests import ClientDisconnect

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 20  # 1 MiB

# Never written after import; every response slices the same buffer.
ZERO_CHUNK = bytes(CHUNK_SIZE)
ZERO_VIEW = memoryview(ZERO_CHUNK)


class UploadAborted(Exception):
    """The request body failed mid-read (client reset or connection lost)."""

    def __init__(self, received: int):
        super().__init__(f"upload aborted after {received} bytes")
        self.received = received


async def stream_zeros(
    size: int, label: str = "", chunk: memoryview = ZERO_VIEW, start_time: Optional[float] = None
) -> AsyncIterator[memoryview]:
    """Yield exactly `size` zero bytes as slices of `chunk`.

    The last slice is truncated to what remains. Completion is logged only
    when the consumer drains the generator, with the time elapsed since
    `start_time` (a `time.monotonic()` reading, default the first pull).
    """
    label = label or f"GET /api/{size}"
    if start_time is None:
        start_time = time.monotonic()
    sent = 0
    while sent < size:
        chunk_len = min(size - sent, len(chunk))
        yield chunk[:chunk_len]
        sent += chunk_len
    elapsed = time.monotonic() - start_time
    logger.info(f"{label}: done bytes={sent} elapsed={elapsed:.3f}s")


async def drain_body(chunks: AsyncIterator[bytes], size: int) -> int:
    """Read and discard `chunks` until `size` bytes arrived or the body ends.

    Returns the number of bytes actually received, which may be short of
    `size` when the client ends the body early.
    """
    received = 0
    try:
        async for data in chunks:
            received += len(data)
            if received >= size:
                break
    except ClientDisconnect as e:
        raise UploadAborted(received) from e
    return received
