import logging
import os
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response, StreamingResponse
from fastapi.staticfiles import StaticFiles

from .config import DEFAULT_STATIC_DIR
from .payload import UploadAborted, drain_body, stream_zeros

logger = logging.getLogger(__name__)


def parse_size(raw: str) -> Optional[int]:
    """Byte count from a path segment, or None unless it is a positive run of ASCII digits."""
    if not (raw.isascii() and raw.isdigit()):
        return None
    size = int(raw)
    return size if size > 0 else None


def describe_peer(request: Request) -> str:
    client = request.client
    remote = f"{client.host}:{client.port}" if client else "unknown"
    return f"proto=HTTP/{request.scope.get('http_version', '1.1')} remote={remote}"


def create_app(static_dir=DEFAULT_STATIC_DIR):
    """Build the ASGI app: the two /api/{size} handlers plus static files."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/api/{size}")
    async def download(size: str, request: Request):
        start_time = time.monotonic()
        count = parse_size(size)
        if count is None:
            logger.debug(f"GET /api/{size}: rejected")
            return Response(status_code=400)
        logger.info(f"GET /api/{count}: headers received {describe_peer(request)}")
        return StreamingResponse(
            stream_zeros(count, start_time=start_time),
            media_type="application/octet-stream",
            headers={"Content-Length": str(count)},
        )

    @app.put("/api/{size}")
    async def upload(size: str, request: Request):
        start_time = time.monotonic()
        count = parse_size(size)
        if count is None:
            logger.debug(f"PUT /api/{size}: rejected")
            return Response(status_code=400)
        logger.info(f"PUT /api/{count}: headers received {describe_peer(request)}")
        try:
            received = await drain_body(request.stream(), count)
        except UploadAborted as e:
            elapsed = time.monotonic() - start_time
            logger.warning(f"PUT /api/{count}: aborted bytes={e.received} elapsed={elapsed:.3f}s")
            return Response(status_code=500)
        elapsed = time.monotonic() - start_time
        logger.info(f"PUT /api/{count}: done bytes={received} elapsed={elapsed:.3f}s")
        return Response(status_code=204)

    # Registered last so /api/{size} always wins.
    if os.path.isdir(static_dir):
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")
    else:
        logger.warning(f"Static directory {static_dir} not found, only /api is served")
    return app
