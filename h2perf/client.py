"""Benchmark client for the /api/{size} endpoints.

Times repeated GET or PUT transfers over one HTTP/2 connection and reports
throughput the same way for every run, so results from different servers
can be appended to one table.
"""

import logging
import os
import time
from typing import Iterator, List, NamedTuple, Optional

import httpx
import numpy as np
import pandas as pd

from .payload import ZERO_CHUNK

logger = logging.getLogger(__name__)


class TransferResult(NamedTuple):
    operation: str
    size: int
    status_code: int
    bytes_transferred: int
    elapsed: float
    http_version: str

    @property
    def ok(self) -> bool:
        if self.operation == "GET":
            return self.status_code == 200 and self.bytes_transferred == self.size
        return self.status_code == 204

    @property
    def throughput_kbps(self) -> float:
        if self.elapsed <= 0:
            return 0.0
        return (self.bytes_transferred * 8) / 1000 / self.elapsed


def iter_upload_body(size: int, chunk: bytes = ZERO_CHUNK) -> Iterator[bytes]:
    sent = 0
    while sent < size:
        chunk_len = min(size - sent, len(chunk))
        yield chunk[:chunk_len]
        sent += chunk_len


def measure_download(client: httpx.Client, base_url: str, size: int) -> TransferResult:
    received = 0
    start_time = time.perf_counter()
    with client.stream("GET", f"{base_url}/api/{size}") as response:
        for chunk in response.iter_raw():
            received += len(chunk)
    elapsed = time.perf_counter() - start_time
    return TransferResult("GET", size, response.status_code, received, elapsed, response.http_version)


def measure_upload(client: httpx.Client, base_url: str, size: int) -> TransferResult:
    start_time = time.perf_counter()
    response = client.put(
        f"{base_url}/api/{size}",
        content=iter_upload_body(size),
        headers={"Content-Length": str(size), "Content-Type": "application/octet-stream"},
    )
    elapsed = time.perf_counter() - start_time
    return TransferResult("PUT", size, response.status_code, size, elapsed, response.http_version)


def summarize(results: List[TransferResult]) -> dict:
    successes = [r for r in results if r.ok]
    throughputs = np.array([r.throughput_kbps for r in successes])
    times = np.array([r.elapsed for r in successes])
    first = results[0] if results else None
    return {
        "Operation": first.operation if first else "",
        "Size (bytes)": first.size if first else 0,
        "HTTP Version": successes[0].http_version if successes else "",
        "Successful Transfers": len(successes),
        "Failed Transfers": len(results) - len(successes),
        "Average Throughput (kbps)": float(np.mean(throughputs)) if throughputs.size else 0.0,
        "Standard Deviation (kbps)": float(np.std(throughputs)) if throughputs.size else 0.0,
        "Average Transfer Time (s)": float(np.mean(times)) if times.size else 0.0,
    }


def save_summary(summary: dict, path: str) -> None:
    """Append `summary` as one row to a .xlsx or .csv results table."""
    df = pd.DataFrame([summary])
    excel = path.endswith(".xlsx")
    if os.path.exists(path):
        existing_df = pd.read_excel(path) if excel else pd.read_csv(path)
        df = pd.concat([existing_df, df], ignore_index=True)
    if excel:
        df.to_excel(path, index=False)
    else:
        df.to_csv(path, index=False)
    logger.info(f"Results saved to {path}")


def run_client(host, port, size, iterations, upload=False, verify=True, output: Optional[str] = None, transport=None):
    base_url = f"https://{host}:{port}"
    measure = measure_upload if upload else measure_download
    operation = "PUT" if upload else "GET"
    results = []

    with httpx.Client(http2=True, verify=verify, timeout=None, transport=transport) as client:
        for _ in range(iterations):
            try:
                result = measure(client, base_url, size)
            except httpx.HTTPError as e:
                logger.warning(f"{operation} /api/{size} failed: {e!r}")
                result = TransferResult(operation, size, 0, 0, 0.0, "")
            if not result.ok:
                logger.warning(f"{operation} /api/{size}: status={result.status_code} bytes={result.bytes_transferred}")
            results.append(result)

    summary = summarize(results)
    logger.info(f"Summary for {operation} /api/{size}:")
    logger.info(f"Protocol: {summary['HTTP Version'] or 'n/a'}")
    logger.info(f"Total Successful Transfers: {summary['Successful Transfers']}")
    logger.info(f"Total Failed Transfers: {summary['Failed Transfers']}")
    logger.info(f"Average Throughput: {summary['Average Throughput (kbps)']:.2f} kbps")
    logger.info(f"Standard Deviation: {summary['Standard Deviation (kbps)']:.2f} kbps")

    if output:
        save_summary(summary, output)
    return summary
