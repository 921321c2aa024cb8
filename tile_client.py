import argparse
import asyncio
import logging
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

import aiohttp
import requests

from work_queue import WorkQueue

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_SLIDE = "slide_1"
LEVEL = 18
COL_RANGE = 30
ROW_RANGE = 20
CONCURRENCY = 50


@dataclass(frozen=True)
class BenchConfig:
    base_url: str = DEFAULT_BASE_URL
    slide: str = DEFAULT_SLIDE
    level: int = LEVEL
    col_range: int = COL_RANGE
    row_range: int = ROW_RANGE
    concurrency: int = CONCURRENCY
    # None leaves each HTTP client on its default timeout
    timeout: Optional[float] = None

    @property
    def metadata_url(self):
        return f"{self.base_url.rstrip('/')}/{self.slide}.dzi"

    def tile_url(self, col, row):
        return f"{self.base_url.rstrip('/')}/{self.slide}_files/{self.level}/{col}_{row}.jpg"

    @property
    def total_requests(self):
        return self.col_range * self.row_range

    @property
    def label(self):
        return f"{self.total_requests} total requests"


@dataclass
class BatchResult:
    counts: Counter = field(default_factory=Counter)
    runtime: float = 0.0
    # (col, row) -> future resolving to the tile size, or None on failure
    tiles: dict = field(default_factory=dict)

    @property
    def requests_per_second(self):
        return self.counts['total'] / self.runtime if self.runtime > 0 else 0.0


def tile_coordinates(config):
    """Yield every (col, row) of the grid once, row by row."""
    for row in range(config.row_range):
        for col in range(config.col_range):
            yield col, row


def fetch_metadata(config):
    """Fetch the slide's .dzi descriptor and log it."""
    response = requests.get(config.metadata_url, timeout=config.timeout)
    response.raise_for_status()
    logger.info(response.text)
    return response.text


async def fetch_tile(session, url):
    async with session.get(url) as response:
        response.raise_for_status()
        body = await response.read()
    return len(body)


def make_tile_job(session, config, col, row, counts, fetch=fetch_tile):
    url = config.tile_url(col, row)

    async def job():
        try:
            size = await fetch(session, url)
        except Exception as e:
            counts['failure'] += 1
            logger.error(f"Request for tile {col}_{row} failed: {e!r}")
            return None
        finally:
            counts['total'] += 1
        counts['success'] += 1
        counts['bytes'] += size
        return size

    return job


async def run_batch(config, fetch=fetch_tile):
    """Request every tile of the grid through a bounded work queue and time it."""
    result = BatchResult()
    queue = WorkQueue(config.concurrency)
    timeout = aiohttp.ClientTimeout(total=config.timeout) if config.timeout else None
    session_kwargs = {'timeout': timeout} if timeout else {}

    async with aiohttp.ClientSession(**session_kwargs) as session:
        start_time = time.time()
        for col, row in tile_coordinates(config):
            job = make_tile_job(session, config, col, row, result.counts, fetch)
            result.tiles[(col, row)] = queue.submit(job)
        await queue.wait_idle()
        result.runtime = time.time() - start_time

    logger.info(f"{config.label}: {result.runtime * 1000:.3f}ms")
    logger.debug(f"Peak concurrency: {queue.peak}/{config.concurrency}")
    return result


def print_summary(result):
    logger.info("\nSummary:")
    logger.info(f"Total Requests Sent: {result.counts['total']}")
    logger.info(f"Successful Requests: {result.counts['success']}")
    logger.info(f"Failed Requests: {result.counts['failure']}")
    logger.info(f"Bytes Received: {result.counts['bytes']}")
    logger.info(f"Execution Time: {result.runtime:.2f} seconds")
    logger.info(f"Requests Per Second: {result.requests_per_second:.2f}")


def run(config, fetch=fetch_tile):
    fetch_metadata(config)
    result = asyncio.run(run_batch(config, fetch))
    print_summary(result)
    return result


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Time a burst of concurrent tile requests against a Deep Zoom tile server.")
    parser.add_argument('--base_url', type=str, default=DEFAULT_BASE_URL, help=f"Tile server base URL (default: {DEFAULT_BASE_URL})")
    parser.add_argument('--slide', type=str, default=DEFAULT_SLIDE, help=f"Slide name to request (default: {DEFAULT_SLIDE})")
    parser.add_argument('--timeout', type=float, default=None, help="Per-request timeout in seconds (default: client default)")
    parser.add_argument('--verbose', action='store_true', help="Enable verbose logging")
    args = parser.parse_args(argv)
    if args.timeout is not None and args.timeout <= 0:
        parser.error(f"--timeout {args.timeout} must be a positive number of seconds")
    return args


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='%(message)s')

    config = BenchConfig(base_url=args.base_url, slide=args.slide, timeout=args.timeout)
    logger.info(f"Sending {config.total_requests} requests to {config.base_url} (concurrency {config.concurrency})...")
    try:
        run(config)
    except requests.exceptions.RequestException as e:
        logger.error(f"Metadata request failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
