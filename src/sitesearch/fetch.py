from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional
import aiohttp
from bs4 import BeautifulSoup
from .config import HttpConfig
from .parse import parse_html

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/xml", "application/xml")

@dataclass
class FetchResult:
    status: int
    ok: bool
    url: str
    document: Optional[BeautifulSoup] = None

    @property
    def html(self) -> str:
        return str(self.document) if self.document is not None else ""


class RateLimiter:
    """Keeps at least ``min_delay`` seconds between consecutive requests.

    One limiter is shared by every fetch of a single site crawl.
    """

    def __init__(self, min_delay: float):
        self.min_delay = min_delay
        self.last_request = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        async with self._lock:
            delay = self.min_delay - (time.monotonic() - self.last_request)
            if delay > 0:
                logger.debug(f"Waiting {delay:.3f}s before next request")
                await asyncio.sleep(delay)
            self.last_request = time.monotonic()


def create_session(cfg: HttpConfig) -> aiohttp.ClientSession:
    timeout = aiohttp.ClientTimeout(total=cfg.timeout)
    headers = {"User-Agent": cfg.user_agent, "Referer": cfg.referrer}
    return aiohttp.ClientSession(headers=headers, timeout=timeout)

async def fetch(url: str, session: aiohttp.ClientSession, limiter: RateLimiter) -> FetchResult:
    """Fetch and parse one page. Every failure is reported through the result, never raised."""
    await limiter.acquire()
    try:
        async with session.get(url, allow_redirects=True) as resp:
            final_url = str(resp.url)
            if not 200 <= resp.status < 300:
                logger.debug(f"Failed to load {url}: status code {resp.status}")
                return FetchResult(resp.status, False, final_url)
            if resp.content_type not in HTML_CONTENT_TYPES:
                logger.debug(f"Skipping {url}: unsupported content type {resp.content_type}")
                return FetchResult(resp.status, False, final_url)
            text = await resp.text(errors="ignore")
            status = resp.status
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.debug(f"Failed to load {url}: {e!r}")
        return FetchResult(0, False, url)

    try:
        document = parse_html(text)
    except Exception as e:
        logger.debug(f"Failed to parse {url} ({status}): {e}")
        return FetchResult(0, False, final_url)
    return FetchResult(status, True, final_url, document)
