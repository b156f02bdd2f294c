from __future__ import annotations
import asyncio
import logging
import time
from concurrent.futures import Executor
from typing import Dict, Optional, Set
import aiohttp
from bs4 import BeautifulSoup
from .config import HttpConfig, CrawlLimits
from .db import Database
from .fetch import FetchResult, RateLimiter, create_session, fetch
from .indexer import PageIndexer
from .lemmas import LemmaAnalyzer
from .models import Site, SiteStatus
from .parse import extract_links, page_text

logger = logging.getLogger(__name__)

INDEXING_INTERRUPTED_BY_USER = "Indexing was stopped by the user"

# Minimum interval between status time updates of a site, seconds
SITE_UPDATE_MIN_PERIOD = 2.0

def now_ms() -> int:
    return int(time.time() * 1000)


class SiteCrawler:
    """Crawls one site (or a single page of it) and indexes every page it loads.

    Each page is handled by its own coroutine: load, index, extract links, then
    spawn a coroutine per new link and wait for all of them. The set of visited
    paths caps the crawl at ``limits.max_pages``.
    """

    def __init__(self, site: Site, db: Database, analyzer: LemmaAnalyzer,
                 limits: CrawlLimits | None = None, http_config: HttpConfig | None = None,
                 stop_event: asyncio.Event | None = None, single_path: str | None = None,
                 executor: Executor | None = None, indexer: PageIndexer | None = None):
        self.site = site
        self.site_link = site.url.lower()
        self.db = db
        self.analyzer = analyzer
        self.limits = limits or CrawlLimits()
        self.http_config = http_config or HttpConfig()
        self.stop_event = stop_event
        self.single_path = single_path
        self.executor = executor
        self.indexer = indexer or PageIndexer(db)

        self.visited: Set[str] = set()
        self.cancelled = False
        self.last_error: Optional[str] = None
        self.rate_limiter = RateLimiter(self.http_config.delay_between_requests)
        self._semaphore = asyncio.Semaphore(max(1, self.http_config.max_concurrency))
        self._last_status_update = 0.0
        self._session: Optional[aiohttp.ClientSession] = None

    async def run(self) -> SiteStatus:
        first_path = self.single_path or "/"
        self.visited.add(first_path.lower())
        self._last_status_update = time.monotonic()
        logger.info(f"Started indexing {self.site_link}{self.single_path or ''}")
        try:
            async with create_session(self.http_config) as session:
                self._session = session
                await self._crawl_page(first_path)
        except Exception as e:
            logger.exception(f"Indexing of {self.site_link} failed")
            self.cancel(str(e) or e.__class__.__name__)
        finally:
            self._session = None

        status = SiteStatus.FAILED if self.cancelled else SiteStatus.INDEXED
        await self.db.update_site_status(self.site.id, status, now_ms(), self.last_error)
        logger.info(f"Finished indexing {self.site_link}: {status.value}, {len(self.visited)} pages"
                    + (f" ({self.last_error})" if self.last_error else ""))
        return status

    # ------------------ page tasks ------------------

    async def _crawl_page(self, path: str):
        if self.is_cancelled():
            return
        try:
            links = await self._process_page(path)
        except Exception as e:
            logger.exception(f"Processing of {self.site_link}{path} failed")
            self.cancel(str(e) or e.__class__.__name__)
            return
        if self.single_path is not None or not links or self.is_cancelled():
            return
        children = [link for link in links if self.add_unique_path(link)]
        if children:
            await asyncio.gather(*(self._crawl_page(link) for link in children))

    async def _process_page(self, path: str) -> Set[str]:
        logger.debug(f"Loading page {self.site_link}{path}")
        async with self._semaphore:
            if self.is_cancelled():
                return set()
            result = await fetch(self.site_link + path, self._session, self.rate_limiter)
            if self.is_cancelled():
                return set()
            lemmas = await self._get_lemmas(result)
            await self.indexer.write_page(self, path, result, lemmas)
        if not result.ok:
            return set()
        return extract_links(result.document, result.url)

    async def _get_lemmas(self, result: FetchResult) -> Dict[str, int]:
        if not result.ok:
            return {}
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, self._document_lemmas, result.document)

    def _document_lemmas(self, document: BeautifulSoup) -> Dict[str, int]:
        return self.analyzer.get_lemmas(page_text(document))

    # ------------------ shared crawl state ------------------

    def add_unique_path(self, path: str) -> bool:
        """Register a path for crawling unless it was seen or the page limit is reached.

        Runs without awaiting, so the check and insert are atomic on the event loop.
        """
        if len(self.visited) >= self.limits.max_pages:
            return False
        key = path.lower()
        if key in self.visited:
            return False
        self.visited.add(key)
        return True

    def is_cancelled(self) -> bool:
        if self.cancelled:
            return True
        if self.stop_event is not None and self.stop_event.is_set():
            self.cancelled = True
            self.last_error = INDEXING_INTERRUPTED_BY_USER
            logger.debug(f"{INDEXING_INTERRUPTED_BY_USER}: {self.site_link}")
            return True
        return False

    def cancel(self, error: str):
        if not self.cancelled:
            self.last_error = error
        self.cancelled = True
        logger.debug(f"Indexing of {self.site_link} stopped because of an error: {error}")

    async def touch_status_time(self):
        """Refresh the site's status time, at most once per SITE_UPDATE_MIN_PERIOD."""
        current = time.monotonic()
        if current - self._last_status_update > SITE_UPDATE_MIN_PERIOD:
            logger.debug(f"Updating status time of {self.site_link}")
            self._last_status_update = current
            await self.db.update_site_status_time(self.site.id, now_ms())
