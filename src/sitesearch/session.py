"""
Process-wide coordination of indexing runs: at most one run at a time, full or single page.
"""
from __future__ import annotations
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, List, Optional

from .config import CrawlLimits, HttpConfig, SiteConfig, SitesList
from .crawl import INDEXING_INTERRUPTED_BY_USER, SiteCrawler, now_ms
from .db import Database
from .lemmas import LemmaAnalyzer
from .models import ResultResponse, Site, SiteStatus
from .parse import get_site_link, is_site_url_only

logger = logging.getLogger(__name__)

INDEXING_ALREADY_IN_PROCESS = "Indexing is already running"
INDEXING_NOT_IN_PROCESS = "Indexing is not running"
INVALID_URL = "This page is outside the sites listed in the configuration file"

# stop() waits STOP_WAIT_TRIES * STOP_WAIT_INTERVAL seconds for crawlers to finish
STOP_WAIT_INTERVAL = 0.2
STOP_WAIT_TRIES = 20


class IndexingSession:
    """Owns the "run active" flag and the stop signal shared by all crawlers of a run."""

    def __init__(self, db: Database, sites: SitesList, analyzer: LemmaAnalyzer,
                 limits: CrawlLimits | None = None, http_config: HttpConfig | None = None,
                 max_workers: int = 2):
        self.db = db
        self.sites = sites
        self.analyzer = analyzer
        self.limits = limits or CrawlLimits()
        self.http_config = http_config or HttpConfig()
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="lemmas")
        self._lock = asyncio.Lock()
        self._run_active = False
        self._stop_event = asyncio.Event()
        self._run_task: Optional[asyncio.Task] = None

    @property
    def run_active(self) -> bool:
        return self._run_active

    async def is_running(self) -> bool:
        """True while a run is active, or a configured site is still marked INDEXING in the store."""
        if self._run_active:
            logger.debug("Status check: indexing run is active")
            return True
        indexing_urls = {site.url.lower() for site in await self.db.find_sites_by_status(SiteStatus.INDEXING)}
        if any(site.url.lower() in indexing_urls for site in self.sites.sites):
            logger.debug("Status check: store has sites in INDEXING status")
            return True
        return False

    # ------------------ public operations ------------------

    async def start_full_crawl(self) -> ResultResponse:
        async with self._lock:
            if await self.is_running():
                logger.info(INDEXING_ALREADY_IN_PROCESS)
                return ResultResponse(False, INDEXING_ALREADY_IN_PROCESS)
            stop_event = self._begin_run()
        self._run_task = asyncio.create_task(self._run(self._crawl_all_sites(stop_event), stop_event))
        return ResultResponse(True)

    async def start_url_crawl(self, url: str) -> ResultResponse:
        async with self._lock:
            if await self.is_running():
                logger.info(INDEXING_ALREADY_IN_PROCESS)
                return ResultResponse(False, INDEXING_ALREADY_IN_PROCESS)
            url = url.strip()
            if is_site_url_only(url):
                url += "/"
            site_config = self.sites.find(get_site_link(url))
            if site_config is None:
                logger.info(f"{INVALID_URL}: {url}")
                return ResultResponse(False, INVALID_URL)
            stop_event = self._begin_run()
        path = url[len(site_config.url):]
        self._run_task = asyncio.create_task(self._run(self._crawl_single_page(site_config, path, stop_event),
                                                       stop_event))
        return ResultResponse(True)

    async def stop(self) -> ResultResponse:
        if not await self.is_running():
            logger.info(INDEXING_NOT_IN_PROCESS)
            return ResultResponse(False, INDEXING_NOT_IN_PROCESS)
        self._stop_event.set()
        for _ in range(STOP_WAIT_TRIES):
            if not self._run_active:
                break
            await asyncio.sleep(STOP_WAIT_INTERVAL)
        if self._run_active or await self.db.count_sites_by_status(SiteStatus.INDEXING) > 0:
            logger.info("Forcing status of sites still being indexed to FAILED")
            self._run_active = False
            await self.db.update_all_sites_status(SiteStatus.INDEXING, SiteStatus.FAILED,
                                                  now_ms(), INDEXING_INTERRUPTED_BY_USER)
        return ResultResponse(True)

    async def wait(self):
        """Wait for the current run (if any) to finish."""
        if self._run_task is not None:
            await asyncio.shield(self._run_task)

    async def close(self):
        if self._run_task is not None and not self._run_task.done():
            self._stop_event.set()
            await self.wait()
        self.executor.shutdown(wait=True)

    # ------------------ runs ------------------

    def _begin_run(self) -> asyncio.Event:
        self._run_active = True
        self._stop_event = asyncio.Event()
        return self._stop_event

    async def _run(self, crawl: Awaitable, stop_event: asyncio.Event):
        try:
            await crawl
        except Exception:
            logger.exception("Indexing run failed")
        finally:
            # a forced stop may already have let a newer run start
            if self._stop_event is stop_event:
                self._run_active = False

    async def _crawl_all_sites(self, stop_event: asyncio.Event):
        logger.info("Indexing of all sites started")
        crawlers: List[SiteCrawler] = []
        for site_config in self.sites.sites:
            site = await self._reset_site(site_config)
            crawlers.append(self._crawler(site, stop_event))
        await asyncio.gather(*(crawler.run() for crawler in crawlers))
        logger.info("Indexing of all sites finished")

    async def _crawl_single_page(self, site_config: SiteConfig, path: str, stop_event: asyncio.Event):
        logger.info(f"Indexing of page {site_config.url}{path} started")
        site = await self._prepare_site_for_page(site_config, path)
        await self._crawler(site, stop_event, single_path=path).run()
        logger.info(f"Indexing of page {site_config.url}{path} finished")

    def _crawler(self, site: Site, stop_event: asyncio.Event, single_path: str | None = None) -> SiteCrawler:
        return SiteCrawler(site, self.db, self.analyzer, limits=self.limits, http_config=self.http_config,
                           stop_event=stop_event, single_path=single_path, executor=self.executor)

    async def _reset_site(self, site_config: SiteConfig) -> Site:
        """Drop everything stored for the site and create a fresh INDEXING record."""
        async with self.db.transaction():
            old = await self.db.find_site_by_url(site_config.url)
            if old is not None:
                await self.db.delete_site_data(old)
            return await self.db.create_site(site_config.url, site_config.name, SiteStatus.INDEXING, now_ms())

    async def _prepare_site_for_page(self, site_config: SiteConfig, path: str) -> Site:
        async with self.db.transaction():
            site = await self.db.find_site_by_url(site_config.url)
            if site is None:
                site = await self.db.create_site(site_config.url, site_config.name, SiteStatus.INDEXING, now_ms())
            else:
                await self.db.update_site_status(site.id, SiteStatus.INDEXING, now_ms(), None)
                site.status = SiteStatus.INDEXING
            page = await self.db.find_page_by_site_and_path(site.id, path)
            if page is not None:
                await self.db.delete_page_with_index(page)
        return site
