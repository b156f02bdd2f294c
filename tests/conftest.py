import asyncio
from typing import Dict

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from sitesearch.config import SiteConfig, SitesList
from sitesearch.crawl import SiteCrawler, now_ms
from sitesearch.db import Database
from sitesearch.fetch import FetchResult
from sitesearch.indexer import PageIndexer
from sitesearch.lemmas import LemmaAnalyzer
from sitesearch.models import SiteStatus
from sitesearch.parse import parse_html, page_text


@pytest.fixture(scope="session")
def analyzer():
    return LemmaAnalyzer()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "index.db")


def html_page(body: str, links=(), title: str = "Page") -> str:
    anchors = "".join(f'<a href="{link}">link</a>' for link in links)
    return f"<html><head><title>{title}</title></head><body><p>{body}</p>{anchors}</body></html>"


@pytest.fixture
def seed(analyzer):
    """Store a site with pages as if it had been crawled: {path: body text}."""

    async def _seed(db: Database, url: str, name: str, pages: Dict[str, str],
                    status: SiteStatus = SiteStatus.INDEXED):
        site = await db.create_site(url, name, status, now_ms())
        crawler = SiteCrawler(site, db, analyzer)
        indexer = PageIndexer(db)
        for path, body in pages.items():
            document = parse_html(html_page(body, title=f"Page {path}"))
            result = FetchResult(200, True, url + path, document)
            await indexer.write_page(crawler, path, result, analyzer.get_lemmas(page_text(document)))
        return site

    return _seed


class SiteServer:
    """Local aiohttp site serving {path: html}; missing paths answer 404."""

    def __init__(self, pages: Dict[str, str], delay: float = 0.0):
        self.pages = pages
        self.delay = delay
        self.requests = []
        app = web.Application()
        app.router.add_route("GET", "/{tail:.*}", self.handle)
        self.server = TestServer(app)

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        if self.delay:
            await asyncio.sleep(self.delay)
        html = self.pages.get(request.path)
        if html is None:
            return web.Response(status=404, text="not found")
        return web.Response(text=html, content_type="text/html")

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.server.port}"

    def sites_list(self, name: str = "Test site") -> SitesList:
        return SitesList([SiteConfig(url=self.url, name=name)])

    async def __aenter__(self) -> "SiteServer":
        await self.server.start_server()
        return self

    async def __aexit__(self, *exc):
        await self.server.close()
