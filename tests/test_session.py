import asyncio

from conftest import SiteServer, html_page
from sitesearch.config import HttpConfig, SiteConfig, SitesList
from sitesearch.crawl import INDEXING_INTERRUPTED_BY_USER, now_ms
from sitesearch.db import Database
from sitesearch.models import SiteStatus
from sitesearch.session import (INDEXING_ALREADY_IN_PROCESS, INDEXING_NOT_IN_PROCESS, INVALID_URL,
                                IndexingSession)

HTTP = HttpConfig(timeout=10, max_concurrency=4, delay_between_requests=0.0)


def site_pages():
    return {
        "/": html_page("главная", links=["/ok", "/news"]),
        "/ok": html_page("леопард"),
        "/news": html_page("кошка"),
    }


def test_full_crawl_indexes_configured_sites(db_path, analyzer):
    async def scenario():
        async with SiteServer(site_pages()) as server, Database(db_path) as db:
            session = IndexingSession(db, server.sites_list(), analyzer, http_config=HTTP)
            try:
                assert (await session.start_full_crawl()).result
                assert session.run_active
                assert await session.is_running()
                await session.wait()

                assert not session.run_active
                assert not await session.is_running()
                site = await db.find_site_by_url(server.url)
                assert site.status == SiteStatus.INDEXED
                assert await db.count_pages_by_site(site.id) == 3
            finally:
                await session.close()

    asyncio.run(scenario())


def test_second_start_is_rejected_while_running(db_path, analyzer):
    async def scenario():
        async with SiteServer(site_pages()) as server, Database(db_path) as db:
            session = IndexingSession(db, server.sites_list(), analyzer, http_config=HTTP)
            try:
                assert (await session.start_full_crawl()).result
                second = await session.start_full_crawl()
                assert not second.result
                assert second.error == INDEXING_ALREADY_IN_PROCESS
                page = await session.start_url_crawl(server.url + "/ok")
                assert page.error == INDEXING_ALREADY_IN_PROCESS
                await session.wait()
            finally:
                await session.close()

    asyncio.run(scenario())


def test_full_crawl_replaces_previous_data(db_path, analyzer):
    async def scenario():
        async with SiteServer(site_pages()) as server, Database(db_path) as db:
            old = await db.create_site(server.url, "Old name", SiteStatus.FAILED, 1, "old error")
            await db.create_page(old.id, "/gone", 200, "")
            session = IndexingSession(db, server.sites_list(), analyzer, http_config=HTTP)
            try:
                await session.start_full_crawl()
                await session.wait()
                site = await db.find_site_by_url(server.url)
                assert site.id != old.id
                assert site.name == "Test site"
                assert site.last_error is None
                assert await db.count_pages_by_site(old.id) == 0
                assert await db.find_page_by_site_and_path(site.id, "/gone") is None
            finally:
                await session.close()

    asyncio.run(scenario())


def test_url_outside_configured_sites_is_rejected(db_path, analyzer):
    async def scenario():
        async with Database(db_path) as db:
            sites = SitesList([SiteConfig("http://www.site.com", "Site")])
            session = IndexingSession(db, sites, analyzer, http_config=HTTP)
            try:
                response = await session.start_url_crawl("http://other.com/page.html")
                assert not response.result
                assert response.error == INVALID_URL
                assert not session.run_active
                assert await db.find_all_sites() == []
            finally:
                await session.close()

    asyncio.run(scenario())


def test_url_crawl_reindexes_one_page(db_path, analyzer):
    async def scenario():
        pages = site_pages()
        async with SiteServer(pages) as server, Database(db_path) as db:
            session = IndexingSession(db, server.sites_list(), analyzer, http_config=HTTP)
            try:
                await session.start_full_crawl()
                await session.wait()
                site = await db.find_site_by_url(server.url)

                pages["/ok"] = html_page("район")
                server.requests.clear()
                assert (await session.start_url_crawl(server.url + "/ok")).result
                await session.wait()

                assert server.requests == ["/ok"]
                assert (await db.find_site_by_url(server.url)).status == SiteStatus.INDEXED
                assert await db.count_pages_by_site(site.id) == 3
                frequencies = {r.lemma: r.frequency for r in
                               await db.find_lemmas_by_site_and_lemma_set(site.id, ["леопард", "район", "кошка"])}
                assert frequencies == {"леопард": 0, "район": 1, "кошка": 1}
            finally:
                await session.close()

    asyncio.run(scenario())


def test_url_crawl_of_site_root_creates_site(db_path, analyzer):
    async def scenario():
        async with SiteServer(site_pages()) as server, Database(db_path) as db:
            session = IndexingSession(db, server.sites_list(), analyzer, http_config=HTTP)
            try:
                assert (await session.start_url_crawl(server.url)).result
                await session.wait()
                site = await db.find_site_by_url(server.url)
                assert site.status == SiteStatus.INDEXED
                assert (await db.find_page_by_site_and_path(site.id, "/")).code == 200
                assert server.requests == ["/"]
            finally:
                await session.close()

    asyncio.run(scenario())


def test_stop_without_run(db_path, analyzer):
    async def scenario():
        async with Database(db_path) as db:
            session = IndexingSession(db, SitesList([SiteConfig("http://www.site.com", "Site")]), analyzer)
            try:
                response = await session.stop()
                assert not response.result
                assert response.error == INDEXING_NOT_IN_PROCESS
            finally:
                await session.close()

    asyncio.run(scenario())


def test_stop_interrupts_running_crawl(db_path, analyzer):
    paths = ["/"] + [f"/p{i}" for i in range(20)]
    pages = {path: html_page("леопард", links=paths) for path in paths}

    async def scenario():
        async with SiteServer(pages, delay=0.3) as server, Database(db_path) as db:
            http = HttpConfig(timeout=10, max_concurrency=2, delay_between_requests=0.0)
            session = IndexingSession(db, server.sites_list(), analyzer, http_config=http)
            try:
                await session.start_full_crawl()
                await asyncio.sleep(0.5)
                assert (await session.stop()).result
                assert not session.run_active
                assert await db.count_sites_by_status(SiteStatus.INDEXING) == 0
                site = await db.find_site_by_url(server.url)
                assert site.status == SiteStatus.FAILED
                assert site.last_error == INDEXING_INTERRUPTED_BY_USER
                assert await db.count_pages_by_site(site.id) < len(paths)
                await session.wait()
            finally:
                await session.close()

    asyncio.run(scenario())


def test_site_left_indexing_counts_as_running(db_path, analyzer):
    async def scenario():
        async with Database(db_path) as db:
            await db.create_site("http://www.site.com", "Site", SiteStatus.INDEXING, now_ms())
            session = IndexingSession(db, SitesList([SiteConfig("http://www.site.com", "Site")]), analyzer)
            try:
                assert await session.is_running()
                assert (await session.start_full_crawl()).error == INDEXING_ALREADY_IN_PROCESS
                assert (await session.stop()).result
                site = await db.find_site_by_url("http://www.site.com")
                assert site.status == SiteStatus.FAILED
                assert site.last_error == INDEXING_INTERRUPTED_BY_USER
                assert not await session.is_running()
            finally:
                await session.close()

    asyncio.run(scenario())


def test_unconfigured_indexing_site_does_not_block(db_path, analyzer):
    async def scenario():
        async with Database(db_path) as db:
            await db.create_site("http://removed.com", "Removed", SiteStatus.INDEXING, now_ms())
            session = IndexingSession(db, SitesList([SiteConfig("http://www.site.com", "Site")]), analyzer)
            try:
                assert not await session.is_running()
            finally:
                await session.close()

    asyncio.run(scenario())
