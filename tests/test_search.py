import asyncio

import pytest

from sitesearch.config import SiteConfig, SitesList
from sitesearch.crawl import now_ms
from sitesearch.db import Database
from sitesearch.models import SiteStatus
from sitesearch.search import (EMPTY_QUERY, INDEXING_IN_PROCESS, INVALID_LIMIT, INVALID_OFFSET, NO_LEMMAS_IN_QUERY,
                               NOT_INDEXED, SITE_INDEXING_IN_PROCESS, SITE_NOT_FOUND, SITE_NOT_INDEXED, SearchEngine)
from sitesearch.session import IndexingSession

SITE_A = "http://a.site.com"
SITE_B = "http://b.site.com"
SITES = SitesList([SiteConfig(SITE_A, "Site A"), SiteConfig(SITE_B, "Site B")])


def and_pages():
    """20 pages: both query words stay under a quarter of the pages."""
    pages = {
        "/p1": "леопард леопард район",
        "/p2": "леопард район район район",
        "/p3": "леопард кошка",
        "/p4": "район собака",
    }
    pages.update({f"/f{i}": "кошка собака" for i in range(16)})
    return pages


def run_search(db_path, analyzer, setup, *args, **kwargs):
    async def scenario():
        async with Database(db_path) as db:
            await setup(db)
            session = IndexingSession(db, SITES, analyzer)
            try:
                return await SearchEngine(db, analyzer, session).search(*args, **kwargs)
            finally:
                await session.close()

    return asyncio.run(scenario())


async def nothing(db):
    pass


@pytest.mark.parametrize("query, offset, limit, error", [
    ("", 0, 0, EMPTY_QUERY),
    ("   ", -1, 20, EMPTY_QUERY),
    ("леопард", -1, 0, INVALID_LIMIT),
    ("леопард", -1, 20, INVALID_OFFSET),
    ("и в на", 0, 20, NO_LEMMAS_IN_QUERY),
    ("леопард", 0, 20, NOT_INDEXED),
])
def test_validation_order(db_path, analyzer, query, offset, limit, error):
    response = run_search(db_path, analyzer, nothing, query, None, offset, limit)
    assert not response.result
    assert response.error == error


def test_unknown_site(db_path, analyzer):
    response = run_search(db_path, analyzer, nothing, "леопард", "http://unknown.com")
    assert response.error == SITE_NOT_FOUND


def test_site_without_lemmas_is_not_indexed(db_path, analyzer):
    async def setup(db):
        await db.create_site(SITE_A, "Site A", SiteStatus.INDEXED, now_ms())

    response = run_search(db_path, analyzer, setup, "леопард", SITE_A + "/")
    assert response.error == SITE_NOT_INDEXED


def test_search_refused_while_indexing(db_path, analyzer, seed):
    async def setup(db):
        await seed(db, SITE_A, "Site A", {"/": "леопард"}, status=SiteStatus.INDEXING)
        await seed(db, SITE_B, "Site B", {"/": "леопард"})

    assert run_search(db_path, analyzer, setup, "леопард").error == INDEXING_IN_PROCESS
    db_path_site = db_path + ".site"
    assert run_search(db_path_site, analyzer, setup, "леопард", SITE_A).error == SITE_INDEXING_IN_PROCESS


def test_search_in_indexed_site_while_another_is_indexing(db_path, analyzer, seed):
    async def setup(db):
        await seed(db, SITE_A, "Site A", {"/": "леопард"}, status=SiteStatus.INDEXING)
        await seed(db, SITE_B, "Site B", {"/": "леопард"})

    response = run_search(db_path, analyzer, setup, "леопард", SITE_B)
    assert response.result
    assert response.count == 1
    assert response.data[0].site == SITE_B


def test_all_query_words_must_be_on_the_page(db_path, analyzer, seed):
    async def setup(db):
        await seed(db, SITE_A, "Site A", and_pages())

    response = run_search(db_path, analyzer, setup, "Леопарды в районах")
    assert response.result
    assert response.count == 2
    assert [item.uri for item in response.data] == ["/p2", "/p1"]
    assert [item.relevance for item in response.data] == [1.0, 0.75]
    first = response.data[0]
    assert first.site == SITE_A
    assert first.site_name == "Site A"
    assert first.title == "Page /p2"
    assert "<b>леопард</b>" in first.snippet
    assert "<b>район</b>" in first.snippet


def test_offset_and_limit_page_through_results(db_path, analyzer, seed):
    async def setup(db):
        await seed(db, SITE_A, "Site A", and_pages())

    response = run_search(db_path, analyzer, setup, "леопард район", offset=1, limit=1)
    assert response.count == 2
    assert [item.uri for item in response.data] == ["/p1"]

    beyond = run_search(db_path + ".beyond", analyzer, setup, "леопард район", offset=5, limit=10)
    assert beyond.result
    assert beyond.count == 2
    assert beyond.data == []


def test_too_common_word_is_left_out(db_path, analyzer, seed):
    """леопард is on 8 of 20 pages (40%), район on 1 (5%)."""
    pages = {f"/l{i}": "леопард кошка" for i in range(8)}
    pages["/r"] = "район собака"
    pages.update({f"/f{i}": "кошка собака" for i in range(11)})

    async def setup(db):
        await seed(db, SITE_A, "Site A", pages)

    both = run_search(db_path, analyzer, setup, "леопард район")
    assert both.count == 1
    assert both.data[0].uri == "/r"

    only_common = run_search(db_path + ".common", analyzer, setup, "леопард")
    assert only_common.count == 8


def test_word_missing_from_site_drops_the_site(db_path, analyzer, seed):
    async def setup(db):
        await seed(db, SITE_A, "Site A", and_pages())

    response = run_search(db_path, analyzer, setup, "леопард жираф")
    assert response.result
    assert response.count == 0
    assert response.data == []


def test_results_across_sites_and_site_filter(db_path, analyzer, seed):
    async def setup(db):
        await seed(db, SITE_A, "Site A", and_pages())
        await seed(db, SITE_B, "Site B", and_pages())

    everywhere = run_search(db_path, analyzer, setup, "леопард район")
    assert everywhere.count == 4
    relevances = [item.relevance for item in everywhere.data]
    assert relevances[0] == 1.0
    assert relevances == sorted(relevances, reverse=True)
    assert [(item.site, item.uri) for item in everywhere.data[:2]] == [(SITE_A, "/p2"), (SITE_B, "/p2")]

    only_b = run_search(db_path + ".b", analyzer, setup, "леопард район", " " + SITE_B + "/ ")
    assert only_b.count == 2
    assert {item.site for item in only_b.data} == {SITE_B}


def test_snippet_starts_at_sentence_and_marks_words(analyzer):
    engine = SearchEngine(None, analyzer, None)
    text = ("Кошки гуляют. Повторное появление леопарда в Осетии позволяет предположить, "
            "что леопард постоянно обитает здесь.")
    assert engine.snippet(text, ["леопард"]) == (
        "...Повторное появление <b>леопарда</b> в Осетии позволяет предположить, "
        "что <b>леопард</b> постоянно обитает здесь."
    )


def test_snippet_without_match_is_text_prefix(analyzer):
    engine = SearchEngine(None, analyzer, None)
    assert engine.snippet("Просто текст", ["леопард"]) == "Просто текст"
    long_text = "кошка " * 60
    snippet = engine.snippet(long_text, ["леопард"])
    assert snippet == long_text[:240] + "..."


def test_snippet_is_cut_after_max_length(analyzer):
    engine = SearchEngine(None, analyzer, None)
    text = "Леопард " + "кошка " * 60
    snippet = engine.snippet(text, ["леопард"])
    assert snippet.startswith("<b>Леопард</b> кошка")
    assert snippet.endswith("...")
    assert len(snippet) == 240 + len("<b></b>") + len("...")
