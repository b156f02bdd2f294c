"""
Query engine over the lemma index: validation, AND matching, ranking and snippets.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from .db import Database
from .lemmas import LemmaAnalyzer
from .models import IndexEntry, Lemma, Page, SearchItem, SearchResponse, Site, SiteStatus
from .parse import title_and_text
from .session import IndexingSession

logger = logging.getLogger(__name__)

# A lemma found on more than this share of a site's pages is left out of the
# search criteria, unless it is the only lemma found on that site
MAX_FREQUENCY_PERCENT = 25
MAX_SNIPPET_LENGTH = 240
SNIPPET_BACKTRACK = MAX_SNIPPET_LENGTH // 4

EMPTY_QUERY = "Search query is empty"
INVALID_LIMIT = "Invalid limit value"
INVALID_OFFSET = "Invalid offset value"
NO_LEMMAS_IN_QUERY = "Search query has no significant words"
SITE_NOT_FOUND = "Site is not found in the database"
INDEXING_IN_PROCESS = "Sites are being indexed"
SITE_INDEXING_IN_PROCESS = "Site is being indexed"
NOT_INDEXED = "Sites are not indexed"
SITE_NOT_INDEXED = "Site is not indexed"


@dataclass
class SearchParams:
    site: Optional[Site]
    lemmas: Dict[str, int]


@dataclass
class SiteLemmas:
    """Lemmas of the query found on one site, rarest first."""
    site: Site
    page_count: int
    found_count: int = 0
    lemmas: List[str] = field(default_factory=list)
    lemma_rows: List[Lemma] = field(default_factory=list)


class QueryError(Exception):
    """A search request that cannot be served; the message is shown to the caller."""


class SearchEngine:
    def __init__(self, db: Database, analyzer: LemmaAnalyzer, session: IndexingSession):
        self.db = db
        self.analyzer = analyzer
        self.session = session

    async def search(self, query: str, site: Optional[str] = None, offset: int = 0,
                     limit: int = 20) -> SearchResponse:
        try:
            params = await self._validate(query, site, offset, limit)
        except QueryError as e:
            logger.info(str(e))
            return SearchResponse(False, error=str(e))

        site_lemmas = await self._search_lemmas(params.site, set(params.lemmas))
        if not site_lemmas:
            return SearchResponse(True, 0, [])
        page_ranks = await self._search_pages(site_lemmas)
        data = await self._build_items(page_ranks[offset:offset + limit], site_lemmas)
        return SearchResponse(True, len(page_ranks), data)

    async def _validate(self, query: str, site_url: Optional[str], offset: int, limit: int) -> SearchParams:
        if not query or not query.strip():
            raise QueryError(EMPTY_QUERY)
        if limit < 1:
            raise QueryError(INVALID_LIMIT)
        if offset < 0:
            raise QueryError(INVALID_OFFSET)

        lemmas = self.analyzer.get_lemmas(query)
        if not lemmas:
            raise QueryError(NO_LEMMAS_IN_QUERY)

        site = None
        if site_url:
            site = await self.db.find_site_by_url(site_url.strip().rstrip("/"))
            if site is None:
                raise QueryError(SITE_NOT_FOUND)

        if await self.session.is_running():
            if site is None:
                raise QueryError(INDEXING_IN_PROCESS)
            if site.status == SiteStatus.INDEXING:
                raise QueryError(SITE_INDEXING_IN_PROCESS)

        if site is None:
            if await self.db.count_lemmas() == 0:
                raise QueryError(NOT_INDEXED)
        elif await self.db.count_lemmas_by_site(site.id) == 0:
            raise QueryError(SITE_NOT_INDEXED)

        return SearchParams(site, lemmas)

    async def _search_lemmas(self, site: Optional[Site], lemmas: Set[str]) -> Dict[int, SiteLemmas]:
        """Group found lemmas by site, dropping over-common ones and sites missing any lemma."""
        found = await self.db.find_lemmas_by_lemma_set(lemmas, 0, site.id if site else None)
        found.sort(key=lambda lemma: lemma.frequency)

        sites = {site.id: site} if site else {s.id: s for s in await self.db.find_all_sites()}
        result: Dict[int, SiteLemmas] = {}
        for lemma in found:
            site_result = result.get(lemma.site_id)
            if site_result is None:
                page_count = await self.db.count_pages_by_site(lemma.site_id)
                site_result = result[lemma.site_id] = SiteLemmas(sites[lemma.site_id], page_count)
            site_result.found_count += 1
            if (site_result.found_count > 1
                    and lemma.frequency * 100 // max(site_result.page_count, 1) > MAX_FREQUENCY_PERCENT):
                logger.debug(f"Word is too common on {site_result.site.name}: {lemma.lemma}")
                continue
            site_result.lemmas.append(lemma.lemma)
            site_result.lemma_rows.append(lemma)

        return {site_id: r for site_id, r in result.items() if r.found_count >= len(lemmas)}

    async def _search_site_indexes(self, lemma_rows: List[Lemma]) -> List[IndexEntry]:
        """Index entries of pages containing every lemma; lemmas are expected rarest first."""
        all_entries: List[IndexEntry] = []
        page_ids: Set[int] = set()
        for i, lemma in enumerate(lemma_rows):
            if i == 0:
                entries = await self.db.find_index_by_lemma(lemma.id)
            else:
                entries = await self.db.find_index_by_pages_and_lemma(page_ids, lemma.id)
            if not entries:
                return []
            all_entries.extend(entries)
            page_ids = {e.page_id for e in entries}
        return [e for e in all_entries if e.page_id in page_ids]

    async def _search_pages(self, site_lemmas: Dict[int, SiteLemmas]) -> List[Tuple[int, int, float]]:
        """(page_id, site_id, relevance) sorted by relevance, then page id."""
        ranks: Dict[int, float] = {}
        page_sites: Dict[int, int] = {}
        for site_id, site_result in site_lemmas.items():
            for entry in await self._search_site_indexes(site_result.lemma_rows):
                ranks[entry.page_id] = ranks.get(entry.page_id, 0.0) + entry.rank
                page_sites[entry.page_id] = site_id
        max_rank = max(ranks.values()) if ranks else 1.0
        result = [(page_id, page_sites[page_id], rank / max_rank) for page_id, rank in ranks.items()]
        result.sort(key=lambda item: (-item[2], item[0]))
        return result

    async def _build_items(self, page_ranks: List[Tuple[int, int, float]],
                           site_lemmas: Dict[int, SiteLemmas]) -> List[SearchItem]:
        pages: Dict[int, Page] = {p.id: p for p in await self.db.find_pages_by_ids([r[0] for r in page_ranks])}
        items = []
        for page_id, site_id, relevance in page_ranks:
            page = pages.get(page_id)
            if page is None:
                continue
            site_result = site_lemmas[site_id]
            title, text = title_and_text(page.content)
            items.append(SearchItem(
                site=site_result.site.url,
                site_name=site_result.site.name,
                uri=page.path,
                title=title,
                snippet=self.snippet(text, site_result.lemmas),
                relevance=relevance,
            ))
        return items

    def snippet(self, text: str, lemmas: List[str]) -> str:
        """A piece of text around the first query word, query words wrapped in <b></b>."""
        occurrences = self.analyzer.find_first_lemmas(text, lemmas, MAX_SNIPPET_LENGTH)
        if not occurrences:
            return text[:MAX_SNIPPET_LENGTH] + ("..." if len(text) > MAX_SNIPPET_LENGTH else "")

        start = occurrences[0].start
        if start > 0:
            sentence_start = text.rfind(".", 0, start) + 1
            start = max(sentence_start, start - SNIPPET_BACKTRACK)
            while start < occurrences[0].start and text[start].isspace():
                start += 1
        end = min(start + MAX_SNIPPET_LENGTH, len(text))

        parts = ["..."] if start > 0 else []
        cursor = start
        for occurrence in occurrences:
            if occurrence.start > end:
                break
            if occurrence.start < cursor:
                continue
            parts.append(text[cursor:occurrence.start])
            parts.append(f"<b>{text[occurrence.start:occurrence.end]}</b>")
            cursor = occurrence.end
        if cursor < end:
            parts.append(text[cursor:end])
        if max(cursor, end) < len(text):
            parts.append("...")
        return "".join(parts)
