"""
Persists crawled pages together with their lemma frequencies and index entries.
"""
from __future__ import annotations
import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from .db import Database
from .fetch import FetchResult
from .models import Lemma, Page

if TYPE_CHECKING:
    from .crawl import SiteCrawler

logger = logging.getLogger(__name__)


class PageIndexer:
    """Writes one fetched page per call.

    The whole write (page row, lemma frequencies, index rows) runs in one store
    transaction, so concurrent pages are serialised and a page is never stored
    half-indexed. Failures cancel the owning crawl instead of propagating.
    """

    def __init__(self, db: Database):
        self.db = db

    async def write_page(self, crawler: "SiteCrawler", path: str, result: FetchResult,
                         lemmas: Dict[str, int]) -> Optional[Page]:
        if crawler.is_cancelled():
            return None
        try:
            async with self.db.transaction():
                if crawler.is_cancelled():
                    return None
                await crawler.touch_status_time()
                page = await self.db.create_page(crawler.site.id, path, result.status,
                                                 result.html if result.ok else "")
                if not result.ok or not lemmas:
                    return page
                lemma_rows = await self._insert_or_increment_lemmas(crawler.site.id, list(lemmas))
                await self._insert_indexes(page, lemmas, lemma_rows)
            return page
        except Exception as e:
            logger.exception(f"Indexing of {crawler.site_link}{path} failed")
            crawler.cancel(str(e) or e.__class__.__name__)
            return None

    async def _insert_or_increment_lemmas(self, site_id: int, lemmas: List[str]) -> Dict[str, Lemma]:
        existing = await self.db.find_lemmas_by_site_and_lemma_set(site_id, lemmas)
        if existing:
            await self.db.increment_lemmas_frequency([lemma.id for lemma in existing])
        known = {lemma.lemma for lemma in existing}
        new_lemmas = [lemma for lemma in lemmas if lemma not in known]
        created = await self.db.create_lemmas(site_id, new_lemmas) if new_lemmas else []
        return {lemma.lemma: lemma for lemma in [*existing, *created]}

    async def _insert_indexes(self, page: Page, lemmas: Dict[str, int], lemma_rows: Dict[str, Lemma]):
        entries = []
        for text, count in lemmas.items():
            lemma = lemma_rows.get(text)
            if lemma is None:
                logger.warning(f"Lemma '{text}' is missing from stored lemmas for page {page.path}")
                continue
            entries.append((page.id, lemma.id, float(count)))
        await self.db.create_index_entries(entries)
