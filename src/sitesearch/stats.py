from __future__ import annotations
from .db import Database
from .models import SiteStatistics, Statistics, TotalStatistics
from .session import IndexingSession

async def get_statistics(db: Database, session: IndexingSession) -> Statistics:
    """Totals and per-site counters for every site kept in the store."""
    total = TotalStatistics(indexing=session.run_active)
    detailed = []
    for site in await db.find_all_sites():
        pages = await db.count_pages_by_site(site.id)
        lemmas = await db.count_lemmas_by_site(site.id)
        detailed.append(SiteStatistics(
            name=site.name,
            url=site.url,
            status=site.status.value,
            status_time=site.status_time,
            error=site.last_error,
            pages=pages,
            lemmas=lemmas,
        ))
        total.pages += pages
        total.lemmas += lemmas
    total.sites = len(detailed)
    return Statistics(total=total, detailed=detailed)
