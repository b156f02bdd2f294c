from __future__ import annotations
import aiosqlite, zlib, base64, asyncio, logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Optional, Iterable, List, Sequence, Tuple
from .models import Site, SiteStatus, Page, Lemma, IndexEntry

logger = logging.getLogger(__name__)

# SQLite refuses statements with more host parameters than this on older builds
MAX_QUERY_PARAMS = 500

# Database that owns the transaction currently open in this task, if any
_current_transaction: ContextVar[Optional["Database"]] = ContextVar("sitesearch_transaction", default=None)

# ------------------ compression helpers ------------------

def compress_html(html: str) -> bytes:
    return base64.b64encode(zlib.compress(html.encode("utf-8")))

def decompress_html(encoded: bytes | None) -> str:
    if not encoded:
        return ""
    try:
        return zlib.decompress(base64.b64decode(encoded)).decode("utf-8")
    except (zlib.error, ValueError):
        try:
            return encoded.decode("utf-8")  # type: ignore[union-attr]
        except (AttributeError, UnicodeDecodeError):
            return ""

def _chunks(items: Iterable, size: int = MAX_QUERY_PARAMS):
    items = list(items)
    for i in range(0, len(items), size):
        yield items[i:i + size]

def _placeholders(count: int) -> str:
    return ",".join("?" * count)

# ------------------ schema ------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS sites (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url TEXT UNIQUE NOT NULL,
  name TEXT NOT NULL,
  status TEXT NOT NULL CHECK (status IN ('INDEXING','INDEXED','FAILED')),
  status_time INTEGER NOT NULL,
  last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_sites_status ON sites(status);

CREATE TABLE IF NOT EXISTS pages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  site_id INTEGER NOT NULL,
  path TEXT NOT NULL,
  code INTEGER NOT NULL,
  content_compressed BLOB,
  FOREIGN KEY (site_id) REFERENCES sites (id),
  UNIQUE(site_id, path)
);
CREATE INDEX IF NOT EXISTS idx_pages_site_id ON pages(site_id);

-- frequency: number of pages of the site containing the lemma
CREATE TABLE IF NOT EXISTS lemmas (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  site_id INTEGER NOT NULL,
  lemma TEXT NOT NULL,
  frequency INTEGER NOT NULL,
  FOREIGN KEY (site_id) REFERENCES sites (id),
  UNIQUE(site_id, lemma)
);
CREATE INDEX IF NOT EXISTS idx_lemmas_lemma ON lemmas(lemma);

-- rank: occurrences of the lemma on the page
CREATE TABLE IF NOT EXISTS indexes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  page_id INTEGER NOT NULL,
  lemma_id INTEGER NOT NULL,
  rank REAL NOT NULL,
  FOREIGN KEY (page_id) REFERENCES pages (id),
  FOREIGN KEY (lemma_id) REFERENCES lemmas (id),
  UNIQUE(page_id, lemma_id)
);
CREATE INDEX IF NOT EXISTS idx_indexes_lemma_id ON indexes(lemma_id);
"""

# ------------------ row mapping ------------------

def _site(row) -> Site:
    return Site(id=row[0], url=row[1], name=row[2], status=SiteStatus(row[3]),
                status_time=row[4], last_error=row[5])

def _page(row) -> Page:
    return Page(id=row[0], site_id=row[1], path=row[2], code=row[3], content=decompress_html(row[4]))

def _lemma(row) -> Lemma:
    return Lemma(id=row[0], site_id=row[1], lemma=row[2], frequency=row[3])

def _index(row) -> IndexEntry:
    return IndexEntry(id=row[0], page_id=row[1], lemma_id=row[2], rank=row[3])

SITE_COLUMNS = "id, url, name, status, status_time, last_error"
PAGE_COLUMNS = "id, site_id, path, code, content_compressed"
LEMMA_COLUMNS = "id, site_id, lemma, frequency"
INDEX_COLUMNS = "id, page_id, lemma_id, rank"

# ------------------ database ------------------

class Database:
    """Index store on top of a single aiosqlite connection.

    All writes go through ``transaction()``, which serialises writers with one
    lock and commits or rolls back the whole unit. Store methods called inside
    an open transaction join it instead of committing on their own.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> "Database":
        if self._conn is not None:
            return self
        self._conn = await aiosqlite.connect(self.db_path)
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")
        await self._conn.execute("PRAGMA cache_size=10000")
        await self._conn.execute("PRAGMA temp_store=MEMORY")
        for stmt in SCHEMA.split(";\n"):
            if stmt.strip():
                await self._conn.execute(stmt)
        await self._conn.commit()
        return self

    async def close(self):
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Database":
        return await self.connect()

    async def __aexit__(self, *exc):
        await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return self._conn

    @asynccontextmanager
    async def transaction(self):
        if _current_transaction.get() is self:
            yield self
            return
        async with self._write_lock:
            token = _current_transaction.set(self)
            try:
                yield self
                await self.conn.commit()
            except BaseException:
                await self.conn.rollback()
                raise
            finally:
                _current_transaction.reset(token)

    async def _fetchall(self, sql: str, params: Sequence = ()) -> list:
        cursor = await self.conn.execute(sql, tuple(params))
        rows = await cursor.fetchall()
        await cursor.close()
        return list(rows)

    async def _fetchone(self, sql: str, params: Sequence = ()):
        cursor = await self.conn.execute(sql, tuple(params))
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def _count(self, sql: str, params: Sequence = ()) -> int:
        row = await self._fetchone(sql, params)
        return int(row[0]) if row else 0

    # ------------------ sites ------------------

    async def create_site(self, url: str, name: str, status: SiteStatus, status_time: int,
                          last_error: Optional[str] = None) -> Site:
        async with self.transaction():
            cursor = await self.conn.execute(
                "INSERT INTO sites(url, name, status, status_time, last_error) VALUES (?,?,?,?,?)",
                (url, name, status.value, status_time, last_error),
            )
            site_id = cursor.lastrowid
        return Site(id=site_id, url=url, name=name, status=status, status_time=status_time, last_error=last_error)

    async def delete_site(self, site_id: int):
        async with self.transaction():
            await self.conn.execute("DELETE FROM sites WHERE id = ?", (site_id,))

    async def find_site_by_url(self, url: str) -> Optional[Site]:
        row = await self._fetchone(f"SELECT {SITE_COLUMNS} FROM sites WHERE url = ?", (url,))
        return _site(row) if row else None

    async def find_site_by_id(self, site_id: int) -> Optional[Site]:
        row = await self._fetchone(f"SELECT {SITE_COLUMNS} FROM sites WHERE id = ?", (site_id,))
        return _site(row) if row else None

    async def find_all_sites(self) -> List[Site]:
        rows = await self._fetchall(f"SELECT {SITE_COLUMNS} FROM sites ORDER BY id")
        return [_site(r) for r in rows]

    async def find_sites_by_status(self, status: SiteStatus) -> List[Site]:
        rows = await self._fetchall(f"SELECT {SITE_COLUMNS} FROM sites WHERE status = ? ORDER BY id", (status.value,))
        return [_site(r) for r in rows]

    async def count_sites_by_status(self, status: SiteStatus) -> int:
        return await self._count("SELECT COUNT(*) FROM sites WHERE status = ?", (status.value,))

    async def update_all_sites_status(self, old_status: SiteStatus, new_status: SiteStatus,
                                      status_time: int, last_error: Optional[str]):
        async with self.transaction():
            await self.conn.execute(
                "UPDATE sites SET status = ?, status_time = ?, last_error = ? WHERE status = ?",
                (new_status.value, status_time, last_error, old_status.value),
            )

    async def update_site_status(self, site_id: int, status: SiteStatus, status_time: int,
                                 last_error: Optional[str]):
        async with self.transaction():
            await self.conn.execute(
                "UPDATE sites SET status = ?, status_time = ?, last_error = ? WHERE id = ?",
                (status.value, status_time, last_error, site_id),
            )

    async def update_site_status_time(self, site_id: int, status_time: int):
        async with self.transaction():
            await self.conn.execute("UPDATE sites SET status_time = ? WHERE id = ?", (status_time, site_id))

    # ------------------ pages ------------------

    async def create_page(self, site_id: int, path: str, code: int, content: str) -> Page:
        async with self.transaction():
            cursor = await self.conn.execute(
                "INSERT INTO pages(site_id, path, code, content_compressed) VALUES (?,?,?,?)",
                (site_id, path, code, compress_html(content)),
            )
            page_id = cursor.lastrowid
        return Page(id=page_id, site_id=site_id, path=path, code=code, content=content)

    async def delete_page(self, page_id: int):
        async with self.transaction():
            await self.conn.execute("DELETE FROM pages WHERE id = ?", (page_id,))

    async def find_page_by_site_and_path(self, site_id: int, path: str) -> Optional[Page]:
        row = await self._fetchone(f"SELECT {PAGE_COLUMNS} FROM pages WHERE site_id = ? AND path = ?", (site_id, path))
        return _page(row) if row else None

    async def find_pages_by_ids(self, page_ids: Iterable[int]) -> List[Page]:
        pages = []
        for chunk in _chunks(page_ids):
            rows = await self._fetchall(
                f"SELECT {PAGE_COLUMNS} FROM pages WHERE id IN ({_placeholders(len(chunk))})", chunk
            )
            pages.extend(_page(r) for r in rows)
        return pages

    async def count_pages_by_site(self, site_id: int) -> int:
        return await self._count("SELECT COUNT(*) FROM pages WHERE site_id = ?", (site_id,))

    async def delete_pages_by_site(self, site_id: int):
        async with self.transaction():
            await self.conn.execute("DELETE FROM pages WHERE site_id = ?", (site_id,))

    # ------------------ lemmas ------------------

    async def create_lemmas(self, site_id: int, lemmas: Iterable[str]) -> List[Lemma]:
        """Insert new lemmas with frequency 1 and return the stored rows."""
        lemmas = list(lemmas)
        if not lemmas:
            return []
        async with self.transaction():
            await self.conn.executemany(
                "INSERT INTO lemmas(site_id, lemma, frequency) VALUES (?,?,1)",
                [(site_id, lemma) for lemma in lemmas],
            )
            return await self.find_lemmas_by_site_and_lemma_set(site_id, lemmas)

    async def count_lemmas(self) -> int:
        return await self._count("SELECT COUNT(*) FROM lemmas")

    async def count_lemmas_by_site(self, site_id: int) -> int:
        return await self._count("SELECT COUNT(*) FROM lemmas WHERE site_id = ?", (site_id,))

    async def find_lemmas_by_lemma_set(self, lemmas: Iterable[str], frequency_greater_than: int = 0,
                                       site_id: Optional[int] = None) -> List[Lemma]:
        """Lemma rows matching the given texts, across all sites or within one site."""
        result = []
        for chunk in _chunks(lemmas):
            sql = (f"SELECT {LEMMA_COLUMNS} FROM lemmas "
                   f"WHERE lemma IN ({_placeholders(len(chunk))}) AND frequency > ?")
            params = [*chunk, frequency_greater_than]
            if site_id is not None:
                sql += " AND site_id = ?"
                params.append(site_id)
            rows = await self._fetchall(sql, params)
            result.extend(_lemma(r) for r in rows)
        return result

    async def find_lemmas_by_site_and_lemma_set(self, site_id: int, lemmas: Iterable[str]) -> List[Lemma]:
        result = []
        for chunk in _chunks(lemmas):
            rows = await self._fetchall(
                f"SELECT {LEMMA_COLUMNS} FROM lemmas WHERE site_id = ? AND lemma IN ({_placeholders(len(chunk))})",
                [site_id, *chunk],
            )
            result.extend(_lemma(r) for r in rows)
        return result

    async def increment_lemmas_frequency(self, lemma_ids: Iterable[int]):
        await self._shift_frequency(lemma_ids, +1)

    async def decrement_lemmas_frequency(self, lemma_ids: Iterable[int]):
        await self._shift_frequency(lemma_ids, -1)

    async def _shift_frequency(self, lemma_ids: Iterable[int], delta: int):
        async with self.transaction():
            for chunk in _chunks(lemma_ids):
                await self.conn.execute(
                    f"UPDATE lemmas SET frequency = frequency + ? WHERE id IN ({_placeholders(len(chunk))})",
                    [delta, *chunk],
                )

    async def delete_lemmas_by_site(self, site_id: int):
        async with self.transaction():
            await self.conn.execute("DELETE FROM lemmas WHERE site_id = ?", (site_id,))

    # ------------------ index entries ------------------

    async def create_index_entries(self, entries: Iterable[Tuple[int, int, float]]):
        """Batch insert (page_id, lemma_id, rank) rows."""
        entries = list(entries)
        if not entries:
            return
        async with self.transaction():
            await self.conn.executemany(
                "INSERT INTO indexes(page_id, lemma_id, rank) VALUES (?,?,?)", entries
            )

    async def find_index_by_page(self, page_id: int) -> List[IndexEntry]:
        rows = await self._fetchall(f"SELECT {INDEX_COLUMNS} FROM indexes WHERE page_id = ? ORDER BY id", (page_id,))
        return [_index(r) for r in rows]

    async def find_index_by_lemma(self, lemma_id: int) -> List[IndexEntry]:
        rows = await self._fetchall(f"SELECT {INDEX_COLUMNS} FROM indexes WHERE lemma_id = ? ORDER BY id", (lemma_id,))
        return [_index(r) for r in rows]

    async def find_index_by_pages_and_lemma(self, page_ids: Iterable[int], lemma_id: int) -> List[IndexEntry]:
        result = []
        for chunk in _chunks(page_ids):
            rows = await self._fetchall(
                f"SELECT {INDEX_COLUMNS} FROM indexes "
                f"WHERE lemma_id = ? AND page_id IN ({_placeholders(len(chunk))}) ORDER BY id",
                [lemma_id, *chunk],
            )
            result.extend(_index(r) for r in rows)
        return result

    async def delete_index_by_page(self, page_id: int):
        async with self.transaction():
            await self.conn.execute("DELETE FROM indexes WHERE page_id = ?", (page_id,))

    async def delete_index_by_site(self, site_id: int):
        async with self.transaction():
            await self.conn.execute(
                "DELETE FROM indexes WHERE page_id IN (SELECT id FROM pages WHERE site_id = ?) "
                "OR lemma_id IN (SELECT id FROM lemmas WHERE site_id = ?)",
                (site_id, site_id),
            )

    # ------------------ composite operations ------------------

    async def delete_site_data(self, site: Site):
        """Remove a site together with all of its pages, lemmas and index entries."""
        async with self.transaction():
            await self.delete_index_by_site(site.id)
            await self.delete_lemmas_by_site(site.id)
            await self.delete_pages_by_site(site.id)
            await self.delete_site(site.id)
        logger.debug(f"Removed stored data of {site.url}")

    async def delete_page_with_index(self, page: Page):
        """Delete a page, its index entries, and give back the lemma frequency it contributed."""
        async with self.transaction():
            entries = await self.find_index_by_page(page.id)
            if entries:
                await self.decrement_lemmas_frequency({e.lemma_id for e in entries})
            await self.delete_index_by_page(page.id)
            await self.delete_page(page.id)
