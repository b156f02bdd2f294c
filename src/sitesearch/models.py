"""
Records kept in the index store and responses returned to callers.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SiteStatus(Enum):
    INDEXING = "INDEXING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"


@dataclass
class Site:
    id: int
    url: str
    name: str
    status: SiteStatus
    status_time: int  # epoch milliseconds
    last_error: Optional[str] = None


@dataclass
class Page:
    id: int
    site_id: int
    path: str
    code: int
    content: str = ""


@dataclass
class Lemma:
    id: int
    site_id: int
    lemma: str
    frequency: int


@dataclass
class IndexEntry:
    id: int
    page_id: int
    lemma_id: int
    rank: float


@dataclass
class ResultResponse:
    """Answer to start/stop requests"""
    result: bool
    error: Optional[str] = None


@dataclass
class SearchItem:
    site: str
    site_name: str
    uri: str
    title: str
    snippet: str
    relevance: float


@dataclass
class SearchResponse:
    result: bool
    count: Optional[int] = None
    data: Optional[List[SearchItem]] = None
    error: Optional[str] = None


@dataclass
class SiteStatistics:
    name: str
    url: str
    status: str
    status_time: int
    error: Optional[str]
    pages: int
    lemmas: int


@dataclass
class TotalStatistics:
    sites: int = 0
    pages: int = 0
    lemmas: int = 0
    indexing: bool = False


@dataclass
class Statistics:
    total: TotalStatistics
    detailed: List[SiteStatistics] = field(default_factory=list)
