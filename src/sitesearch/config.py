from __future__ import annotations
import json
import os
import random
import re
from dataclasses import dataclass, field
from typing import List

DATA_DIR = os.getenv("SITESEARCH_DATA", os.path.abspath("./data"))

SITE_URL_RE = re.compile(r"^https?://[^/]+$", re.IGNORECASE)


class ConfigError(ValueError):
    """Raised when the site list or crawl settings are unusable."""


@dataclass
class HttpConfig:
    user_agent: str = os.getenv("SITESEARCH_UA", "SiteSearchBot/1.0 (+https://github.com/sitesearch/sitesearch)")
    referrer: str = os.getenv("SITESEARCH_REFERRER", "http://www.google.com")
    timeout: int = int(os.getenv("SITESEARCH_TIMEOUT", "30"))
    max_concurrency: int = int(os.getenv("SITESEARCH_CONCURRENCY", "10"))
    delay_between_requests: float = float(os.getenv("SITESEARCH_DELAY", "0.5"))

@dataclass
class CrawlLimits:
    max_pages: int = int(os.getenv("SITESEARCH_MAX_PAGES", "500"))

@dataclass
class SiteConfig:
    url: str
    name: str

@dataclass
class SitesList:
    sites: List[SiteConfig] = field(default_factory=list)

    def find(self, site_url: str) -> SiteConfig | None:
        site_url = site_url.lower()
        for site in self.sites:
            if site.url.lower() == site_url:
                return site
        return None


def normalize_site_url(url: str) -> str:
    """Strip whitespace and a single trailing slash: http://site.com/ -> http://site.com"""
    url = url.strip()
    if url.endswith("/"):
        url = url[:-1]
    return url

def validate_sites(sites: List[SiteConfig]) -> None:
    if not sites:
        raise ConfigError("No sites are listed in the configuration file")
    for site in sites:
        if not SITE_URL_RE.match(site.url):
            raise ConfigError(
                f"Invalid site url for {site.name}: {site.url} "
                f"(expected something like http://www.site.com or https://www.site.com)"
            )

def load_sites(path: str) -> SitesList:
    """Load and validate the site list from a JSON file.

    Accepts either ``{"sites": [{"url": ..., "name": ...}, ...]}`` or a bare list.
    """
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read site list {path}: {e}") from e

    entries = raw.get("sites", []) if isinstance(raw, dict) else raw
    sites = []
    for entry in entries or []:
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ConfigError(f"Site entry without url in {path}: {entry!r}")
        url = normalize_site_url(str(entry["url"]))
        sites.append(SiteConfig(url=url, name=str(entry.get("name") or url)))
    validate_sites(sites)
    return SitesList(sites)

def get_db_path() -> str:
    """Get the database path inside the data directory, creating the directory if needed."""
    os.makedirs(DATA_DIR, exist_ok=True)
    return os.path.join(DATA_DIR, "sitesearch.db")

# User agent strings for different scenarios
USER_AGENTS = {
    "default": "SiteSearchBot/1.0 (+https://github.com/sitesearch/sitesearch)",
    "chrome": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "firefox": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "safari": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
}

def get_user_agent(ua_type: str = "default") -> str:
    """Get a user agent string by type or return a random one if 'random' is specified."""
    if ua_type == "random":
        return random.choice(list(USER_AGENTS.values()))
    return USER_AGENTS.get(ua_type, USER_AGENTS["default"])
