from __future__ import annotations
import re
from urllib.parse import urljoin
from typing import Set, Tuple
from bs4 import BeautifulSoup, NavigableString

# ------------------ URL helpers ------------------

SITE_ONLY_RE = re.compile(r"^https?://[^/]+$", re.IGNORECASE)
SITE_LINK_RE = re.compile(r"^(https?://[^/]+)/.*", re.IGNORECASE)

NON_HTML_EXT = (".pdf", ".jpg", ".jpeg", ".png", ".webp")

def is_site_url_only(url: str) -> bool:
    """True for links like http://www.site.com (no path, no trailing slash)."""
    return bool(SITE_ONLY_RE.match(url))

def get_site_link(link: str) -> str:
    """Cut http://www.site.com out of a full page link; empty string if there is none."""
    m = SITE_LINK_RE.match(link)
    return m.group(1) if m else ""

def is_non_html_extension(link: str) -> bool:
    return link.lower().endswith(NON_HTML_EXT)

# ------------------ documents ------------------

INVISIBLE_TAGS = {"script", "style", "noscript", "template"}

def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")

def page_title(document: BeautifulSoup) -> str:
    title_tag = document.find("title")
    return title_tag.get_text().strip() if title_tag else ""

def page_text(document: BeautifulSoup) -> str:
    """Visible text of the document with whitespace collapsed."""
    parts = []
    for s in document.find_all(string=True):
        # comments, doctype and script/style bodies are NavigableString subclasses
        if type(s) is not NavigableString:
            continue
        if s.parent is not None and s.parent.name in INVISIBLE_TAGS:
            continue
        parts.append(s)
    return " ".join(" ".join(parts).split())

def title_and_text(html: str) -> Tuple[str, str]:
    document = parse_html(html)
    return page_title(document), page_text(document)

# ------------------ extractors ------------------

def extract_links(document: BeautifulSoup, page_url: str) -> Set[str]:
    """Same-site links of a page as site-relative paths.

    Fragment links and links to images/PDF files are dropped, as is anything
    that resolves to another site.
    """
    site_link = get_site_link(page_url).lower()
    base_tag = document.find("base", href=True)
    base_url = urljoin(page_url, base_tag["href"]) if base_tag else page_url

    result = set()
    for a in document.find_all("a", href=True):
        href = urljoin(base_url, a["href"].strip()).strip()
        if "#" in href or is_non_html_extension(href):
            continue
        if site_link and href.lower().startswith(site_link):
            href = href[len(site_link):]
        if not href.startswith("/"):
            continue
        result.add(href)
    return result
