from __future__ import annotations
import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime
from .config import ConfigError, CrawlLimits, HttpConfig, get_db_path, get_user_agent, load_sites
from .db import Database
from .lemmas import LemmaAnalyzer
from .search import SearchEngine
from .session import IndexingSession
from .stats import get_statistics

logger = logging.getLogger("sitesearch")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sitesearch",
        description="Crawl configured sites into a lemma index and search it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --sites sites.json index
  %(prog)s --sites sites.json index-page https://www.site.com/news/1.html
  %(prog)s --sites sites.json search "леопард район" --limit 5
  %(prog)s --sites sites.json stats
  %(prog)s lemmas "Повторное появление леопарда в Осетии"
        """
    )
    p.add_argument("--sites", default=os.getenv("SITESEARCH_SITES", "sites.json"),
                   help="JSON file with the list of sites (default: sites.json)")
    p.add_argument("--db", default=None, help="SQLite database path (default: $SITESEARCH_DATA/sitesearch.db)")

    # HTTP configuration
    p.add_argument("--user-agent", choices=["default", "chrome", "firefox", "safari", "random"],
                   default=None, help="User agent type to use")
    p.add_argument("--custom-ua", type=str, help="Custom user agent string (overrides --user-agent)")
    p.add_argument("--timeout", type=int, default=None, help="Request timeout in seconds (default: 30)")
    p.add_argument("--concurrency", type=int, default=None, help="Maximum concurrent requests per site (default: 10)")
    p.add_argument("--delay", type=float, default=None, help="Delay between requests to a site in seconds (default: 0.5)")
    p.add_argument("--max-pages", type=int, default=None, help="Maximum pages to index per site (default: 500)")
    p.add_argument("--max-workers", type=int, default=2,
                   help="Maximum number of worker threads for lemmatization (default: 2)")

    # Output and logging
    p.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    p.add_argument("--quiet", "-q", action="store_true", help="Suppress non-error output")

    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("index", help="Index all configured sites")
    page = sub.add_parser("index-page", help="Re-index a single page")
    page.add_argument("url")
    search = sub.add_parser("search", help="Search the index")
    search.add_argument("query")
    search.add_argument("--site", default=None, help="Restrict search to one site, e.g. http://www.site.com")
    search.add_argument("--offset", type=int, default=0)
    search.add_argument("--limit", type=int, default=20)
    sub.add_parser("stats", help="Show index statistics")
    lemmas = sub.add_parser("lemmas", help="Show lemmas and morphology of a text")
    lemmas.add_argument("text")
    return p


def configure_logging(args: argparse.Namespace):
    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def http_config_from_args(args: argparse.Namespace) -> HttpConfig:
    defaults = HttpConfig()
    user_agent = args.custom_ua or (get_user_agent(args.user_agent) if args.user_agent else defaults.user_agent)
    return HttpConfig(
        user_agent=user_agent,
        referrer=defaults.referrer,
        timeout=args.timeout if args.timeout is not None else defaults.timeout,
        max_concurrency=args.concurrency if args.concurrency is not None else defaults.max_concurrency,
        delay_between_requests=args.delay if args.delay is not None else defaults.delay_between_requests,
    )


def _install_stop_handler(session: IndexingSession):
    """Ctrl+C or SIGTERM asks the running crawl to stop gracefully."""
    loop = asyncio.get_running_loop()

    def request_stop():
        print("\nStop requested. Waiting for crawlers to finish...")
        loop.create_task(session.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(request_stop))


def print_search(response) -> int:
    if not response.result:
        print(f"Error: {response.error}", file=sys.stderr)
        return 1
    print(f"Found {response.count} page(s)")
    for item in response.data:
        print()
        print(f"[{item.relevance:.3f}] {item.title or '(no title)'}")
        print(f"  {item.site}{item.uri} ({item.site_name})")
        print(f"  {item.snippet}")
    return 0


def print_statistics(stats) -> int:
    total = stats.total
    print(f"Sites: {total.sites}, pages: {total.pages}, lemmas: {total.lemmas}, indexing: {total.indexing}")
    for item in stats.detailed:
        status_time = datetime.fromtimestamp(item.status_time / 1000).strftime("%Y-%m-%d %H:%M:%S")
        print(f"  {item.name} {item.url}: {item.status} at {status_time}, "
              f"{item.pages} pages, {item.lemmas} lemmas" + (f", error: {item.error}" if item.error else ""))
    return 0


async def run_command(args: argparse.Namespace) -> int:
    analyzer = LemmaAnalyzer()
    if args.command == "lemmas":
        for word, count in sorted(analyzer.get_lemmas(args.text, log_errors=True).items()):
            print(f"{word} - {count}")
        if args.verbose:
            for line in analyzer.describe(args.text):
                print(line)
        return 0

    sites = load_sites(args.sites)
    limits = CrawlLimits(max_pages=args.max_pages) if args.max_pages is not None else CrawlLimits()
    async with Database(args.db or get_db_path()) as db:
        session = IndexingSession(db, sites, analyzer, limits=limits,
                                  http_config=http_config_from_args(args), max_workers=args.max_workers)
        try:
            if args.command in ("index", "index-page"):
                if args.command == "index":
                    response = await session.start_full_crawl()
                else:
                    response = await session.start_url_crawl(args.url)
                if not response.result:
                    print(f"Error: {response.error}", file=sys.stderr)
                    return 1
                _install_stop_handler(session)
                await session.wait()
                return print_statistics(await get_statistics(db, session))
            if args.command == "search":
                return print_search(await SearchEngine(db, analyzer, session).search(
                    args.query, args.site, args.offset, args.limit))
            return print_statistics(await get_statistics(db, session))
        finally:
            await session.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args)
    try:
        return asyncio.run(run_command(args))
    except ConfigError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
