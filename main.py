from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from crawlkit.config import CrawlerConfig, merge_config
from crawlkit.dataset import diff_datasets
from crawlkit.discovery import RobotsTxtCache, UrlPatternFilter, expand_with_sitemaps, http_fetcher
from crawlkit.engine import Crawler
from crawlkit.errors import CrawlkitError
from crawlkit.exporters import EXPORT_FORMATS, export_items, parse_json_export
from crawlkit.handlers import create_request_handler
from crawlkit.http_client import HttpClient
from crawlkit.platforms import SCRAPERS, ScrapeOptions, scrape_platform
from crawlkit.storage import JsonlResultStorage

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging() -> None:
    level = os.environ.get("CRAWLER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def _read(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _write_output(text: str, path: Optional[str]) -> None:
    if path:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
    else:
        sys.stdout.write(text + ("" if text.endswith("\n") else "\n"))


def _load_seeds(args: argparse.Namespace) -> List[str]:
    seeds = list(args.seeds)
    if args.seed_file:
        seeds.extend(line.strip() for line in _read(args.seed_file).splitlines() if line.strip())
    if not seeds:
        raise CrawlkitError("no seed URLs given")
    return seeds


def _crawl_seeds(args: argparse.Namespace, config: CrawlerConfig) -> List[str]:
    seeds = _load_seeds(args)
    if not args.sitemap:
        return seeds
    fetch = http_fetcher(HttpClient(timeout=config.request_timeout_secs))
    robots = RobotsTxtCache(fetch, user_agent=config.robots_user_agent)
    url_filter = UrlPatternFilter(config.include_patterns, config.exclude_patterns)
    return expand_with_sitemaps(seeds, fetch, robots, url_filter, obey_robots=config.respect_robots_txt)


def run_crawl(args: argparse.Namespace) -> int:
    config = merge_config(
        CrawlerConfig.from_env(),
        queue_strategy=args.strategy,
        max_depth=args.max_depth,
        same_domain_only=False if args.all_domains else None,
        include_patterns=args.include or None,
        exclude_patterns=args.exclude or None,
        respect_robots_txt=True if args.respect_robots else None,
        max_pages=args.max_pages,
        max_duration_secs=args.max_duration,
        max_bytes=args.max_bytes,
        min_concurrency=args.min_concurrency,
        max_concurrency=args.max_concurrency,
        max_requests_per_minute=args.rpm,
    )
    storage = JsonlResultStorage(args.results) if args.results else None
    handler = create_request_handler(config)
    crawler = Crawler(handler, config, storage=storage)
    try:
        result = crawler.run(_crawl_seeds(args, config))
    finally:
        handler.close()
        if storage is not None:
            storage.close()

    if args.export and crawler.dataset is not None:
        _write_output(export_items(crawler.dataset.items, args.export), args.output)
    summary = {
        "pages_crawled": result.pages_crawled,
        "bytes_downloaded": result.bytes_downloaded,
        "duration_ms": result.duration_ms,
        "completed": result.stats.completed,
        "failed": result.stats.failed,
        "stop_reason": result.stop_reason,
        "error_groups": result.error_groups,
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2), file=sys.stderr if args.export and not args.output else sys.stdout)
    return 0


def run_scrape(args: argparse.Namespace) -> int:
    options = ScrapeOptions(max_items=args.max_items, proxy=args.proxy, timeout=args.timeout)
    result = scrape_platform(args.platform, args.url, options)
    _write_output(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str), args.output)
    return 0 if not result.is_empty else 1


def run_diff(args: argparse.Namespace) -> int:
    old_items = parse_json_export(_read(args.old))
    new_items = parse_json_export(_read(args.new))
    diff = diff_datasets(old_items, new_items)
    doc = {
        "added": diff.added,
        "removed": diff.removed,
        "changed": [{"url": c.url, "oldHash": c.old_hash, "newHash": c.new_hash} for c in diff.changed],
    }
    print(json.dumps(doc, ensure_ascii=False, indent=2))
    return 1 if diff.has_changes and args.exit_code else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crawlkit", description="Crawl orchestration engine")
    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Crawl from seed URLs")
    crawl.add_argument("seeds", nargs="*", help="Seed URLs")
    crawl.add_argument("--seed-file", help="File with one seed URL per line")
    crawl.add_argument("--strategy", choices=("bfs", "dfs"), help="Queue order")
    crawl.add_argument("--max-depth", type=int, help="Link depth to follow from the seeds")
    crawl.add_argument("--all-domains", action="store_true", help="Follow links to other hosts")
    crawl.add_argument("--include", action="append", help="Only follow URLs matching this glob (or re:<regex>); repeatable")
    crawl.add_argument("--exclude", action="append", help="Never follow URLs matching this glob (or re:<regex>); repeatable")
    crawl.add_argument("--respect-robots", action="store_true", help="Skip links disallowed by robots.txt")
    crawl.add_argument("--sitemap", action="store_true", help="Also seed from each site's sitemap.xml")
    crawl.add_argument("--max-pages", type=int, help="Stop after this many pages")
    crawl.add_argument("--max-duration", type=float, help="Stop after this many seconds")
    crawl.add_argument("--max-bytes", type=int, help="Stop after downloading this many bytes")
    crawl.add_argument("--min-concurrency", type=int, help="Lower bound for the worker pool")
    crawl.add_argument("--max-concurrency", type=int, help="Upper bound for the worker pool")
    crawl.add_argument("--rpm", type=int, help="Requests per minute per domain")
    crawl.add_argument("--results", help="Append crawl results to this JSONL file")
    crawl.add_argument("--export", choices=EXPORT_FORMATS, help="Export the dataset in this format")
    crawl.add_argument("--output", "-o", help="Write the export here instead of stdout")
    crawl.set_defaults(func=run_crawl)

    scrape = sub.add_parser("scrape", help="Scrape a social profile")
    scrape.add_argument("platform", choices=sorted(SCRAPERS), help="Target platform")
    scrape.add_argument("url", help="Profile or video URL")
    scrape.add_argument("--max-items", type=int, default=20, help="Max posts/tweets/videos")
    scrape.add_argument("--proxy", help="Proxy URL")
    scrape.add_argument("--timeout", type=float, default=30.0, help="Per-request timeout seconds")
    scrape.add_argument("--output", "-o", help="Write JSON here instead of stdout")
    scrape.set_defaults(func=run_scrape)

    diff = sub.add_parser("diff", help="Compare two JSON dataset exports")
    diff.add_argument("old", help="Older export")
    diff.add_argument("new", help="Newer export")
    diff.add_argument("--exit-code", action="store_true", help="Exit 1 when the datasets differ")
    diff.set_defaults(func=run_diff)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    _configure_logging()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except CrawlkitError as exc:
        logging.getLogger("crawlkit").error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
