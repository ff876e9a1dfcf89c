"""Tests for URL patterns, robots.txt caching and sitemap discovery."""

import unittest

from crawlkit.discovery import (
    RobotsTxtCache,
    UrlPatternFilter,
    apply_scope,
    expand_with_sitemaps,
    fetch_sitemap_urls,
    http_fetcher,
    parse_sitemap,
)
from crawlkit.errors import TransientFetchError
from crawlkit.http_client import HttpResponse

ROBOTS = """User-agent: *
Disallow: /private/
Crawl-delay: 2

User-agent: crawlkit
Disallow: /

Sitemap: https://site.test/sitemap-index.xml
"""

URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://site.test/a</loc></url>
  <url><loc> https://site.test/b </loc></url>
</urlset>"""

INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://site.test/posts.xml</loc></sitemap>
  <sitemap><loc>https://site.test/archive.xml.gz</loc></sitemap>
</sitemapindex>"""

POSTS = """<urlset><url><loc>https://site.test/posts/1</loc></url>
<url><loc>https://site.test/a</loc></url></urlset>"""


class FakeFetcher:
    """Serves ``docs`` by URL and records every fetch."""

    def __init__(self, docs):
        self.docs = docs
        self.calls = []

    def __call__(self, url):
        self.calls.append(url)
        return self.docs.get(url)


class TestUrlPatternFilter(unittest.TestCase):

    def test_empty_filter_allows_everything(self):
        url_filter = UrlPatternFilter()
        self.assertTrue(url_filter.is_empty)
        self.assertTrue(url_filter.allows("https://site.test/anything"))

    def test_globs_are_anchored_and_case_insensitive(self):
        url_filter = UrlPatternFilter(include=["https://site.test/blog/*"])
        self.assertTrue(url_filter.allows("https://SITE.test/blog/post-1"))
        self.assertFalse(url_filter.allows("https://site.test/shop/blog/x"))
        self.assertFalse(url_filter.allows("https://site.test/blog"))

    def test_question_mark_matches_one_character(self):
        url_filter = UrlPatternFilter(include=["https://site.test/p?"])
        self.assertTrue(url_filter.allows("https://site.test/p1"))
        self.assertFalse(url_filter.allows("https://site.test/p12"))

    def test_exclude_wins_over_include(self):
        url_filter = UrlPatternFilter(include=["*site.test/*"], exclude=["*.pdf"])
        self.assertTrue(url_filter.allows("https://site.test/doc.html"))
        self.assertFalse(url_filter.allows("https://site.test/doc.pdf"))

    def test_regex_patterns(self):
        url_filter = UrlPatternFilter(exclude=[r"re:/page/\d+$"])
        self.assertFalse(url_filter.allows("https://site.test/page/12"))
        self.assertTrue(url_filter.allows("https://site.test/page/12/comments"))


class TestRobotsTxtCache(unittest.TestCase):

    def test_rules_are_applied_per_user_agent(self):
        fetch = FakeFetcher({"https://site.test/robots.txt": ROBOTS})
        generic = RobotsTxtCache(fetch)
        self.assertTrue(generic.is_allowed("https://site.test/public"))
        self.assertFalse(generic.is_allowed("https://site.test/private/x"))
        named = RobotsTxtCache(fetch, user_agent="crawlkit")
        self.assertFalse(named.is_allowed("https://site.test/public"))

    def test_fetched_once_per_host(self):
        fetch = FakeFetcher({"https://site.test/robots.txt": ROBOTS})
        robots = RobotsTxtCache(fetch)
        for path in ("/a", "/b", "/private/c"):
            robots.is_allowed("https://site.test" + path)
        robots.is_allowed("https://other.test/a")
        self.assertEqual(fetch.calls, ["https://site.test/robots.txt", "https://other.test/robots.txt"])

    def test_missing_robots_allows_everything(self):
        robots = RobotsTxtCache(FakeFetcher({}))
        self.assertTrue(robots.is_allowed("https://site.test/private/x"))
        self.assertIsNone(robots.crawl_delay("https://site.test/"))
        self.assertEqual(robots.sitemaps("https://site.test/"), [])

    def test_crawl_delay_and_sitemaps(self):
        robots = RobotsTxtCache(FakeFetcher({"https://site.test/robots.txt": ROBOTS}))
        self.assertEqual(robots.crawl_delay("https://site.test/x"), 2.0)
        self.assertEqual(robots.sitemaps("https://site.test/x"), ["https://site.test/sitemap-index.xml"])


class TestSitemaps(unittest.TestCase):

    def test_parse_urlset_and_index(self):
        self.assertEqual(parse_sitemap(URLSET), (["https://site.test/a", "https://site.test/b"], []))
        self.assertEqual(
            parse_sitemap(INDEX),
            ([], ["https://site.test/posts.xml", "https://site.test/archive.xml.gz"]),
        )
        self.assertEqual(parse_sitemap(""), ([], []))

    def test_follows_robots_sitemaps_and_indexes(self):
        fetch = FakeFetcher({
            "https://site.test/robots.txt": ROBOTS,
            "https://site.test/sitemap.xml": URLSET,
            "https://site.test/sitemap-index.xml": INDEX,
            "https://site.test/posts.xml": POSTS,
        })
        urls = fetch_sitemap_urls("https://site.test/", fetch, RobotsTxtCache(fetch))
        self.assertEqual(urls, ["https://site.test/a", "https://site.test/b", "https://site.test/posts/1"])
        self.assertNotIn("https://site.test/archive.xml.gz", fetch.calls)

    def test_stops_after_max_sitemaps(self):
        docs = {
            f"https://site.test/s{i}.xml": f"<sitemapindex><sitemap><loc>https://site.test/s{i + 1}.xml</loc></sitemap></sitemapindex>"
            for i in range(20)
        }
        docs["https://site.test/sitemap.xml"] = docs["https://site.test/s0.xml"]
        fetch = FakeFetcher(docs)
        fetch_sitemap_urls("https://site.test/", fetch, max_sitemaps=3)
        self.assertEqual(len(fetch.calls), 3)

    def test_expand_with_sitemaps_keeps_seeds_first_and_scopes_the_rest(self):
        fetch = FakeFetcher({
            "https://site.test/sitemap.xml": URLSET,
            "https://site.test/robots.txt": "User-agent: *\nDisallow: /b\n",
        })
        seeds = ["https://site.test/a", "https://site.test/start"]
        robots = RobotsTxtCache(fetch)
        self.assertEqual(
            expand_with_sitemaps(seeds, fetch, robots, obey_robots=True),
            ["https://site.test/a", "https://site.test/start"],
        )
        self.assertEqual(
            expand_with_sitemaps(seeds, fetch, robots, UrlPatternFilter(exclude=["*/a"])),
            ["https://site.test/a", "https://site.test/start", "https://site.test/b"],
        )


class TestApplyScope(unittest.TestCase):

    def test_patterns_then_robots(self):
        fetch = FakeFetcher({"https://site.test/robots.txt": ROBOTS})
        links = ["https://site.test/a", "https://site.test/private/b", "https://site.test/c.pdf"]
        kept = apply_scope(links, UrlPatternFilter(exclude=["*.pdf"]), RobotsTxtCache(fetch))
        self.assertEqual(kept, ["https://site.test/a"])


class FakeClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.headers = None

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.headers = headers
        if self.error is not None:
            raise self.error
        return self.response


class TestHttpFetcher(unittest.TestCase):

    def test_returns_body_on_200(self):
        client = FakeClient(HttpResponse(200, "User-agent: *", {}, "https://site.test/robots.txt"))
        self.assertEqual(http_fetcher(client)("https://site.test/robots.txt"), "User-agent: *")
        self.assertEqual(client.headers, {"User-Agent": "crawlkit"})

    def test_missing_or_unreachable_is_none(self):
        missing = FakeClient(HttpResponse(404, "nope", {}, "https://site.test/robots.txt"))
        self.assertIsNone(http_fetcher(missing)("https://site.test/robots.txt"))
        down = FakeClient(error=TransientFetchError("https://site.test/robots.txt", "network error"))
        self.assertIsNone(http_fetcher(down)("https://site.test/robots.txt"))


if __name__ == "__main__":
    unittest.main()
