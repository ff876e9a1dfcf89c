"""Tests for link extraction and child-link filtering."""

import unittest

from crawlkit.discovery import RobotsTxtCache, UrlPatternFilter
from crawlkit.link_filter import extract_links, filter_discovered_links
from crawlkit.models import CrawlRequest

HTML = """
<html><head>
  <link rel="canonical" href="https://example.com/canonical">
</head><body>
  <a href="/about">About</a>
  <a href="contact.html">Contact</a>
  <a href="https://other.org/page">Elsewhere</a>
  <a href="#section">Anchor</a>
  <a href="mailto:team@example.com">Mail</a>
  <a href="javascript:void(0)">JS</a>
  <a href="ftp://example.com/file">FTP</a>
  <a>No href</a>
</body></html>
"""


def _parent(depth=0, url="https://example.com/dir/index.html"):
    return CrawlRequest(url=url, unique_key=url, depth=depth)


class TestExtractLinks(unittest.TestCase):

    def test_resolves_relative_links_in_document_order(self):
        links = extract_links(HTML, "https://example.com/dir/index.html")
        self.assertEqual(
            links,
            [
                "https://example.com/canonical",
                "https://example.com/about",
                "https://example.com/dir/contact.html",
                "https://other.org/page",
            ],
        )

    def test_empty_document(self):
        self.assertEqual(extract_links("", "https://example.com"), [])


class TestFilterDiscoveredLinks(unittest.TestCase):
    """Depth and domain rules applied to a parent's outgoing links."""

    def test_same_domain_only_drops_other_hosts(self):
        links = ["https://example.com/a", "https://other.org/b", "https://sub.example.com/c"]
        self.assertEqual(filter_discovered_links(links, _parent(), max_depth=2), ["https://example.com/a"])

    def test_cross_domain_allowed_when_disabled(self):
        links = ["https://example.com/a", "https://other.org/b"]
        got = filter_discovered_links(links, _parent(), max_depth=2, same_domain_only=False)
        self.assertEqual(got, links)

    def test_nothing_returned_at_depth_budget(self):
        """A parent at max_depth has no children worth enqueueing."""
        self.assertEqual(filter_discovered_links(["https://example.com/a"], _parent(depth=2), max_depth=2), [])
        self.assertEqual(filter_discovered_links(["https://example.com/a"], _parent(depth=0), max_depth=0), [])

    def test_duplicates_collapse_by_unique_key(self):
        links = ["https://example.com/a", "https://example.com/a/", "https://example.com/a?utm_source=x"]
        self.assertEqual(filter_discovered_links(links, _parent(), max_depth=1), ["https://example.com/a"])

    def test_non_http_links_are_dropped(self):
        links = ["ftp://example.com/a", "mailto:x@example.com", "https://example.com/ok"]
        self.assertEqual(filter_discovered_links(links, _parent(), max_depth=1), ["https://example.com/ok"])

    def test_host_comparison_ignores_case(self):
        got = filter_discovered_links(["https://EXAMPLE.com/x"], _parent(), max_depth=1)
        self.assertEqual(got, ["https://EXAMPLE.com/x"])

    def test_include_and_exclude_patterns(self):
        links = ["https://example.com/blog/1", "https://example.com/shop/2", "https://example.com/blog/draft"]
        url_filter = UrlPatternFilter(include=["*/blog/*"], exclude=["*/draft"])
        got = filter_discovered_links(links, _parent(), max_depth=1, url_filter=url_filter)
        self.assertEqual(got, ["https://example.com/blog/1"])

    def test_robots_disallowed_links_are_dropped(self):
        robots = RobotsTxtCache(lambda url: "User-agent: *\nDisallow: /admin\n")
        links = ["https://example.com/admin/users", "https://example.com/about"]
        got = filter_discovered_links(links, _parent(), max_depth=1, robots=robots)
        self.assertEqual(got, ["https://example.com/about"])


if __name__ == "__main__":
    unittest.main()
