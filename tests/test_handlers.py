"""Tests for request handlers, session settlement and the HTTP client."""

import random
import unittest
from unittest import mock

import requests

from crawlkit.config import CrawlerConfig
from crawlkit.errors import AntiBotError, FetchError, RequestTimeoutError, TransientFetchError, ValidationError
from crawlkit.fingerprint import FingerprintGenerator
from crawlkit.handlers import (
    BrowserCollaborator,
    BrowserPage,
    BrowserRequestHandler,
    HttpRequestHandler,
    create_request_handler,
    execute_with_session,
)
from crawlkit.http_client import HttpClient, HttpResponse
from crawlkit.models import CrawlRequest
from crawlkit.proxy_rotator import ProxyRotator
from crawlkit.session_pool import SessionPool

PAGE = '<html><body><a href="/next">next</a></body></html>'


def _request(url="https://example.com/start", **kwargs):
    return CrawlRequest(url=url, unique_key=url, **kwargs)


def _response(status=200, body=PAGE, headers=None, url="https://example.com/start"):
    return HttpResponse(status_code=status, body=body, headers=headers or {"Content-Type": "text/html; charset=utf-8"}, url=url)


class FakeHttpClient:
    """Returns canned responses in order and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.discarded = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def discard_session(self, key):
        self.discarded.append(key)

    def close(self):
        self.closed = True


class TestExecuteWithSession(unittest.TestCase):
    """Health of the session follows the outcome of each fetch."""

    def setUp(self):
        self.proxies = ProxyRotator(["http://p1", "http://p2"])
        self.pool = SessionPool(FingerprintGenerator(random.Random(2)), self.proxies, max_error_score=3)

    def test_success_returns_result_with_links(self):
        result = execute_with_session(self.pool, _request(), lambda s: _response())
        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.content_type, "text/html")
        self.assertEqual(result.links, ["https://example.com/next"])
        session = self.pool.get(result.session_id)
        self.assertEqual(session.health, "good")

    def test_non_html_has_no_links(self):
        resp = _response(body='{"a": "<a href=/x>"}', headers={"Content-Type": "application/json"})
        result = execute_with_session(self.pool, _request(), lambda s: resp)
        self.assertEqual(result.links, [])

    def test_403_retires_session_and_blocks_proxy(self):
        retired = []
        self.pool.add_retire_listener(retired.append)
        with self.assertRaises(AntiBotError) as ctx:
            execute_with_session(self.pool, _request(), lambda s: _response(status=403, body="denied"))
        self.assertEqual(ctx.exception.kind, "http_403")
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(len(retired), 1)
        self.assertEqual(retired[0].health, "retired")
        self.assertEqual(self.proxies.available_count, 1)
        self.assertNotEqual(self.pool.get_session("example.com").id, retired[0].id)

    def test_captcha_page_is_blocked_even_with_200(self):
        body = '<html><div class="g-recaptcha"></div></html>'
        with self.assertRaises(AntiBotError) as ctx:
            execute_with_session(self.pool, _request(), lambda s: _response(body=body))
        self.assertEqual(ctx.exception.kind, "captcha:recaptcha")
        self.assertTrue(ctx.exception.retryable)

    def test_form_captcha_on_a_real_page_is_not_a_block(self):
        body = (
            "<html><body><h1>Contact us</h1><p>Write to the support team and we will answer within two days.</p>"
            '<a href="/faq">FAQ</a><form><div class="g-recaptcha" data-sitekey="k"></div></form></body></html>'
        )
        retired = []
        self.pool.add_retire_listener(retired.append)
        result = execute_with_session(self.pool, _request("https://example.com/contact"), lambda s: _response(body=body))
        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.links, ["https://example.com/faq"])
        self.assertEqual(retired, [])
        self.assertEqual(self.proxies.available_count, 2)

    def test_5xx_is_transient_and_degrades(self):
        holder = []

        def fetch(session):
            holder.append(session)
            return _response(status=502, body="bad gateway")

        with self.assertRaises(TransientFetchError):
            execute_with_session(self.pool, _request(), fetch)
        self.assertEqual(holder[0].health, "degraded")

    def test_4xx_is_permanent(self):
        with self.assertRaises(FetchError) as ctx:
            execute_with_session(self.pool, _request(), lambda s: _response(status=404, body="nope"))
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_unexpected_exception_becomes_fetch_error(self):
        def fetch(session):
            raise KeyError("boom")

        with self.assertRaises(FetchError) as ctx:
            execute_with_session(self.pool, _request(), fetch)
        self.assertEqual(ctx.exception.url, "https://example.com/start")

    def test_timeout_maps_to_request_timeout(self):
        def fetch(session):
            raise TimeoutError("slow")

        with self.assertRaises(RequestTimeoutError):
            execute_with_session(self.pool, _request(), fetch)


class TestHttpRequestHandler(unittest.TestCase):

    def setUp(self):
        self.pool = SessionPool(FingerprintGenerator(random.Random(3)), ProxyRotator(["http://proxy:8080"]))

    def test_sends_fingerprint_headers_and_session_key(self):
        client = FakeHttpClient(_response())
        handler = HttpRequestHandler(self.pool, http_client=client, timeout=7.0)
        result = handler.handle_request(_request(headers={"X-Extra": "1"}))
        method, url, kwargs = client.calls[0]
        session = self.pool.get(result.session_id)
        self.assertEqual(method, "GET")
        self.assertEqual(kwargs["headers"]["User-Agent"], session.fingerprint.user_agent)
        self.assertEqual(kwargs["headers"]["X-Extra"], "1")
        self.assertEqual(kwargs["timeout"], 7.0)
        self.assertEqual(kwargs["proxy"], "http://proxy:8080")
        self.assertEqual(kwargs["impersonate"], session.fingerprint.impersonate)
        self.assertEqual(kwargs["session_key"], session.id)

    def test_block_discards_client_session(self):
        client = FakeHttpClient(_response(status=429, body="slow down"))
        handler = HttpRequestHandler(self.pool, http_client=client)
        with self.assertRaises(AntiBotError):
            handler.handle_request(_request())
        self.assertEqual(len(client.discarded), 1)

    def test_every_retired_session_releases_its_client_session(self):
        """Usage-limit rotation discards the client session just like a block does."""
        pool = SessionPool(FingerprintGenerator(random.Random(6)), max_usage_count=1)
        client = FakeHttpClient(*[_response() for _ in range(5)])
        handler = HttpRequestHandler(pool, http_client=client)
        keys = [handler.handle_request(_request()).session_id for _ in range(5)]
        self.assertEqual(len(set(keys)), 5)
        self.assertEqual(client.discarded, keys[:4])
        self.assertEqual(pool.get_stats()["total"], 1)

    def test_close_closes_client(self):
        client = FakeHttpClient()
        HttpRequestHandler(self.pool, http_client=client).close()
        self.assertTrue(client.closed)


class FakeBrowser(BrowserCollaborator):
    def __init__(self, page):
        self.page = page
        self.rendered = []

    def render(self, url, timeout, fingerprint, proxy=None):
        self.rendered.append((url, fingerprint.id))
        return self.page


class TestBrowserRequestHandler(unittest.TestCase):

    def test_rendered_html_defaults_to_html_content_type(self):
        pool = SessionPool(FingerprintGenerator(random.Random(4)))
        browser = FakeBrowser(BrowserPage(status_code=200, html=PAGE))
        result = BrowserRequestHandler(pool, browser).handle_request(_request())
        self.assertEqual(result.content_type, "text/html")
        self.assertEqual(result.links, ["https://example.com/next"])
        self.assertEqual(len(browser.rendered), 1)


class TestCreateRequestHandler(unittest.TestCase):

    def test_http_engine(self):
        handler = create_request_handler(CrawlerConfig(), http_client=FakeHttpClient())
        self.assertIsInstance(handler, HttpRequestHandler)

    def test_browser_engine_needs_collaborator(self):
        config = CrawlerConfig(engine="browser")
        with self.assertRaises(ValidationError):
            create_request_handler(config)
        browser = FakeBrowser(BrowserPage(200, PAGE))
        self.assertIsInstance(create_request_handler(config, browser=browser), BrowserRequestHandler)


class TestHttpClient(unittest.TestCase):
    """The plain requests path; no network is touched."""

    def test_plain_request_wraps_response(self):
        fake = mock.Mock(status_code=200, text="ok", headers={"Content-Type": "text/plain"}, url="https://example.com/")
        with mock.patch("crawlkit.http_client.requests.request", return_value=fake) as req:
            resp = HttpClient(timeout=5).get("https://example.com/", proxy="http://p:1")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.body, "ok")
        self.assertEqual(req.call_args.kwargs["timeout"], 5)
        self.assertEqual(req.call_args.kwargs["proxies"], {"http": "http://p:1", "https": "http://p:1"})

    def test_timeout_maps_to_request_timeout_error(self):
        with mock.patch("crawlkit.http_client.requests.request", side_effect=requests.ReadTimeout("slow")):
            with self.assertRaises(RequestTimeoutError):
                HttpClient().get("https://example.com/")

    def test_connection_error_is_transient(self):
        with mock.patch("crawlkit.http_client.requests.request", side_effect=requests.ConnectionError("reset")):
            with self.assertRaises(TransientFetchError):
                HttpClient().get("https://example.com/")

    def test_impersonation_reuses_curl_session_per_key(self):
        fake_resp = mock.Mock(status_code=200, text="hi", headers={}, url="https://example.com/")
        with mock.patch("crawlkit.http_client.curl_requests.Session") as session_cls:
            session_cls.return_value.request.return_value = fake_resp
            client = HttpClient()
            client.get("https://example.com/", impersonate="chrome", session_key="s1")
            client.get("https://example.com/", impersonate="chrome", session_key="s1")
            self.assertEqual(session_cls.call_count, 1)
            client.discard_session("s1")
            session_cls.return_value.close.assert_called_once()

    def test_json_body(self):
        self.assertEqual(HttpResponse(200, '{"a": 1}', {}, "").json(), {"a": 1})


if __name__ == "__main__":
    unittest.main()
