"""Tests for User-Agent selection and browser header generation."""

import random
import unittest

from crawlkit.stealth_headers import (
    USER_AGENTS,
    UserAgentPool,
    build_identity,
    get_stealth_headers,
    sec_ch_ua,
)


class TestUserAgentPool(unittest.TestCase):

    def test_agent_comes_from_the_requested_device_list(self):
        pool = UserAgentPool(random.Random(1))
        self.assertIn(pool.get_agent("mobile"), USER_AGENTS["mobile"])
        self.assertIn(pool.get_agent(), USER_AGENTS["desktop"])

    def test_no_back_to_back_repeat_per_domain(self):
        """The same domain never sees the same UA twice in a row."""
        pool = UserAgentPool(random.Random(7))
        previous = None
        for _ in range(100):
            agent = pool.get_agent_for_domain("example.com")
            self.assertNotEqual(agent, previous)
            previous = agent


class TestStealthHeaders(unittest.TestCase):
    """Generated headers must be internally consistent."""

    def test_seeded_rng_is_reproducible(self):
        a = get_stealth_headers("example.com", rng=random.Random(42))
        b = get_stealth_headers("example.com", rng=random.Random(42))
        self.assertEqual(a, b)

    def test_chrome_client_hints_match_user_agent(self):
        for seed in range(30):
            rng = random.Random(seed)
            headers = get_stealth_headers("example.com", rng=rng, browser="chrome")
            with self.subTest(seed=seed):
                ua = headers["User-Agent"]
                version = int(ua.split("Chrome/")[1].split(".")[0])
                self.assertEqual(headers["Sec-Ch-Ua"], sec_ch_ua(version))
                platform = headers["Sec-Ch-Ua-Platform"]
                if "Windows" in ua:
                    self.assertEqual(platform, '"Windows"')
                elif "Macintosh" in ua:
                    self.assertEqual(platform, '"macOS"')
                else:
                    self.assertEqual(platform, '"Linux"')

    def test_non_chromium_browsers_send_no_client_hints(self):
        for browser in ("firefox", "safari"):
            headers = get_stealth_headers("example.com", rng=random.Random(3), browser=browser)
            with self.subTest(browser=browser):
                self.assertNotIn("Sec-Ch-Ua", headers)
                self.assertNotIn("Chrome/", headers["User-Agent"])

    def test_same_origin_referer_uses_host(self):
        for seed in range(50):
            headers = get_stealth_headers("shop.example.com", rng=random.Random(seed))
            if headers["Sec-Fetch-Site"] == "same-origin":
                self.assertEqual(headers["Referer"], "https://shop.example.com/")
            elif headers["Sec-Fetch-Site"] == "none":
                self.assertNotIn("Referer", headers)

    def test_unknown_browser_rejected(self):
        with self.assertRaises(ValueError):
            build_identity(random.Random(), "netscape")


if __name__ == "__main__":
    unittest.main()
