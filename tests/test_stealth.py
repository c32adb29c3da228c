"""Anti-detection tests: consent walls, block detection and session preparation."""

import random
import sys
import unittest
from pathlib import Path
from types import SimpleNamespace

from playwright.async_api import Error as PlaywrightError

sys.path.insert(0, str(Path(__file__).parent.parent))

from otodom_tracker.extraction import CONSENT_WALL, MAIN_CONTENT
from otodom_tracker.stealth import FINGERPRINT_SCRIPT, IDENTITY_PROFILES, AntiDetection

ACCEPT_BUTTON = "#onetrust-accept-btn-handler"


class FakeNode:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    async def count(self):
        return 1 if self.page.present(self.selector) else 0

    @property
    def first(self):
        return self

    def nth(self, index):
        return self

    async def is_visible(self):
        return self.page.present(self.selector)

    async def click(self, timeout=None):
        self.page.clicked.append(self.selector)
        if self.selector == ACCEPT_BUTTON and self.page.click_dismisses:
            self.page.wall_visible = False

    async def inner_text(self, timeout=None):
        return self.page.body

    async def hover(self, timeout=None):
        raise PlaywrightError("Element is not attached to the DOM")


class FakeContext:
    def __init__(self):
        self.cookies = []

    async def add_cookies(self, cookies):
        self.cookies.extend(cookies)


class FakeMouse:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def wheel(self, dx, dy):
        self.calls.append("wheel")
        if self.fail:
            raise PlaywrightError("mouse wheel failed")

    async def move(self, x, y, steps=1):
        self.calls.append("move")
        if self.fail:
            raise PlaywrightError("mouse move failed")


class FakePage:
    def __init__(self, wall_visible=False, click_dismisses=False, reload_dismisses=False,
                 title="Mieszkania na sprzedaż", body="Ogłoszenia", html_size=20000, selectors=()):
        self.wall_visible = wall_visible
        self.click_dismisses = click_dismisses
        self.reload_dismisses = reload_dismisses
        self._title = title
        self.body = body
        self.html = "x" * html_size
        self.selectors = set(selectors)
        self.clicked = []
        self.evaluated = []
        self.reloads = 0
        self.waits = []
        self.context = FakeContext()
        self.mouse = FakeMouse()
        self.viewport_size = {"width": 1366, "height": 768}
        self.url = "https://www.otodom.pl/pl/wyniki"

    def present(self, selector):
        if selector in CONSENT_WALL.selectors:
            return self.wall_visible
        return selector in self.selectors

    def locator(self, selector):
        return FakeNode(self, selector)

    async def evaluate(self, script, arg=None):
        self.evaluated.append(arg)

    async def reload(self, wait_until=None, timeout=None):
        self.reloads += 1
        if self.reload_dismisses:
            self.wall_visible = False

    async def wait_for_timeout(self, ms):
        self.waits.append(ms)

    async def title(self):
        return self._title

    async def content(self):
        return self.html


class TestConsentWall(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.stealth = AntiDetection({}, rng=random.Random(7))

    async def test_no_wall(self):
        outcome = await self.stealth.resolve_consent_wall(FakePage(wall_visible=False))
        self.assertTrue(outcome.handled)
        self.assertEqual(outcome.strategy, "no_wall")
        self.assertFalse(outcome.wall_present)

    async def test_click_strategy(self):
        page = FakePage(wall_visible=True, click_dismisses=True, selectors=[ACCEPT_BUTTON])
        outcome = await self.stealth.resolve_consent_wall(page)
        self.assertTrue(outcome.handled)
        self.assertEqual(outcome.strategy, "click")
        self.assertEqual(page.clicked, [ACCEPT_BUTTON])

    async def test_only_storage_injection_succeeds(self):
        page = FakePage(wall_visible=True, reload_dismisses=True, selectors=[ACCEPT_BUTTON])

        outcome = await self.stealth.resolve_consent_wall(page)

        self.assertTrue(outcome.handled)
        self.assertEqual(outcome.strategy, "storage_injection")
        self.assertEqual(outcome.to_dict()["strategy"], "storage_injection")
        self.assertEqual(outcome.attempts, ["click", "storage_injection"])
        self.assertEqual(page.reloads, 1)
        self.assertEqual({c["name"] for c in page.context.cookies}, {"OptanonAlertBoxClosed", "OptanonConsent"})
        self.assertIn("OptanonConsent", page.evaluated[0])

    async def test_unresolved_wall_proceeds(self):
        page = FakePage(wall_visible=True)
        outcome = await self.stealth.resolve_consent_wall(page)
        self.assertFalse(outcome.handled)
        self.assertEqual(outcome.strategy, "proceed_unblocked")
        self.assertTrue(outcome.wall_present)
        self.assertEqual(outcome.attempts, ["click", "storage_injection", "proceed_unblocked"])


class TestBlockDetection(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.stealth = AntiDetection({"scraping": {"min_content_length": 5000}})

    async def test_normal_page(self):
        page = FakePage(selectors=[MAIN_CONTENT])
        self.assertIsNone(await self.stealth.block_reason(page))
        self.assertFalse(await self.stealth.detect_block(page))

    async def test_marker_in_title(self):
        page = FakePage(title="Just a moment...", selectors=[MAIN_CONTENT])
        self.assertEqual(await self.stealth.block_reason(page), "marker:just a moment")

    async def test_captcha_in_body(self):
        page = FakePage(body="Potwierdź, że nie jesteś robotem", selectors=[MAIN_CONTENT])
        self.assertTrue(await self.stealth.detect_block(page))

    async def test_recaptcha_notice_in_body_is_not_a_block(self):
        page = FakePage(
            body="This site is protected by reCAPTCHA and the Google Privacy Policy applies.",
            selectors=[MAIN_CONTENT],
        )
        self.assertIsNone(await self.stealth.block_reason(page))

    async def test_captcha_in_title(self):
        page = FakePage(title="Captcha - otodom.pl", selectors=[MAIN_CONTENT])
        self.assertEqual(await self.stealth.block_reason(page), "marker:captcha")

    async def test_visible_challenge_element(self):
        page = FakePage(selectors=[MAIN_CONTENT, "#px-captcha"])
        self.assertEqual(await self.stealth.block_reason(page), "challenge:#px-captcha")

    async def test_small_content(self):
        page = FakePage(html_size=900, selectors=[MAIN_CONTENT])
        self.assertEqual(await self.stealth.block_reason(page), "small_content:900")

    async def test_missing_main_content(self):
        page = FakePage()
        self.assertEqual(await self.stealth.block_reason(page), "missing_main_content")


class TestHumanNoise(unittest.IsolatedAsyncioTestCase):
    async def test_simulate_browsing_swallows_errors(self):
        stealth = AntiDetection(
            {"scraping": {"delay_between_actions_ms": [0, 0], "browsing_steps": [3, 3]}},
            rng=random.Random(1),
        )
        page = FakePage(selectors=['[data-cy="listing-item"]'])
        page.mouse = FakeMouse(fail=True)

        await stealth.simulate_browsing(page)

    async def test_pause_uses_page_timer(self):
        stealth = AntiDetection({}, rng=random.Random(3))
        page = FakePage()
        await stealth.pause(page, (100, 100))
        self.assertEqual(page.waits, [100])


class FakeBrowserContext:
    def __init__(self):
        self.init_scripts = []
        self.routes = []
        self.closed = False
        self.page = SimpleNamespace(
            set_default_timeout=lambda ms: None,
            set_default_navigation_timeout=lambda ms: None,
        )

    async def add_init_script(self, script):
        self.init_scripts.append(script)

    async def route(self, pattern, handler):
        self.routes.append(pattern)

    async def new_page(self):
        return self.page

    async def close(self):
        self.closed = True


class FakeBrowser:
    def __init__(self):
        self.context_kwargs = []
        self.contexts = []

    async def new_context(self, **kwargs):
        self.context_kwargs.append(kwargs)
        context = FakeBrowserContext()
        self.contexts.append(context)
        return context


class TestPrepareSession(unittest.IsolatedAsyncioTestCase):
    async def test_context_uses_profile_matching_engine(self):
        stealth = AntiDetection({}, rng=random.Random(11))
        session = SimpleNamespace(browser=FakeBrowser(), engine="firefox", identity=None)

        page_context = await stealth.prepare_session(session)

        kwargs = session.browser.context_kwargs[0]
        self.assertEqual(page_context.profile.name, "firefox-windows")
        self.assertEqual(kwargs["user_agent"], page_context.profile.user_agent)
        self.assertEqual(kwargs["locale"], "pl-PL")
        self.assertEqual(kwargs["timezone_id"], "Europe/Warsaw")
        self.assertIn("Accept-Language", kwargs["extra_http_headers"])
        self.assertEqual(session.browser.contexts[0].init_scripts, [FINGERPRINT_SCRIPT])
        self.assertEqual(session.browser.contexts[0].routes, ["**/*"])

        await page_context.close()
        self.assertTrue(session.browser.contexts[0].closed)

    async def test_identity_is_stable_within_session(self):
        stealth = AntiDetection({}, rng=random.Random(5))
        session = SimpleNamespace(browser=FakeBrowser(), engine="chromium", identity=None)

        first = await stealth.prepare_session(session)
        second = await stealth.prepare_session(session)

        self.assertEqual(first.profile, second.profile)
        self.assertIn("chromium", first.profile.engines)

    def test_profiles_cover_every_engine(self):
        engines = {engine for profile in IDENTITY_PROFILES for engine in profile.engines}
        self.assertEqual(engines, {"chromium", "firefox", "webkit"})


if __name__ == "__main__":
    unittest.main()
