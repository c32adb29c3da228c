"""Anti-detection layer: identity profiles, consent walls, human noise, block checks."""

import itertools
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from otodom_tracker.config_loader import get_browser_config, get_scraping_config
from otodom_tracker.extraction import CONSENT_WALL, LISTING_CARD, MAIN_CONTENT

ACCEPT_LANGUAGE = "pl-PL,pl;q=0.9,en-US;q=0.8,en;q=0.7"

BLOCK_MARKERS = (
    "verify you are human",
    "just a moment",
    "checking your browser",
    "attention required",
    "unusual activity",
    "request blocked",
    "access denied",
    "security check",
    "jesteś robotem",
)

# Title only; reCAPTCHA notices mention it in the body of normal pages.
TITLE_BLOCK_MARKERS = ("captcha",)

CHALLENGE_SELECTORS = (
    "#challenge-form",
    "#challenge-stage",
    "#px-captcha",
    'iframe[src*="captcha-delivery.com"]',
)

GEOLOCATIONS = (
    ("Warszawa", 52.2298, 21.0118),
    ("Kraków", 50.0647, 19.9449),
    ("Wrocław", 51.1079, 17.0385),
    ("Gdańsk", 54.3520, 18.6464),
)

# Runs before any page script in every frame of the context.
FINGERPRINT_SCRIPT = """
(() => {
  const define = (obj, prop, value) => {
    try { Object.defineProperty(obj, prop, { get: () => value, configurable: true }); } catch (e) {}
  };

  define(Navigator.prototype, 'webdriver', false);
  define(navigator, 'languages', ['pl-PL', 'pl', 'en-US', 'en']);
  define(navigator, 'hardwareConcurrency', 8);
  define(navigator, 'deviceMemory', 8);

  const plugins = [
    { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
    { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
    { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' },
  ];
  define(navigator, 'plugins', plugins);
  define(navigator, 'mimeTypes', [
    { type: 'application/pdf', suffixes: 'pdf', description: 'Portable Document Format' },
    { type: 'application/x-nacl', suffixes: '', description: 'Native Client Executable' },
  ]);

  const patchWebGL = (proto) => {
    if (!proto) return;
    const getParameter = proto.getParameter;
    proto.getParameter = function (parameter) {
      if (parameter === 37445) return 'Google Inc. (Intel)';
      if (parameter === 37446) return 'ANGLE (Intel, Intel(R) UHD Graphics Direct3D11 vs_5_0 ps_5_0, D3D11)';
      return getParameter.call(this, parameter);
    };
  };
  patchWebGL(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
  patchWebGL(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);

  const toDataURL = HTMLCanvasElement.prototype.toDataURL;
  HTMLCanvasElement.prototype.toDataURL = function (...args) {
    if (this.width === 16 && this.height === 16) {
      return 'data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAABAAAAAQCAYAAAAf8/9hAAAAAXNSR0IArs4c6QAAACBJREFUOE9jZKAQMFKon2HUAIbRMGAYDQOG0TBgoHkYAAAkJAAR7Ey0VQAAAABJRU5ErkJggg==';
    }
    return toDataURL.apply(this, args);
  };

  if (!window.chrome) {
    window.chrome = { runtime: {}, loadTimes: () => ({}), csi: () => ({}), app: { isInstalled: false } };
  }

  const query = window.navigator.permissions && window.navigator.permissions.query;
  if (query) {
    window.navigator.permissions.query = (parameters) =>
      parameters && parameters.name === 'notifications'
        ? Promise.resolve({ state: Notification.permission })
        : query(parameters);
  }
})();
"""

CONSENT_STORAGE_SCRIPT = """
(entries) => {
  for (const [key, value] of Object.entries(entries)) {
    try { window.localStorage.setItem(key, value); } catch (e) {}
  }
}
"""


@dataclass(frozen=True)
class IdentityProfile:
    name: str
    user_agent: str
    engines: Tuple[str, ...]
    viewport: Dict[str, int]
    headers: Dict[str, str] = field(default_factory=dict)

    def http_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
            "Accept-Language": ACCEPT_LANGUAGE,
            "Upgrade-Insecure-Requests": "1",
        }
        headers.update(self.headers)
        return headers


_CHROMIUM_FETCH_HEADERS = {
    "sec-fetch-dest": "document",
    "sec-fetch-mode": "navigate",
    "sec-fetch-site": "none",
    "sec-fetch-user": "?1",
}

IDENTITY_PROFILES: Tuple[IdentityProfile, ...] = (
    IdentityProfile(
        name="chrome-windows",
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
        ),
        engines=("chromium",),
        viewport={"width": 1920, "height": 1080},
        headers={
            "sec-ch-ua": '"Not A(Brand";v="99", "Google Chrome";v="121", "Chromium";v="121"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"Windows"',
            **_CHROMIUM_FETCH_HEADERS,
        },
    ),
    IdentityProfile(
        name="chrome-macos",
        user_agent=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
        ),
        engines=("chromium",),
        viewport={"width": 1440, "height": 900},
        headers={
            "sec-ch-ua": '"Not A(Brand";v="99", "Google Chrome";v="121", "Chromium";v="121"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"macOS"',
            **_CHROMIUM_FETCH_HEADERS,
        },
    ),
    IdentityProfile(
        name="edge-windows",
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36 Edg/121.0.0.0"
        ),
        engines=("chromium",),
        viewport={"width": 1536, "height": 864},
        headers={
            "sec-ch-ua": '"Not A(Brand";v="99", "Microsoft Edge";v="121", "Chromium";v="121"',
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"Windows"',
            **_CHROMIUM_FETCH_HEADERS,
        },
    ),
    IdentityProfile(
        name="firefox-windows",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:122.0) Gecko/20100101 Firefox/122.0",
        engines=("firefox",),
        viewport={"width": 1920, "height": 1080},
    ),
    IdentityProfile(
        name="safari-macos",
        user_agent=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.2 Safari/605.1.15"
        ),
        engines=("webkit",),
        viewport={"width": 1440, "height": 900},
    ),
)


@dataclass(frozen=True)
class ConsentStrategy:
    """One way of getting past the consent wall.

    ``kind`` is ``click`` (press one of ``selectors``), ``storage`` (inject
    consent cookies/localStorage and reload) or ``proceed`` (give up and
    continue with the wall in place).
    """

    name: str
    kind: str
    selectors: Tuple[str, ...] = ()


DEFAULT_CONSENT_STRATEGIES: Tuple[ConsentStrategy, ...] = (
    ConsentStrategy(
        "click",
        "click",
        (
            "#onetrust-accept-btn-handler",
            'button[aria-label="accept cookies"]',
            'button:has-text("Akceptuję")',
            'button:has-text("Zgadzam się")',
        ),
    ),
    ConsentStrategy("storage_injection", "storage"),
    ConsentStrategy("proceed_unblocked", "proceed"),
)


@dataclass
class ConsentOutcome:
    handled: bool
    strategy: str
    wall_present: bool
    attempts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handled": self.handled,
            "strategy": self.strategy,
            "wallPresent": self.wall_present,
            "attempts": list(self.attempts),
        }


@dataclass
class PageContext:
    """A fresh browser context and page dressed in one identity profile."""

    context: Any
    page: Any
    profile: IdentityProfile
    location: str

    async def close(self) -> None:
        try:
            await self.context.close()
        except PlaywrightError as exc:
            logger.debug(f"Context already closed: {exc}")


class AntiDetection:
    """Makes browser sessions look like an ordinary Polish desktop visitor."""

    def __init__(
        self,
        config: Dict[str, Any],
        profiles: Sequence[IdentityProfile] = IDENTITY_PROFILES,
        consent_strategies: Sequence[ConsentStrategy] = DEFAULT_CONSENT_STRATEGIES,
        rng: Optional[random.Random] = None,
    ):
        scraping = get_scraping_config(config)
        browser_cfg = get_browser_config(config)

        self.rng = rng or random.Random()
        self.profiles = list(profiles)
        self.rng.shuffle(self.profiles)
        self._rotation = itertools.cycle(self.profiles)
        self.consent_strategies = tuple(consent_strategies)

        self.locale = scraping.get("locale", "pl-PL")
        self.timezone_id = scraping.get("timezone", "Europe/Warsaw")
        self.cookie_domain = scraping.get("cookie_domain", ".otodom.pl")
        self.action_timeout_ms = int(scraping.get("action_timeout_ms", 5000))
        self.navigation_timeout_ms = int(scraping.get("navigation_timeout_ms", 60000))
        self.action_delay_ms = tuple(scraping.get("delay_between_actions_ms", (500, 2000)))
        self.browsing_steps = tuple(scraping.get("browsing_steps", (2, 4)))
        self.min_content_length = int(scraping.get("min_content_length", 5000))
        self.block_resources = set(browser_cfg.get("block_resources", ["image", "font", "media"]) or [])

    # ------------------------------------------------------------------
    # session preparation
    # ------------------------------------------------------------------

    def profile_for(self, session) -> IdentityProfile:
        """Pick the session's identity once; later tasks in the session reuse it."""
        if getattr(session, "identity", None) is not None:
            return session.identity
        engine = getattr(session, "engine", "chromium")
        for _ in range(len(self.profiles)):
            candidate = next(self._rotation)
            if engine in candidate.engines:
                session.identity = candidate
                return candidate
        session.identity = next(self._rotation)
        return session.identity

    async def _route_request(self, route) -> None:
        if route.request.resource_type in self.block_resources:
            await route.abort()
        else:
            await route.continue_()

    async def prepare_session(self, session) -> PageContext:
        profile = self.profile_for(session)
        location, latitude, longitude = self.rng.choice(GEOLOCATIONS)

        context = await session.browser.new_context(
            user_agent=profile.user_agent,
            viewport=profile.viewport,
            locale=self.locale,
            timezone_id=self.timezone_id,
            geolocation={"latitude": latitude, "longitude": longitude},
            permissions=["geolocation"],
            extra_http_headers=profile.http_headers(),
            java_script_enabled=True,
        )
        await context.add_init_script(FINGERPRINT_SCRIPT)
        if self.block_resources:
            await context.route("**/*", self._route_request)

        page = await context.new_page()
        page.set_default_timeout(self.action_timeout_ms)
        page.set_default_navigation_timeout(self.navigation_timeout_ms)
        logger.debug(f"Prepared page with profile {profile.name} near {location}")
        return PageContext(context=context, page=page, profile=profile, location=location)

    # ------------------------------------------------------------------
    # consent wall
    # ------------------------------------------------------------------

    async def consent_wall_visible(self, page) -> bool:
        for selector in CONSENT_WALL.selectors:
            locator = page.locator(selector)
            if await locator.count() == 0:
                continue
            if await locator.first.is_visible():
                return True
        return False

    def _consent_entries(self) -> Dict[str, str]:
        now = datetime.now(timezone.utc)
        consent = urlencode(
            {
                "isGpcEnabled": "0",
                "datestamp": now.strftime("%a %b %d %Y %H:%M:%S GMT+0000"),
                "version": "202401.1.0",
                "isIABGlobal": "false",
                "hosts": "",
                "consentId": str(uuid.uuid4()),
                "interactionCount": "1",
                "landingPath": "NotLandingPage",
                "groups": "C0001:1,C0002:0,C0003:0,C0004:0",
                "geolocation": "PL;14",
                "AwaitingReconsent": "false",
            }
        )
        return {
            "OptanonAlertBoxClosed": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "OptanonConsent": consent,
        }

    async def _apply_consent_strategy(self, page, strategy: ConsentStrategy) -> bool:
        if strategy.kind == "click":
            for selector in strategy.selectors:
                locator = page.locator(selector)
                if await locator.count() == 0:
                    continue
                await locator.first.click(timeout=self.action_timeout_ms)
                await page.wait_for_timeout(self.rng.randint(400, 900))
                return True
            return False

        if strategy.kind == "storage":
            entries = self._consent_entries()
            await page.context.add_cookies(
                [
                    {"name": name, "value": value, "domain": self.cookie_domain, "path": "/"}
                    for name, value in entries.items()
                ]
            )
            await page.evaluate(CONSENT_STORAGE_SCRIPT, entries)
            await page.reload(wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
            return True

        raise ValueError(f"Unknown consent strategy kind: {strategy.kind}")

    async def resolve_consent_wall(self, page) -> ConsentOutcome:
        """Try each consent strategy in order until the wall is gone.

        Never raises: an unresolved wall is reported through the outcome and
        extraction continues best-effort.
        """
        try:
            if not await self.consent_wall_visible(page):
                return ConsentOutcome(handled=True, strategy="no_wall", wall_present=False)
        except PlaywrightError as exc:
            logger.debug(f"Consent wall check failed: {exc}")
            return ConsentOutcome(handled=False, strategy="proceed_unblocked", wall_present=False, attempts=["check"])

        attempts: List[str] = []
        for strategy in self.consent_strategies:
            attempts.append(strategy.name)
            if strategy.kind == "proceed":
                break
            try:
                applied = await self._apply_consent_strategy(page, strategy)
                if applied and not await self.consent_wall_visible(page):
                    logger.info(f"Consent wall dismissed via {strategy.name}")
                    return ConsentOutcome(handled=True, strategy=strategy.name, wall_present=True, attempts=attempts)
            except Exception as exc:
                logger.debug(f"Consent strategy {strategy.name} failed: {exc}")

        logger.warning("Consent wall not dismissed, continuing with wall in place")
        return ConsentOutcome(handled=False, strategy="proceed_unblocked", wall_present=True, attempts=attempts)

    # ------------------------------------------------------------------
    # human noise
    # ------------------------------------------------------------------

    async def pause(self, page, delay_range_ms: Optional[Sequence[int]] = None) -> None:
        low, high = delay_range_ms or self.action_delay_ms
        await page.wait_for_timeout(self.rng.randint(int(low), int(high)))

    async def simulate_browsing(self, page) -> None:
        """A few random scrolls, pointer moves and hovers. Errors are only logged."""
        steps = self.rng.randint(*self.browsing_steps)
        for _ in range(steps):
            action = self.rng.choice(("scroll", "move", "hover"))
            try:
                if action == "scroll":
                    await page.mouse.wheel(0, self.rng.randint(250, 900))
                elif action == "move":
                    viewport = page.viewport_size or {"width": 1366, "height": 768}
                    await page.mouse.move(
                        self.rng.randint(0, viewport["width"] - 1),
                        self.rng.randint(0, viewport["height"] - 1),
                        steps=self.rng.randint(5, 20),
                    )
                else:
                    cards = page.locator(LISTING_CARD.selectors[0])
                    total = await cards.count()
                    if total:
                        await cards.nth(self.rng.randrange(min(total, 10))).hover(timeout=self.action_timeout_ms)
                await self.pause(page)
            except Exception as exc:
                logger.debug(f"Browsing simulation step '{action}' failed: {exc}")

    # ------------------------------------------------------------------
    # block detection
    # ------------------------------------------------------------------

    async def block_reason(self, page) -> Optional[str]:
        """Why the page looks like a block page, or None."""
        title = (await page.title() or "").lower()
        try:
            body = (await page.locator("body").first.inner_text(timeout=self.action_timeout_ms) or "").lower()
        except PlaywrightTimeout:
            body = ""
        combined = f"{title} {body}"
        for marker in BLOCK_MARKERS:
            if marker in combined:
                return f"marker:{marker}"
        for marker in TITLE_BLOCK_MARKERS:
            if marker in title:
                return f"marker:{marker}"
        for selector in CHALLENGE_SELECTORS:
            challenge = page.locator(selector)
            if await challenge.count() and await challenge.first.is_visible():
                return f"challenge:{selector}"

        html = await page.content()
        if len(html) < self.min_content_length:
            return f"small_content:{len(html)}"

        if await page.locator(MAIN_CONTENT).count() == 0:
            return "missing_main_content"
        return None

    async def detect_block(self, page) -> bool:
        reason = await self.block_reason(page)
        if reason:
            logger.warning(f"Block detected on {page.url}: {reason}")
        return reason is not None
