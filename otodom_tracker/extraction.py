"""Listing extraction from Otodom search result pages.

Selectors live in ordered tables: the first selector that yields something
wins, and new fallbacks are added by extending a table (or the
``scraping.selectors`` config section), never by touching parsing logic.
Every number read from the page is validated against configured ranges
before it is kept.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Pattern, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from otodom_tracker.config_loader import get_scraping_config
from otodom_tracker.results import ExtractedListing, PageExtractionResult, round_half_up

NUMBER_TOKEN = r"\d{1,3}(?:[ \u00a0\u202f]\d{3})+|\d+"

PRICE_PATTERN = re.compile(r"(\d[\d \u00a0\u202f]*(?:[.,]\d+)?)\s*zł(?!\s*/)", re.IGNORECASE)
AREA_PATTERN = re.compile(r"(\d[\d \u00a0\u202f]*(?:[.,]\d+)?)\s*m(?:²|2\b)", re.IGNORECASE)
REPORTED_COUNT_PATTERNS = (
    re.compile(rf"({NUMBER_TOKEN})\s*ogłosz", re.IGNORECASE),
    re.compile(rf"znaleziono\D{{0,20}}?({NUMBER_TOKEN})", re.IGNORECASE),
    re.compile(rf"({NUMBER_TOKEN})\s*ofert", re.IGNORECASE),
    re.compile(rf"({NUMBER_TOKEN})\s*mieszka", re.IGNORECASE),
    re.compile(rf"({NUMBER_TOKEN})"),
)
NO_PRICE_MARKERS = ("zapytaj o cenę", "zapytaj o cene")


@dataclass(frozen=True)
class SelectorTable:
    """Ordered selectors for one field, plus an optional regex over card text."""

    field: str
    selectors: Tuple[str, ...]
    text_pattern: Optional[Pattern] = None

    def with_overrides(self, extra: Optional[Iterable[str]]) -> "SelectorTable":
        if not extra:
            return self
        if isinstance(extra, str):
            extra = [extra]
        merged = [s for s in extra if s] + [s for s in self.selectors if s not in extra]
        return SelectorTable(self.field, tuple(merged), self.text_pattern)


REPORTED_COUNT = SelectorTable(
    "reported_count",
    (
        '[data-cy="search.listing-panel.label.ads-number"]',
        '[data-cy="search.listing-panel.label"]',
        '[data-cy="search-listing.status.header"]',
        "h1",
    ),
)
LISTING_CARD = SelectorTable(
    "card",
    (
        '[data-cy="listing-item"]',
        '[data-testid="listing-item"]',
        "article[data-cy]",
        '[data-cy="search.listing.organic"] li',
        "article",
    ),
)
PRICE = SelectorTable(
    "price",
    (
        '[data-cy="listing-item-price"]',
        'span[data-sentry-element="MainPrice"]',
        'span[aria-label*="price"]',
    ),
    PRICE_PATTERN,
)
AREA = SelectorTable(
    "area",
    (
        '[data-cy="listing-item-area"]',
        'span[aria-label*="powierzchnia"]',
        'span[aria-label*="area"]',
        'div[data-testid="additional-information"] span:nth-child(1)',
    ),
    AREA_PATTERN,
)
NEXT_PAGE = SelectorTable(
    "next_page",
    (
        '[data-cy="pagination.next-page"]',
        'a[rel="next"]',
        'button[aria-label*="next"]',
        'button:has-text("Następna")',
    ),
)
CONSENT_WALL = SelectorTable(
    "consent_wall",
    (
        "#onetrust-banner-sdk",
        "#onetrust-consent-sdk",
        '[data-cy="cookie-consent"]',
    ),
)
MAIN_CONTENT = 'main, [data-cy="search.listing"], [data-cy="search.listing.organic"]'


def is_closed_target_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return "target page, context or browser has been closed" in text or "target closed" in text


def parse_locale_number(text: Optional[str]) -> Optional[float]:
    """Parse Polish/English formatted numbers: ``1 234 567``, ``54,5``, ``1.234,50``."""
    if not text:
        return None
    cleaned = re.sub(r"[^0-9,.]", "", text)
    if not any(ch.isdigit() for ch in cleaned):
        return None

    if "," in cleaned and "." in cleaned:
        decimal_sep = "," if cleaned.rfind(",") > cleaned.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        cleaned = cleaned.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif cleaned.count(",") > 1:
        cleaned = cleaned.replace(",", "")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")
    else:
        cleaned = cleaned.replace(",", ".")

    cleaned = cleaned.strip(".")
    try:
        value = float(cleaned)
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def parse_price(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    if any(marker in text.lower() for marker in NO_PRICE_MARKERS):
        return None
    match = PRICE_PATTERN.search(text)
    value = parse_locale_number(match.group(1) if match else text)
    return round_half_up(value) if value is not None else None


def parse_area(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = AREA_PATTERN.search(text)
    return parse_locale_number(match.group(1) if match else text)


def parse_reported_count(text: Optional[str]) -> Optional[int]:
    """Total ads the site claims for the search, from its summary text."""
    if not text:
        return None
    for pattern in REPORTED_COUNT_PATTERNS:
        match = pattern.search(text)
        if match:
            digits = re.sub(r"\D", "", match.group(1))
            if digits:
                return int(digits)
    return None


def with_page_param(url: str, page_number: int) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "page"]
    query.append(("page", str(page_number)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class ListingExtractor:
    """Pulls price/area pairs and the reported total out of a results page."""

    def __init__(self, config: Dict[str, Any]):
        scraping = get_scraping_config(config)
        overrides = scraping.get("selectors", {}) or {}

        self.reported_count_table = REPORTED_COUNT.with_overrides(overrides.get("reported_count"))
        self.card_table = LISTING_CARD.with_overrides(overrides.get("card"))
        self.price_table = PRICE.with_overrides(overrides.get("price"))
        self.area_table = AREA.with_overrides(overrides.get("area"))
        self.next_page_table = NEXT_PAGE.with_overrides(overrides.get("next_page"))

        ranges = scraping.get("valid_ranges", {}) or {}
        self.price_range = tuple(ranges.get("price", (50_000, 10_000_000)))
        self.area_range = tuple(ranges.get("area", (10, 1000)))

        self.quick_timeout_ms = int(scraping.get("quick_selector_timeout_ms", 1500))
        self.action_timeout_ms = int(scraping.get("action_timeout_ms", 5000))
        self.navigation_timeout_ms = int(scraping.get("navigation_timeout_ms", 60000))
        self.page_size = int(scraping.get("page_size", 72))

    # ------------------------------------------------------------------
    # low-level helpers
    # ------------------------------------------------------------------

    async def _inner_text(self, locator) -> Optional[str]:
        try:
            text = await locator.inner_text(timeout=self.quick_timeout_ms)
        except PlaywrightTimeout:
            return None
        except PlaywrightError as exc:
            if is_closed_target_error(exc):
                raise
            return None
        text = (text or "").strip()
        return text or None

    async def _first_text(self, root, selectors: Iterable[str]) -> Tuple[Optional[str], Optional[str]]:
        for selector in selectors:
            locator = root.locator(selector)
            if await locator.count() == 0:
                continue
            text = await self._inner_text(locator.first)
            if text:
                return text, selector
        return None, None

    @staticmethod
    def _from_card_text(card_text: Optional[str], table: SelectorTable, parser):
        if not card_text or table.text_pattern is None:
            return None
        match = table.text_pattern.search(card_text)
        return parser(match.group(1)) if match else None

    def _price_in_range(self, price: Optional[int]) -> bool:
        return price is not None and self.price_range[0] <= price <= self.price_range[1]

    def _area_in_range(self, area: Optional[float]) -> bool:
        return area is not None and self.area_range[0] <= area <= self.area_range[1]

    # ------------------------------------------------------------------
    # page-level extraction
    # ------------------------------------------------------------------

    async def read_reported_count(self, page) -> int:
        for selector in self.reported_count_table.selectors:
            locator = page.locator(selector)
            if await locator.count() == 0:
                continue
            count = parse_reported_count(await self._inner_text(locator.first))
            if count is not None:
                return count
        return 0

    async def locate_cards(self, page) -> Tuple[Optional[Any], Optional[str], Dict[str, int]]:
        """Return the card locator of the first selector with matches."""
        counts: Dict[str, int] = {}
        chosen = None
        chosen_selector = None
        for selector in self.card_table.selectors:
            locator = page.locator(selector)
            counts[selector] = await locator.count()
            if chosen is None and counts[selector] > 0:
                chosen = locator
                chosen_selector = selector
        return chosen, chosen_selector, counts

    async def cards_present(self, page) -> bool:
        for selector in self.card_table.selectors:
            if await page.locator(selector).count() > 0:
                return True
        return False

    async def parse_card(self, card) -> Tuple[Optional[ExtractedListing], Optional[str]]:
        """Parse one card; returns ``(listing, None)`` or ``(None, reason)``."""
        card_text: Optional[str] = None

        price_text, _ = await self._first_text(card, self.price_table.selectors)
        price = parse_price(price_text)
        asked_for_price = bool(price_text) and any(m in price_text.lower() for m in NO_PRICE_MARKERS)
        if price is None and not asked_for_price:
            card_text = await self._inner_text(card)
            price = self._from_card_text(card_text, self.price_table, parse_price)

        area_text, _ = await self._first_text(card, self.area_table.selectors)
        area = parse_area(area_text)
        if area is None:
            if card_text is None:
                card_text = await self._inner_text(card)
            area = self._from_card_text(card_text, self.area_table, parse_locale_number)

        if price is None:
            return None, "no_price"
        if not self._price_in_range(price):
            return None, "price_out_of_range"
        if area is None:
            return None, "no_area"
        if not self._area_in_range(area):
            return None, "area_out_of_range"
        return ExtractedListing.build(price, area), None

    async def extract_page(self, page, target=None, page_number: int = 1) -> PageExtractionResult:
        """Extract every valid listing on the currently loaded results page."""
        result = PageExtractionResult(page_number=page_number, url=page.url)
        result.reported_count = await self.read_reported_count(page)

        for selector in CONSENT_WALL.selectors:
            if await page.locator(selector).count() > 0:
                result.consent_wall_present = True
                break

        cards, selector, counts = await self.locate_cards(page)
        result.card_strategy = selector
        result.element_counts = counts
        if cards is None:
            logger.info(f"No listing cards on page {page_number} ({page.url})")
            return result

        total = await cards.count()
        result.cards_seen = total
        reasons: Dict[str, int] = {}
        for index in range(total):
            listing, reason = await self.parse_card(cards.nth(index))
            if listing is None:
                reasons[reason] = reasons.get(reason, 0) + 1
                continue
            result.listings.append(listing)
        result.rejected = total - len(result.listings)

        label = target.label if target is not None else page.url
        logger.info(
            f"Page {page_number} of {label}: {len(result.listings)}/{total} listings via {selector}"
            f" (reported={result.reported_count})"
        )
        if reasons:
            logger.debug(f"Rejected cards on page {page_number}: {reasons}")
        return result

    # ------------------------------------------------------------------
    # pagination
    # ------------------------------------------------------------------

    async def _enabled_next_control(self, page):
        for selector in self.next_page_table.selectors:
            locator = page.locator(selector)
            if await locator.count() == 0:
                continue
            control = locator.first
            disabled = await control.get_attribute("disabled")
            aria_disabled = await control.get_attribute("aria-disabled")
            if disabled is not None or (aria_disabled or "").lower() == "true":
                continue
            return control, selector
        return None, None

    async def has_next_page(self, page, page_number: int = 1, reported_count: int = 0) -> bool:
        control, _ = await self._enabled_next_control(page)
        if control is not None:
            return True
        return bool(reported_count) and page_number * self.page_size < reported_count

    async def go_to_next_page(self, page, page_number: int = 1) -> bool:
        """Advance from ``page_number`` to the following results page.

        Tries the "next" control first and falls back to setting the
        ``page`` query parameter. Success means the URL changed and cards
        are present afterwards.
        """
        before = page.url
        control, selector = await self._enabled_next_control(page)
        if control is not None:
            try:
                await control.click(timeout=self.action_timeout_ms)
                await page.wait_for_load_state("domcontentloaded", timeout=self.navigation_timeout_ms)
                if page.url != before and await self.cards_present(page):
                    return True
                logger.debug(f"Click on {selector} did not advance pagination")
            except PlaywrightTimeout:
                logger.warning(f"Timed out clicking {selector}, falling back to URL navigation")
            except PlaywrightError as exc:
                if is_closed_target_error(exc):
                    raise
                logger.warning(f"Next-page click failed ({exc}), falling back to URL navigation")

        target_url = with_page_param(before, page_number + 1)
        await page.goto(target_url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        if page.url != before and await self.cards_present(page):
            return True
        logger.info(f"Pagination stopped after page {page_number}: {target_url} has no listings")
        return False
