"""Ownership and health of the single live browser engine."""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import psutil
from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from otodom_tracker.config_loader import get_browser_config
from otodom_tracker.errors import BrowserLaunchError

DEFAULT_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--lang=pl-PL",
]

DEFAULT_ENGINES = [
    {"name": "chromium"},
    {"name": "chromium", "channel": "chrome"},
    {"name": "firefox"},
    {"name": "webkit"},
]


def process_tree_memory_mb() -> float:
    """RSS of every child process: the Playwright driver and the browsers it spawned."""
    total = 0
    for proc in psutil.Process().children(recursive=True):
        try:
            total += proc.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return total / 1024 / 1024


@dataclass
class BrowserSession:
    browser: Any
    engine: str
    created_at: float
    pages_served: int = 0
    identity: Any = None
    invalidated: Optional[str] = None

    def __repr__(self):
        return f"<BrowserSession(engine='{self.engine}', pages={self.pages_served}, created_at={self.created_at})>"


class BrowserSessionManager:
    """Launches, health-checks and recycles the one browser session.

    Usage is serialized: one task at a time borrows the session between
    ``acquire_session`` and ``release_browsing``.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        headless: Optional[bool] = None,
        playwright_factory: Callable[[], Any] = async_playwright,
        memory_reader: Callable[[], float] = process_tree_memory_mb,
        clock: Callable[[], float] = time.time,
    ):
        browser_cfg = get_browser_config(config)
        self.headless = headless if headless is not None else bool(browser_cfg.get("headless", True))
        self.engines: List[Dict[str, Any]] = list(browser_cfg.get("engines") or DEFAULT_ENGINES)
        self.launch_args: List[str] = list(browser_cfg.get("launch_args") or DEFAULT_LAUNCH_ARGS)
        self.launch_timeout_ms = int(browser_cfg.get("launch_timeout_ms", 60000))
        self.memory_warning_mb = float(browser_cfg.get("memory_warning_mb", 1024))
        self.memory_critical_mb = float(browser_cfg.get("memory_critical_mb", 1536))
        self.max_pages_per_session = int(browser_cfg.get("max_pages_per_session", 10))
        self.max_session_seconds = float(browser_cfg.get("max_session_seconds", 900))

        self._playwright_factory = playwright_factory
        self._memory_reader = memory_reader
        self._clock = clock
        self._playwright_cm = None
        self._playwright = None
        self._session: Optional[BrowserSession] = None
        self.sessions_created = 0

    @property
    def session(self) -> Optional[BrowserSession]:
        return self._session

    async def _ensure_playwright(self):
        if self._playwright is None:
            self._playwright_cm = self._playwright_factory()
            self._playwright = await self._playwright_cm.start()
        return self._playwright

    async def _launch(self) -> BrowserSession:
        playwright = await self._ensure_playwright()
        failures = []
        for candidate in self.engines:
            name = candidate.get("name", "chromium")
            options: Dict[str, Any] = {"headless": self.headless, "timeout": self.launch_timeout_ms}
            if name == "chromium":
                options["args"] = self.launch_args
            if candidate.get("channel"):
                options["channel"] = candidate["channel"]
            label = f"{name}:{candidate['channel']}" if candidate.get("channel") else name
            try:
                browser = await getattr(playwright, name).launch(**options)
            except PlaywrightError as exc:
                logger.warning(f"Browser engine {label} failed to launch: {exc}")
                failures.append(f"{label}: {exc}")
                continue
            self.sessions_created += 1
            session = BrowserSession(browser=browser, engine=name, created_at=self._clock())
            logger.info(f"Launched browser session #{self.sessions_created} using {label} (headless={self.headless})")
            return session
        raise BrowserLaunchError("browser crashed: no candidate engine launched (" + "; ".join(failures) + ")")

    async def acquire_session(self) -> BrowserSession:
        """Return the live session, recycling it first if it is unhealthy."""
        if self._session is not None and self.check_health():
            return self._session
        await self._teardown()
        self._session = await self._launch()
        return self._session

    def release_browsing(self) -> None:
        """End the current task's use of the session; the session itself stays up."""
        if self._session is not None:
            logger.debug(f"Released {self._session!r}")

    def record_page(self, count: int = 1) -> None:
        if self._session is not None:
            self._session.pages_served += count

    def invalidate(self, reason: str) -> None:
        """Force the next ``acquire_session`` to launch a fresh engine."""
        if self._session is not None and not self._session.invalidated:
            self._session.invalidated = reason
            logger.warning(f"Browser session marked for recycling: {reason}")

    def memory_usage_mb(self) -> float:
        return float(self._memory_reader())

    def memory_critical(self) -> bool:
        return self.memory_usage_mb() > self.memory_critical_mb

    def check_health(self) -> bool:
        """False when the session should be recycled before its next use."""
        session = self._session
        if session is None:
            return False
        if session.invalidated:
            return False

        is_connected = getattr(session.browser, "is_connected", None)
        if callable(is_connected) and not is_connected():
            logger.warning("Browser disconnected, session unhealthy")
            return False

        memory_mb = self.memory_usage_mb()
        if memory_mb > self.memory_critical_mb:
            logger.error(f"Memory usage critical: {memory_mb:.0f}MB > {self.memory_critical_mb:.0f}MB")
            return False
        if memory_mb > self.memory_warning_mb:
            logger.warning(f"Memory usage high: {memory_mb:.0f}MB (warning at {self.memory_warning_mb:.0f}MB)")

        if session.pages_served > self.max_pages_per_session:
            logger.info(f"Session served {session.pages_served} pages, recycling")
            return False

        age = self._clock() - session.created_at
        if age > self.max_session_seconds:
            logger.info(f"Session age {age:.0f}s exceeds {self.max_session_seconds:.0f}s, recycling")
            return False
        return True

    async def _teardown(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            await session.browser.close()
        except PlaywrightError as exc:
            logger.debug(f"Browser close raised (already gone?): {exc}")
        logger.info(f"Closed browser session ({session.engine}, {session.pages_served} pages)")

    async def close(self) -> None:
        await self._teardown()
        if self._playwright is not None:
            await self._playwright.stop()
        self._playwright_cm = None
        self._playwright = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
