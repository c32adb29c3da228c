"""Top-level scrape loop: dequeue, browse, extract, paginate, report."""

import asyncio
import random
from typing import Any, Dict, List, Optional

from loguru import logger
from playwright.async_api import TimeoutError as PlaywrightTimeout
from sqlalchemy.exc import SQLAlchemyError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from otodom_tracker.browser_session import BrowserSessionManager
from otodom_tracker.config_loader import get_scraping_config
from otodom_tracker.errors import (
    SESSION_FATAL_ERRORS,
    BotDetectedError,
    ErrorType,
    MemoryLimitExceededError,
    NavigationFailedError,
    TaskTimeoutError,
    classify_error,
    is_retriable,
)
from otodom_tracker.extraction import ListingExtractor
from otodom_tracker.results import AggregateResult
from otodom_tracker.stealth import AntiDetection
from otodom_tracker.task_queue import ScrapeTask, TargetDescriptor, TaskQueue, TaskStatus

SEARCH_QUERY = (
    "limit={limit}&ownerTypeSingleSelect=ALL&roomsNumber=%5B{rooms}%5D"
    "&by=DEFAULT&direction=DESC&viewType=listing"
)

URL_PATTERNS = (
    "{base}/pl/wyniki/sprzedaz/mieszkanie/{city}/{slug}?{query}",
    "{base}/pl/oferty/sprzedaz/mieszkanie/{city}/{slug}?{query}",
    "{base}/pl/oferty/sprzedaz/mieszkanie?locations%5B0%5D={city}-{slug}&{query}",
)


def build_search_urls(base_url: str, target: TargetDescriptor, page_size: int = 72) -> List[str]:
    """Candidate result-page URLs for a target, most current layout first."""
    query = SEARCH_QUERY.format(limit=page_size, rooms=target.room_type.rooms_number)
    base = base_url.rstrip("/")
    return [
        pattern.format(base=base, city=target.city, slug=target.search_slug, query=query)
        for pattern in URL_PATTERNS
    ]


class ScrapeOrchestrator:
    """Runs queued tasks one at a time against a shared browser session."""

    def __init__(
        self,
        config: Dict[str, Any],
        queue: TaskQueue,
        sessions: Optional[BrowserSessionManager] = None,
        stealth: Optional[AntiDetection] = None,
        extractor: Optional[ListingExtractor] = None,
        storage=None,
        headless: Optional[bool] = None,
        rng: Optional[random.Random] = None,
    ):
        scraping = get_scraping_config(config)
        self.config = config
        self.queue = queue
        self.sessions = sessions or BrowserSessionManager(config, headless=headless)
        self.stealth = stealth or AntiDetection(config)
        self.extractor = extractor or ListingExtractor(config)
        self.storage = storage
        self.rng = rng or random.Random()

        self.base_url = scraping.get("base_url", "https://www.otodom.pl")
        self.page_size = int(scraping.get("page_size", 72))
        self.max_pages_per_task = int(scraping.get("max_pages_per_task", 20))
        self.task_timeout_seconds = float(scraping.get("task_timeout_seconds", 600))
        self.navigation_timeout_ms = int(scraping.get("navigation_timeout_ms", 60000))
        self.navigation_backoff = float(scraping.get("navigation_backoff_seconds", 1))
        self.delay_after_load_ms = tuple(scraping.get("delay_after_load_ms", (2000, 5000)))
        self.delay_between_tasks_ms = tuple(scraping.get("delay_between_tasks_ms", (3000, 8000)))
        self.max_idle_wait_seconds = float(scraping.get("max_idle_wait_seconds", 30))

    # ------------------------------------------------------------------
    # single task
    # ------------------------------------------------------------------

    async def navigate_to_results(self, page, urls: List[str]) -> str:
        """Open the first URL candidate that loads; timeouts move on to the next one."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(len(urls)),
            wait=wait_exponential(multiplier=self.navigation_backoff, min=0, max=10),
            retry=retry_if_exception_type((PlaywrightTimeout, NavigationFailedError)),
            reraise=True,
        ):
            with attempt:
                url = urls[attempt.retry_state.attempt_number - 1]
                logger.info(f"Navigating to {url}")
                response = await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
                status = response.status if response is not None else None
                if status is not None and status >= 400 and status not in (403, 429):
                    raise NavigationFailedError(f"navigation to {url} returned HTTP {status}")
                return page.url

    async def run_task(self, task: ScrapeTask, aggregate: AggregateResult) -> AggregateResult:
        """Scrape every result page of one task into ``aggregate``.

        Raises on anything that should fail or retry the task; expected
        conditions (no listings, consent wall left in place) only land in
        the diagnostics.
        """
        target = task.target
        session = await self.sessions.acquire_session()
        aggregate.diagnostics["engine"] = session.engine
        page_context = await self.stealth.prepare_session(session)
        page = page_context.page
        try:
            urls = build_search_urls(self.base_url, target, self.page_size)
            aggregate.diagnostics["url"] = await self.navigate_to_results(page, urls)
            self.sessions.record_page()
            await self.stealth.pause(page, self.delay_after_load_ms)

            consent = await self.stealth.resolve_consent_wall(page)
            aggregate.diagnostics["consent"] = consent.to_dict()
            if not consent.handled:
                aggregate.record_error(ErrorType.COOKIE_NOT_ACCEPTED.value)

            reason = await self.stealth.block_reason(page)
            if reason:
                aggregate.diagnostics["botDetected"] = True
                aggregate.diagnostics["blockReason"] = reason
                raise BotDetectedError(f"Bot detection triggered: {reason}")

            first = await self.extractor.extract_page(page, target, page_number=1)
            aggregate.add_page(first)
            if not first.listings:
                aggregate.record_error(ErrorType.NO_LISTINGS_FOUND.value)
                return aggregate

            page_number = 1
            while page_number < self.max_pages_per_task and await self.extractor.has_next_page(
                page, page_number, aggregate.reported_count
            ):
                if self.sessions.memory_critical():
                    raise MemoryLimitExceededError(f"Memory usage critical after page {page_number}")
                await self.stealth.simulate_browsing(page)
                if not await self.extractor.go_to_next_page(page, page_number):
                    break
                page_number += 1
                self.sessions.record_page()
                await self.stealth.pause(page, self.delay_after_load_ms)
                aggregate.add_page(await self.extractor.extract_page(page, target, page_number=page_number))

            if page_number >= self.max_pages_per_task:
                logger.info(f"{target.label}: stopped at page cap ({self.max_pages_per_task})")
            return aggregate
        finally:
            await page_context.close()
            self.sessions.release_browsing()

    def _persist(self, task: ScrapeTask, result: Dict[str, Any]) -> None:
        if self.storage is None:
            return
        target = task.target
        try:
            self.storage.save_aggregate(
                city=target.city,
                district=target.district,
                result=result,
                room_type=target.room_type.value,
                fetch_date=target.fetch_date,
            )
        except SQLAlchemyError as exc:
            logger.error(f"Could not persist aggregate for {target.label}: {exc}")
            result["diagnostics"]["errors"].append(f"storage: {exc}")

    def _handle_failure(self, task: ScrapeTask, aggregate: AggregateResult, exc: BaseException) -> ScrapeTask:
        error_type = classify_error(exc)
        aggregate.record_error(f"{error_type.value}: {exc}")
        if error_type == ErrorType.UNKNOWN_ERROR:
            logger.opt(exception=exc).error(f"Unexpected failure in {task.target.label}")
        if error_type in SESSION_FATAL_ERRORS:
            self.sessions.invalidate(error_type.value)

        result = aggregate.finalize()
        if is_retriable(error_type):
            return self.queue.retry(task.id, exc, error_type, result=result)
        return self.queue.fail(task.id, exc, error_type, result=result)

    async def process_next(self) -> Optional[ScrapeTask]:
        """Run the next eligible task to a COMPLETED, RETRY or FAILED state."""
        task = self.queue.dequeue_next()
        if task is None:
            return None

        aggregate = AggregateResult()
        try:
            await asyncio.wait_for(self.run_task(task, aggregate), timeout=self.task_timeout_seconds)
        except asyncio.TimeoutError:
            self.sessions.invalidate("task timeout")
            return self._handle_failure(
                task, aggregate, TaskTimeoutError(f"Task timeout after {self.task_timeout_seconds:.0f}s")
            )
        except Exception as exc:
            return self._handle_failure(task, aggregate, exc)

        result = aggregate.finalize()
        self._persist(task, result)
        return self.queue.complete(task.id, result)

    # ------------------------------------------------------------------
    # loop
    # ------------------------------------------------------------------

    async def run_until_empty(self, max_tasks: Optional[int] = None) -> Dict[str, int]:
        """Drain the queue, sleeping through retry backoffs while work remains."""
        summary = {"processed": 0, "completed": 0, "retried": 0, "failed": 0}
        while max_tasks is None or summary["processed"] < max_tasks:
            task = await self.process_next()
            if task is None:
                if self.queue.current_task is not None:
                    logger.warning("Another task holds the in-progress slot, stopping")
                    break
                wait = self.queue.seconds_until_eligible()
                if wait is None:
                    break
                wait = min(max(wait, 0.1), self.max_idle_wait_seconds)
                logger.info(f"Waiting {wait:.1f}s for retry backoff")
                await asyncio.sleep(wait)
                continue

            summary["processed"] += 1
            if task.status == TaskStatus.COMPLETED:
                summary["completed"] += 1
            elif task.status == TaskStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["retried"] += 1

            if self.queue.has_work():
                low, high = self.delay_between_tasks_ms
                await asyncio.sleep(self.rng.randint(int(low), int(high)) / 1000)

        logger.info(
            f"Queue run finished: {summary['processed']} processed, {summary['completed']} completed, "
            f"{summary['retried']} retried, {summary['failed']} failed"
        )
        return summary

    async def close(self) -> None:
        await self.sessions.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def run_queue(
    config_path: Optional[str] = None,
    max_tasks: Optional[int] = None,
    headless: Optional[bool] = None,
) -> Dict[str, Any]:
    """Drain the persisted queue with a fresh orchestrator and return a run summary."""
    from otodom_tracker.config_loader import load_config
    from otodom_tracker.models import get_engine, get_session_factory, init_db
    from otodom_tracker.repositories import AggregateRepository

    config = load_config(config_path)
    engine = get_engine(config)
    init_db(engine)
    session_factory = get_session_factory(engine)
    session = session_factory()
    queue = TaskQueue.from_config(config, session_factory=session_factory)

    async def _run() -> Dict[str, int]:
        orchestrator = ScrapeOrchestrator(
            config,
            queue,
            storage=AggregateRepository(session),
            headless=headless,
        )
        async with orchestrator:
            return await orchestrator.run_until_empty(max_tasks=max_tasks)

    try:
        summary: Dict[str, Any] = dict(asyncio.run(_run()))
    finally:
        session.close()

    summary["queue"] = queue.status()
    summary["statistics"] = queue.statistics()
    return summary
