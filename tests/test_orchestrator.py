"""Orchestrator tests with fake browser, anti-detection and extraction collaborators."""

import asyncio
import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace

from playwright.async_api import TimeoutError as PlaywrightTimeout
from sqlalchemy.exc import OperationalError

sys.path.insert(0, str(Path(__file__).parent.parent))

from otodom_tracker.models import DistrictAggregate, get_engine, get_session_factory, init_db
from otodom_tracker.orchestrator import ScrapeOrchestrator, build_search_urls
from otodom_tracker.repositories import AggregateRepository
from otodom_tracker.results import AggregateResult, ExtractedListing, PageExtractionResult
from otodom_tracker.stealth import ConsentOutcome
from otodom_tracker.task_queue import RoomType, TargetDescriptor, TaskQueue, TaskStatus

CONFIG = {
    "scraping": {
        "base_url": "https://www.otodom.pl",
        "delay_after_load_ms": [0, 0],
        "delay_between_tasks_ms": [0, 0],
        "navigation_backoff_seconds": 0,
        "max_idle_wait_seconds": 0.01,
        "task_timeout_seconds": 5,
        "max_pages_per_task": 20,
    }
}


class FakePage:
    def __init__(self, fail_first=0, status=200):
        self.url = "about:blank"
        self.fail_first = fail_first
        self.status = status
        self.visited = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        if len(self.visited) <= self.fail_first:
            raise PlaywrightTimeout(f"Timeout {timeout}ms exceeded navigating to {url}")
        self.url = url
        return SimpleNamespace(status=self.status)


class FakePageContext:
    def __init__(self, page):
        self.page = page
        self.closed = False

    async def close(self):
        self.closed = True


class FakeSessions:
    def __init__(self, critical=False):
        self.critical = critical
        self.pages = 0
        self.invalidated = []
        self.released = 0
        self.closed = False

    async def acquire_session(self):
        return SimpleNamespace(engine="chromium", browser=None, identity=None)

    def record_page(self, count=1):
        self.pages += count

    def release_browsing(self):
        self.released += 1

    def memory_critical(self):
        return self.critical

    def invalidate(self, reason):
        self.invalidated.append(reason)

    async def close(self):
        self.closed = True


class FakeStealth:
    def __init__(self, page, block=None, consent=None):
        self.page = page
        self.block = block
        self.consent = consent or ConsentOutcome(handled=True, strategy="no_wall", wall_present=False)
        self.contexts = []
        self.browsed = 0

    async def prepare_session(self, session):
        context = FakePageContext(self.page)
        self.contexts.append(context)
        return context

    async def pause(self, page, delay_range_ms=None):
        return None

    async def resolve_consent_wall(self, page):
        return self.consent

    async def block_reason(self, page):
        return self.block

    async def simulate_browsing(self, page):
        self.browsed += 1


class FakeExtractor:
    def __init__(self, pages, delay=0.0):
        self.pages = pages
        self.delay = delay

    async def extract_page(self, page, target=None, page_number=1):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.pages[page_number - 1]

    async def has_next_page(self, page, page_number=1, reported_count=0):
        return page_number < len(self.pages)

    async def go_to_next_page(self, page, page_number=1):
        return True


class FakeStorage:
    def __init__(self, error=None):
        self.saved = []
        self.error = error

    def save_aggregate(self, **kwargs):
        if self.error:
            raise self.error
        self.saved.append(kwargs)


def open_database(directory):
    engine = get_engine({"storage": {"backend": "sqlite", "sqlite": {"database_path": str(Path(directory) / "tracker.db")}}})
    init_db(engine)
    return engine, get_session_factory(engine)


def page_result(*pairs, reported=0, number=1):
    return PageExtractionResult(
        listings=[ExtractedListing.build(price, area) for price, area in pairs],
        reported_count=reported,
        page_number=number,
        card_strategy='[data-cy="listing-item"]',
    )


class TestBuildSearchUrls(unittest.TestCase):
    def test_candidates(self):
        target = TargetDescriptor("warszawa", "Mokotów", "mokotow", RoomType.THREE_ROOM, "2026-03-01")
        urls = build_search_urls("https://www.otodom.pl/", target, page_size=72)
        self.assertEqual(len(urls), 3)
        self.assertTrue(urls[0].startswith("https://www.otodom.pl/pl/wyniki/sprzedaz/mieszkanie/warszawa/mokotow?"))
        self.assertIn("roomsNumber=%5BTHREE%5D", urls[0])
        self.assertIn("limit=72", urls[0])
        self.assertIn("locations%5B0%5D=warszawa-mokotow", urls[2])


class TestScrapeOrchestrator(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.engine, Session = open_database(self.tmp)
        self.queue = TaskQueue(Session)
        self.task = self.queue.enqueue(
            TargetDescriptor("warszawa", "Mokotów", "mokotow", RoomType.TWO_ROOM, "2026-03-01")
        )

    def tearDown(self):
        self.engine.dispose()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def make_orchestrator(self, page, pages, storage=None, block=None, sessions=None, config=None, delay=0.0):
        self.sessions = sessions or FakeSessions()
        self.stealth = FakeStealth(page, block=block)
        return ScrapeOrchestrator(
            config or CONFIG,
            self.queue,
            sessions=self.sessions,
            stealth=self.stealth,
            extractor=FakeExtractor(pages, delay=delay),
            storage=storage,
        )

    async def test_success_aggregates_pages_and_persists(self):
        storage = FakeStorage()
        pages = [
            page_result((500000, 50), (700000, 70), reported=3),
            page_result((900000, 60), number=2),
        ]
        orchestrator = self.make_orchestrator(FakePage(), pages, storage=storage)

        task = await orchestrator.process_next()

        self.assertEqual(task.status, TaskStatus.COMPLETED)
        result = task.result
        self.assertEqual(result["count"], 3)
        self.assertEqual(result["reportedCount"], 3)
        self.assertEqual(result["prices"], [500000, 700000, 900000])
        self.assertEqual(result["pricesPerSqm"], [10000, 10000, 15000])
        self.assertEqual(result["avgPrice"], 700000)
        self.assertEqual(result["avgPricePerSqm"], 11667)
        self.assertEqual(result["diagnostics"]["pagesProcessed"], 2)
        self.assertEqual(result["diagnostics"]["consent"]["strategy"], "no_wall")
        self.assertFalse(result["diagnostics"]["botDetected"])

        self.assertEqual(len(storage.saved), 1)
        self.assertEqual(storage.saved[0]["district"], "Mokotów")
        self.assertEqual(storage.saved[0]["room_type"], "twoRoom")
        self.assertEqual(storage.saved[0]["fetch_date"], "2026-03-01")

        self.assertEqual(self.sessions.pages, 2)
        self.assertEqual(self.sessions.released, 1)
        self.assertEqual(self.stealth.browsed, 1)
        self.assertTrue(self.stealth.contexts[0].closed)

    async def test_bot_detection_fails_task(self):
        orchestrator = self.make_orchestrator(FakePage(), [page_result((500000, 50))], block="marker:captcha")

        task = await orchestrator.process_next()

        self.assertEqual(task.status, TaskStatus.FAILED)
        self.assertEqual(task.error_type, "bot_detected")
        self.assertTrue(task.result["diagnostics"]["botDetected"])
        self.assertEqual(task.result["diagnostics"]["blockReason"], "marker:captcha")
        self.assertEqual(task.result["count"], 0)

    async def test_no_listings_completes_with_zero(self):
        storage = FakeStorage()
        orchestrator = self.make_orchestrator(FakePage(), [page_result()], storage=storage)

        task = await orchestrator.process_next()

        self.assertEqual(task.status, TaskStatus.COMPLETED)
        self.assertEqual(task.result["count"], 0)
        self.assertEqual(task.result["avgPrice"], 0)
        self.assertIn("no_listings_found", task.result["diagnostics"]["errors"])
        self.assertEqual(len(storage.saved), 1)

    async def test_task_timeout_invalidates_session_and_retries(self):
        config = {"scraping": dict(CONFIG["scraping"], task_timeout_seconds=0.05)}
        orchestrator = self.make_orchestrator(FakePage(), [page_result((500000, 50))], config=config, delay=1.0)

        task = await orchestrator.process_next()

        self.assertEqual(task.status, TaskStatus.RETRY)
        self.assertEqual(task.error_type, "timeout_at_page_load")
        self.assertEqual(task.retry_count, 1)
        self.assertIn("task timeout", self.sessions.invalidated)
        self.assertIsNone(self.queue.current_task)

    async def test_navigation_falls_back_to_next_url(self):
        page = FakePage(fail_first=1)
        orchestrator = self.make_orchestrator(page, [page_result((500000, 50))])

        task = await orchestrator.process_next()

        self.assertEqual(task.status, TaskStatus.COMPLETED)
        self.assertEqual(len(page.visited), 2)
        self.assertIn("/pl/oferty/", task.result["diagnostics"]["url"])

    async def test_http_errors_on_every_candidate_retry_task(self):
        orchestrator = self.make_orchestrator(FakePage(status=500), [page_result((500000, 50))])

        task = await orchestrator.process_next()

        self.assertEqual(task.status, TaskStatus.RETRY)
        self.assertEqual(task.error_type, "navigation_error")

    async def test_memory_critical_between_pages(self):
        pages = [page_result((500000, 50), reported=200), page_result((600000, 60), number=2)]
        orchestrator = self.make_orchestrator(FakePage(), pages, sessions=FakeSessions(critical=True))

        task = await orchestrator.process_next()

        self.assertEqual(task.status, TaskStatus.RETRY)
        self.assertEqual(task.error_type, "memory_limit_exceeded")
        self.assertIn("memory_limit_exceeded", self.sessions.invalidated)
        self.assertEqual(task.result["count"], 1)

    async def test_storage_error_does_not_fail_task(self):
        storage = FakeStorage(error=OperationalError("INSERT", {}, Exception("database is locked")))
        orchestrator = self.make_orchestrator(FakePage(), [page_result((500000, 50))], storage=storage)

        task = await orchestrator.process_next()

        self.assertEqual(task.status, TaskStatus.COMPLETED)
        self.assertTrue(any(e.startswith("storage:") for e in task.result["diagnostics"]["errors"]))

    async def test_run_until_empty(self):
        self.queue.enqueue(TargetDescriptor("warszawa", "Wola", "wola", RoomType.ONE_ROOM, "2026-03-01"))
        orchestrator = self.make_orchestrator(FakePage(), [page_result((500000, 50))], storage=FakeStorage())

        async with orchestrator:
            summary = await orchestrator.run_until_empty()

        self.assertEqual(summary, {"processed": 2, "completed": 2, "retried": 0, "failed": 0})
        self.assertFalse(self.queue.has_work())
        self.assertTrue(self.sessions.closed)

    async def test_run_until_empty_respects_max_tasks(self):
        self.queue.enqueue(TargetDescriptor("warszawa", "Wola", "wola", RoomType.ONE_ROOM, "2026-03-01"))
        orchestrator = self.make_orchestrator(FakePage(), [page_result((500000, 50))])

        summary = await orchestrator.run_until_empty(max_tasks=1)

        self.assertEqual(summary["processed"], 1)
        self.assertEqual(len(self.queue.pending_tasks()), 1)


class TestPersistAfterStorageError(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.engine, Session = open_database(self.tmp)
        self.session = Session()
        self.queue = TaskQueue(Session)
        self.orchestrator = ScrapeOrchestrator(
            CONFIG,
            self.queue,
            sessions=FakeSessions(),
            stealth=FakeStealth(FakePage()),
            extractor=FakeExtractor([]),
            storage=AggregateRepository(self.session),
        )

    def tearDown(self):
        self.session.close()
        self.engine.dispose()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def finalized(self, *pairs):
        aggregate = AggregateResult()
        aggregate.add_page(page_result(*pairs))
        return aggregate.finalize()

    def test_failed_write_does_not_break_later_saves(self):
        first = self.queue.enqueue(TargetDescriptor("warszawa", "Mokotów", "mokotow", RoomType.TWO_ROOM, "2026-03-01"))
        second = self.queue.enqueue(TargetDescriptor("warszawa", "Wola", "wola", RoomType.TWO_ROOM, "2026-03-01"))

        broken = self.finalized((500000, 50))
        broken["diagnostics"]["sampleCard"] = object()
        self.orchestrator._persist(first, broken)
        self.assertEqual(len(broken["diagnostics"]["errors"]), 1)
        self.assertTrue(broken["diagnostics"]["errors"][0].startswith("storage:"))

        clean = self.finalized((450000, 45))
        self.orchestrator._persist(second, clean)
        self.assertEqual(clean["diagnostics"]["errors"], [])

        rows = self.session.query(DistrictAggregate).all()
        self.assertEqual([row.district for row in rows], ["Wola"])
        self.assertEqual(rows[0].avg_price_per_sqm, 10000)


if __name__ == "__main__":
    unittest.main()
