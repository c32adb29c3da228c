"""CLI tests for queue management, run, analysis and export commands."""

import shutil
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from click.testing import CliRunner

sys.path.insert(0, str(Path(__file__).parent.parent))

from otodom_tracker.cli import cli
from otodom_tracker.errors import ErrorType
from otodom_tracker.task_queue import TaskQueue

CONFIG_TEMPLATE = """
storage:
  backend: sqlite
  sqlite:
    database_path: "{base}/data/test.db"
  exports:
    csv_path: "{base}/data/csv"
logging:
  level: WARNING
  file: "{base}/data/logs/test.log"
cities:
  warszawa:
    districts:
      "Mokotów": mokotow
      "Wola": wola
"""


class TestCli(unittest.TestCase):
    def setUp(self):
        self.runner = CliRunner()
        logging_patch = patch("otodom_tracker.cli.setup_logging")
        logging_patch.start()
        self.addCleanup(logging_patch.stop)
        self.tmp = tempfile.mkdtemp()
        self.config_path = Path(self.tmp) / "config.yaml"
        self.config_path.write_text(CONFIG_TEMPLATE.format(base=self.tmp), encoding="utf-8")

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def invoke(self, *args, **kwargs):
        return self.runner.invoke(cli, ["--config", str(self.config_path), *args], **kwargs)

    def queue(self):
        config = {"storage": {"backend": "sqlite", "sqlite": {"database_path": f"{self.tmp}/data/test.db"}}}
        return TaskQueue.from_config(config, recover=False)

    def test_init_creates_database(self):
        result = self.invoke("init")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertTrue((Path(self.tmp) / "data" / "test.db").exists())

    def test_enqueue_all_room_types(self):
        result = self.invoke("enqueue", "warszawa", "--district", "Wola", "--fetch-date", "2026-03-01")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Enqueued 4 tasks", result.output)

        tasks = self.queue().pending_tasks()
        self.assertEqual([t.priority for t in tasks], [0, 1, 2, 3])
        self.assertEqual({t.target.fetch_date for t in tasks}, {"2026-03-01"})

    def test_enqueue_selected_room_types(self):
        result = self.invoke("enqueue", "warszawa", "-r", "2", "-r", "3")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(len(self.queue().pending_tasks()), 4)

    def test_enqueue_rejects_unknown_input(self):
        result = self.invoke("enqueue", "gdansk")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Unknown city", result.output)

        result = self.invoke("enqueue", "warszawa", "-r", "studio")
        self.assertEqual(result.exit_code, 2)

    def test_status_and_tasks(self):
        self.invoke("enqueue", "warszawa", "-d", "wola", "-r", "1", "-r", "2")
        queue = self.queue()
        task = queue.dequeue_next()
        queue.fail(task.id, "Bot detection triggered: marker:captcha", ErrorType.BOT_DETECTED)

        status = self.invoke("status")
        self.assertEqual(status.exit_code, 0, status.output)
        self.assertIn("Pending: 1", status.output)
        self.assertIn("Failed: 1", status.output)
        self.assertIn("bot_detected: 1", status.output)

        tasks = self.invoke("tasks", "--limit", "5")
        self.assertEqual(tasks.exit_code, 0, tasks.output)
        self.assertIn("Queued (1):", tasks.output)
        self.assertIn("error=bot_detected", tasks.output)

    def test_clear_queue(self):
        self.invoke("enqueue", "warszawa")
        result = self.invoke("clear-queue", "--yes")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Removed 8 queued tasks", result.output)
        self.assertEqual(self.queue().pending_tasks(), [])

    @patch("otodom_tracker.cli.run_queue")
    def test_run_prints_summary(self, mock_run_queue):
        mock_run_queue.return_value = {
            "processed": 3,
            "completed": 2,
            "retried": 0,
            "failed": 1,
            "queue": {"pending": 0, "retrying": 0},
            "statistics": {"errors_by_type": {"bot_detected": 1}},
        }
        result = self.invoke("run", "--max-tasks", "3", "--no-headless")

        self.assertEqual(result.exit_code, 0, result.output)
        kwargs = mock_run_queue.call_args.kwargs
        self.assertEqual(kwargs["max_tasks"], 3)
        self.assertFalse(kwargs["headless"])
        self.assertEqual(kwargs["config_path"], str(self.config_path))
        self.assertIn("Tasks processed: 3", result.output)
        self.assertIn("bot_detected: 1", result.output)

    @patch("otodom_tracker.cli.run_queue", side_effect=RuntimeError("playwright missing"))
    def test_run_failure_exits_non_zero(self, _mock):
        result = self.invoke("run")
        self.assertEqual(result.exit_code, 1)
        self.assertIn("Error: playwright missing", result.output)

    @patch("otodom_tracker.cli.run_analysis")
    def test_analyze(self, mock_run_analysis):
        mock_run_analysis.return_value = {
            "city": "warszawa",
            "district_statistics": [{}, {}],
            "city_summary": [
                {"room_type": "twoRoom", "districts": 2, "listings": 40, "median_price_per_sqm": 17250},
            ],
            "exported_files": {"district_statistics": "data/analysis/x.csv"},
        }
        result = self.invoke("analyze", "warszawa", "--no-export")

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertFalse(mock_run_analysis.call_args.kwargs["export"])
        self.assertIn("median=17250", result.output)

    @patch("otodom_tracker.cli.export_to_csv", return_value={})
    def test_export_nothing(self, mock_export):
        result = self.invoke("export", "--city", "warszawa")
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Nothing to export", result.output)
        self.assertEqual(mock_export.call_args.kwargs["city"], "warszawa")

    def test_missing_config_file(self):
        result = self.runner.invoke(cli, ["--config", str(Path(self.tmp) / "missing.yaml"), "status"])
        self.assertEqual(result.exit_code, 2)


if __name__ == "__main__":
    unittest.main()
