"""
Simple utility tests: retry decorator, config loading, structured logger
"""

import json
import logging
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from stepflow.pipeline.models import ExecutionOptions
from stepflow.utils.config import JsonLineFormatter, build_handlers, get_section, load_config
from stepflow.utils.exceptions import CapabilityAPIError, ConfigurationError, InvocationError
from stepflow.utils.retry import backoff_delay, exponential_backoff_with_jitter, is_retriable
from stepflow.utils.structured_logger import StructuredLogger


class TestRetry(unittest.TestCase):
    """Test exponential backoff decorator"""

    def setUp(self):
        patcher = patch('stepflow.utils.retry.time.sleep')
        self.sleep = patcher.start()
        self.addCleanup(patcher.stop)

    def test_retries_until_success(self):
        calls = []

        @exponential_backoff_with_jitter(max_retries=3, base_delay=1.0, jitter=False)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise CapabilityAPIError("busy", status_code=503)
            return "ok"

        self.assertEqual(flaky(), "ok")
        self.assertEqual(len(calls), 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])

    def test_delay_is_capped(self):
        @exponential_backoff_with_jitter(max_retries=4, base_delay=10.0, max_delay=15.0, jitter=False)
        def always_busy():
            raise ConnectionError("down")

        with self.assertRaises(ConnectionError):
            always_busy()
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [10.0, 15.0, 15.0, 15.0])

    def test_non_retriable_error_raises_immediately(self):
        calls = []

        @exponential_backoff_with_jitter(max_retries=3)
        def rejected():
            calls.append(1)
            raise InvocationError("bad request")

        with self.assertRaises(InvocationError):
            rejected()
        self.assertEqual(len(calls), 1)
        self.sleep.assert_not_called()

    def test_unrecoverable_pipeline_error_is_not_retried(self):
        error = CapabilityAPIError("forbidden", status_code=403)
        error.recoverable = False
        self.assertFalse(is_retriable(error, (CapabilityAPIError,)))
        self.assertTrue(is_retriable(CapabilityAPIError("busy"), (CapabilityAPIError,)))
        self.assertTrue(is_retriable(ConnectionError("down"), (ConnectionError,)))

    def test_backoff_delay_jitter_range(self):
        for attempt in range(4):
            delay = backoff_delay(attempt, base_delay=2.0, max_delay=10.0)
            expected = min(2.0 * 2 ** attempt, 10.0)
            self.assertGreaterEqual(delay, expected * 0.5)
            self.assertLessEqual(delay, expected * 1.5)


class TestConfig(unittest.TestCase):
    """Test configuration loading"""

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def write(self, text):
        path = os.path.join(self.tmp_dir, "config.yaml")
        with open(path, "w") as f:
            f.write(text)
        return path

    def test_load_config(self):
        path = self.write("engine:\n  default_timeout_ms: 1500\n  max_total_cost_usd: 0.5\nevents:\n")
        config = load_config(path)
        self.assertEqual(config["engine"]["default_timeout_ms"], 1500)
        self.assertEqual(get_section(config, "events"), {})
        self.assertEqual(get_section(config, "missing"), {})

    def test_empty_file(self):
        self.assertEqual(load_config(self.write("")), {})

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_config(os.path.join(self.tmp_dir, "nope.yaml"))

    def test_invalid_yaml_is_configuration_error(self):
        path = self.write("engine: [unclosed\n")
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(path)
        self.assertEqual(len(ctx.exception.errors), 1)

    def test_non_mapping_top_level_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            load_config(self.write("- engine\n- events\n"))

    def test_path_from_environment(self):
        path = self.write("events:\n  max_history: 7\n")
        with patch.dict(os.environ, {"STEPFLOW_CONFIG": path}):
            config = load_config()
        self.assertEqual(config["events"]["max_history"], 7)

    def test_unknown_sections_are_kept_with_warning(self):
        path = self.write("engine: {}\nextras:\n  a: 1\n")
        with self.assertLogs("stepflow.utils.config", level="WARNING") as logs:
            config = load_config(path)
        self.assertEqual(config["extras"], {"a": 1})
        self.assertIn("extras", logs.output[0])

    def test_log_handlers_from_logging_section(self):
        log_file = os.path.join(self.tmp_dir, "logs", "stepflow.log")
        handlers = build_handlers({"format": "json", "file": log_file})
        self.addCleanup(lambda: [h.close() for h in handlers])

        self.assertEqual(len(handlers), 2)
        self.assertIsInstance(handlers[1], logging.FileHandler)
        self.assertTrue(os.path.isdir(os.path.dirname(log_file)))
        self.assertIsInstance(handlers[0].formatter, JsonLineFormatter)

        record = logging.LogRecord("stepflow", logging.INFO, __file__, 1, "step %s done", ("a",), None)
        entry = json.loads(handlers[0].format(record))
        self.assertEqual(entry["message"], "step a done")
        self.assertEqual(entry["level"], "INFO")

        self.assertEqual(len(build_handlers({})), 1)

    def test_shipped_config_loads(self):
        path = os.path.join(os.path.dirname(__file__), "..", "config", "config.yaml")
        config = load_config(path)
        options = ExecutionOptions.from_config(config)
        self.assertEqual(options.default_timeout_ms, 30000)
        self.assertIsNone(options.max_total_cost_usd)

    def test_options_overrides(self):
        config = {"engine": {"default_timeout_ms": 1000, "max_total_cost_usd": 2.0}}
        options = ExecutionOptions.from_config(config, max_total_cost_usd=None, max_step_visits=5)
        self.assertEqual(options.max_total_cost_usd, 2.0)
        self.assertEqual(options.max_step_visits, 5)
        self.assertEqual(options.default_timeout_ms, 1000)


class TestStructuredLogger(unittest.TestCase):
    """Test JSONL audit logger"""

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.log_file = os.path.join(self.tmp_dir, "nested", "execution.jsonl")
        self.logger = StructuredLogger(self.log_file)

    def tearDown(self):
        shutil.rmtree(self.tmp_dir)

    def read_entries(self):
        with open(self.log_file, encoding="utf-8") as f:
            return [json.loads(line) for line in f]

    def test_entries_are_json_lines(self):
        self.logger.log_pipeline_start("run-1", "brief", 3, {"topic": "kelp"})
        self.logger.log_step_start("run-1", "research", {"q": "${variables.topic}"}, skill="web")
        self.logger.log_step_complete("run-1", "research", {"summary": "s"}, cost_usd=0.01, duration_ms=12.34567)
        self.logger.log_step_error("run-1", "write", "timeout", "timed out", duration_ms=100)
        self.logger.log_step_skipped("run-1", "publish", "halted after failure of \"write\"")
        self.logger.log_pipeline_complete("run-1", "brief", "failed", 0.01, 150.0, "write timed out")

        entries = self.read_entries()
        self.assertEqual(
            [e["event"] for e in entries],
            ["session_start", "pipeline_start", "step_start", "step_complete",
             "step_error", "step_skipped", "pipeline_complete"],
        )
        self.assertEqual(entries[2]["skill"], "web")
        self.assertEqual(entries[3]["duration_ms"], 12.346)
        self.assertEqual(entries[4]["level"], "ERROR")
        self.assertEqual(entries[5]["level"], "WARNING")
        self.assertEqual(entries[6]["error_message"], "write timed out")

    def test_non_json_values_are_stringified(self):
        self.logger.log_metric("odd", object())
        self.assertEqual(self.read_entries()[-1]["event"], "metric")


if __name__ == '__main__':
    unittest.main()
