import json
import logging
import sys
import unittest
from unittest import mock

from services.assessment.logging_config import _JsonFormatter, configure_logging
from services.assessment.request_context import REQUEST_ID, RequestIdFilter, bound_request_id, new_request_id


def _record(msg="job finished", **extra):
    record = logging.LogRecord("services.assessment.pipeline", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRequestIdFilter(unittest.TestCase):
    def test_default_placeholder(self):
        record = _record()
        self.assertTrue(RequestIdFilter().filter(record))
        self.assertEqual(record.request_id, "-")

    def test_bound_request_id_is_scoped(self):
        with bound_request_id("rid-1"):
            record = _record()
            RequestIdFilter().filter(record)
            self.assertEqual(record.request_id, "rid-1")
        self.assertEqual(REQUEST_ID.get(), "")

    def test_new_request_id_is_short_hex(self):
        rid = new_request_id()
        self.assertEqual(len(rid), 16)
        int(rid, 16)


class TestJsonFormatter(unittest.TestCase):
    def test_includes_request_id_and_extras(self):
        record = _record(request_id="rid-9", job_id="job_1", assessment_type="general", duration_ms=12)
        payload = json.loads(_JsonFormatter().format(record))
        self.assertEqual(payload["message"], "job finished")
        self.assertEqual(payload["level"], "INFO")
        self.assertEqual(payload["request_id"], "rid-9")
        self.assertEqual(payload["job_id"], "job_1")
        self.assertEqual(payload["assessment_type"], "general")
        self.assertEqual(payload["duration_ms"], 12)
        self.assertNotIn("identity", payload)

    def test_includes_exception_text(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        payload = json.loads(_JsonFormatter().format(record))
        self.assertIn("RuntimeError: boom", payload["exception"])


class TestConfigureLogging(unittest.TestCase):
    def setUp(self):
        self.root = logging.getLogger()
        self.saved = (self.root.level, self.root.handlers[:])

    def tearDown(self):
        level, handlers = self.saved
        self.root.setLevel(level)
        self.root.handlers[:] = handlers

    def test_json_format_from_env(self):
        with mock.patch.dict("os.environ", {"LOG_FORMAT": "json", "LOG_LEVEL": "warning"}):
            configure_logging()
        self.assertEqual(self.root.level, logging.WARNING)
        self.assertEqual(len(self.root.handlers), 1)
        self.assertIsInstance(self.root.handlers[0].formatter, _JsonFormatter)


if __name__ == "__main__":
    unittest.main()
