"""Tests for log_utils: log injection sanitizer and level configuration."""

import logging

from log_utils import _sanitize_value, _safe_record_factory, configure_logging, install_safe_logging


class TestSanitizeValue:
    def test_strips_newlines(self):
        assert _sanitize_value("line1\nline2") == "line1\\nline2"

    def test_strips_carriage_returns(self):
        assert _sanitize_value("line1\rline2") == "line1\\rline2"

    def test_strips_crlf(self):
        assert _sanitize_value("line1\r\nline2") == "line1\\r\\nline2"

    def test_passes_non_strings(self):
        assert _sanitize_value(42) == 42
        assert _sanitize_value(None) is None


class TestSafeRecordFactory:
    def _make_record(self, msg, args):
        return _safe_record_factory(
            "test", logging.INFO, __file__, 0, msg, args, None,
        )

    def test_sanitizes_title_args(self):
        record = self._make_record("Queued %s for %d days", ("Evil\nTitle", 15))
        assert record.getMessage() == "Queued Evil\\nTitle for 15 days"

    def test_sanitizes_dict_args(self):
        record = self._make_record("Rule %(name)s", ({"name": "Bad\r\nRule"},))
        assert record.getMessage() == "Rule Bad\\r\\nRule"

    def test_sanitizes_preformatted_message(self):
        # f-string log lines arrive with the title already interpolated
        record = self._make_record("[QUEUE] 'Forged\nINFO line' -> completed", None)
        assert "\n" not in record.getMessage()

    def test_no_args_unchanged(self):
        record = self._make_record("Simple message", None)
        assert record.getMessage() == "Simple message"


class TestConfigureLogging:
    def setup_method(self):
        self._factory = logging.getLogRecordFactory()
        self._level = logging.getLogger().level

    def teardown_method(self):
        logging.setLogRecordFactory(self._factory)
        logging.getLogger().setLevel(self._level)

    def test_installs_factory(self):
        install_safe_logging()
        assert logging.getLogRecordFactory() is _safe_record_factory

    def test_applies_level(self):
        assert configure_logging("debug") == "DEBUG"
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_level_falls_back_to_info(self):
        assert configure_logging("LOUD") == "INFO"
        assert logging.getLogger().level == logging.INFO

    def test_logger_uses_factory(self):
        configure_logging("INFO")
        test_logger = logging.getLogger("test.install")
        record = test_logger.makeRecord(
            "test", logging.INFO, __file__, 0,
            "Show %s", ("Evil\nName",), None,
        )
        assert record.getMessage() == "Show Evil\\nName"
