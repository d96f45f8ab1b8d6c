"""
Tests for the logging and monitoring service.
"""
import io
import json
import logging
import os
import shutil
import sys
import tempfile
import time
import unittest

from mtls_echo.models.config import Config
from mtls_echo.services.logging_service import (
    LoggingService, JSONFormatter, PerformanceMonitor, ErrorTracker, ConsoleReporter
)


def reset_root_logger():
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(logging.WARNING)


class TestJSONFormatter(unittest.TestCase):
    """Test JSON formatter for structured logging."""

    def setUp(self):
        self.formatter = JSONFormatter()
        self.logger = logging.getLogger('test')

    def _record(self, level=logging.INFO, msg='Test message', exc_info=None):
        return self.logger.makeRecord(
            name='mtls_echo.services.acceptor_service',
            level=level,
            fn='acceptor_service.py',
            lno=42,
            msg=msg,
            args=(),
            exc_info=exc_info
        )

    def test_format_basic_log_record(self):
        log_data = json.loads(self.formatter.format(self._record()))

        self.assertIn('timestamp', log_data)
        self.assertEqual(log_data['level'], 'INFO')
        self.assertEqual(log_data['logger_name'], 'mtls_echo.services.acceptor_service')
        self.assertEqual(log_data['message'], 'Test message')
        self.assertEqual(log_data['line_number'], 42)
        self.assertIsInstance(log_data['thread_id'], int)
        self.assertIsInstance(log_data['process_id'], int)
        self.assertIsNone(log_data['exception_info'])

    def test_format_log_record_with_exception(self):
        try:
            raise ConnectionResetError("Connection reset by peer")
        except ConnectionResetError:
            record = self._record(logging.ERROR, 'Unexpected error', exc_info=sys.exc_info())

        log_data = json.loads(self.formatter.format(record))

        self.assertEqual(log_data['exception_info']['type'], 'ConnectionResetError')
        self.assertEqual(log_data['exception_info']['message'], 'Connection reset by peer')
        self.assertIsInstance(log_data['exception_info']['traceback'], list)

    def test_format_log_record_with_extra_data(self):
        record = self._record()
        record.extra_data = {'peer': '127.0.0.1:50000', 'duration_ms': 1.5}

        log_data = json.loads(self.formatter.format(record))

        self.assertEqual(log_data['extra_data']['peer'], '127.0.0.1:50000')
        self.assertEqual(log_data['extra_data']['duration_ms'], 1.5)


class TestPerformanceMonitor(unittest.TestCase):
    """Test performance monitoring functionality."""

    def setUp(self):
        self.monitor = PerformanceMonitor()

    def test_measure_operation_success(self):
        with self.monitor.measure_operation('handshake', {'peer': '127.0.0.1:50000'}):
            time.sleep(0.01)

        metrics = self.monitor.get_metrics()
        self.assertEqual(len(metrics), 1)

        metric = metrics[0]
        self.assertEqual(metric.operation, 'handshake')
        self.assertTrue(metric.success)
        self.assertIsNone(metric.error_message)
        self.assertGreater(metric.duration_ms, 0)
        self.assertEqual(metric.extra_data['peer'], '127.0.0.1:50000')

    def test_measure_operation_failure(self):
        with self.assertRaises(ValueError):
            with self.monitor.measure_operation('handshake'):
                raise ValueError("Test error")

        metric = self.monitor.get_metrics()[0]
        self.assertFalse(metric.success)
        self.assertEqual(metric.error_message, 'Test error')

    def test_get_operation_stats(self):
        with self.monitor.measure_operation('handshake'):
            time.sleep(0.001)

        with self.monitor.measure_operation('handshake'):
            time.sleep(0.002)

        try:
            with self.monitor.measure_operation('handshake'):
                raise ValueError("Test error")
        except ValueError:
            pass

        with self.monitor.measure_operation('other'):
            pass

        stats = self.monitor.get_operation_stats('handshake')

        self.assertEqual(stats['total_calls'], 3)
        self.assertEqual(stats['success_count'], 2)
        self.assertEqual(stats['failure_count'], 1)
        self.assertAlmostEqual(stats['success_rate'], 2/3, places=2)
        self.assertGreaterEqual(stats['max_duration_ms'], stats['min_duration_ms'])
        self.assertEqual(self.monitor.get_operation_stats('missing'), {})

    def test_metrics_are_bounded(self):
        monitor = PerformanceMonitor(max_metrics=3)
        for _ in range(5):
            with monitor.measure_operation('handshake'):
                pass

        self.assertEqual(len(monitor.get_metrics()), 3)


class TestErrorTracker(unittest.TestCase):
    """Test error tracking functionality."""

    def setUp(self):
        self.tracker = ErrorTracker(max_errors=2)

    def test_track_error(self):
        self.tracker.track_error(ValueError("bad"), {'peer': '127.0.0.1:50000'})

        errors = self.tracker.get_errors()
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].error_type, 'ValueError')
        self.assertEqual(errors[0].extra_data['peer'], '127.0.0.1:50000')

    def test_get_error_summary(self):
        self.assertEqual(self.tracker.get_error_summary(), {'total_errors': 0, 'error_types': {}})

        self.tracker.track_error(ValueError("one"))
        self.tracker.track_error(KeyError("two"))
        self.tracker.track_error(ValueError("three"))

        summary = self.tracker.get_error_summary()
        # Counts cover the whole process even though history is bounded
        self.assertEqual(summary['total_errors'], 3)
        self.assertEqual(summary['error_types'], {'ValueError': 2, 'KeyError': 1})
        self.assertEqual(summary['most_common_error'], 'ValueError')
        self.assertEqual(len(self.tracker.get_errors()), 2)
        self.assertEqual(len(self.tracker.get_errors('ValueError')), 1)


class TestConsoleReporter(unittest.TestCase):

    def test_status_and_payload(self):
        stream = io.BytesIO()
        reporter = ConsoleReporter(stream)

        reporter.status("SSL handshake successful with localhost:4433")
        reporter.payload(b"ping\n")

        self.assertEqual(stream.getvalue(), b"SSL handshake successful with localhost:4433\nping\n")

    def test_payload_written_verbatim(self):
        stream = io.BytesIO()
        ConsoleReporter(stream).payload(b"\x00\xffno newline")

        self.assertEqual(stream.getvalue(), b"\x00\xffno newline")


class TestLoggingService(unittest.TestCase):
    """Test the logging service setup."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        reset_root_logger()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_console_handler_on_stderr(self):
        LoggingService(Config(port=4433, log_level="DEBUG"))

        root_logger = logging.getLogger()
        self.assertEqual(root_logger.level, logging.DEBUG)
        self.assertEqual(len(root_logger.handlers), 1)
        self.assertIs(root_logger.handlers[0].stream, sys.stderr)
        self.assertNotIsInstance(root_logger.handlers[0].formatter, JSONFormatter)

    def test_json_console(self):
        LoggingService(Config(port=4433, log_json=True))

        self.assertIsInstance(logging.getLogger().handlers[0].formatter, JSONFormatter)

    def test_handlers_replaced_on_reinitialization(self):
        LoggingService(Config(port=4433))
        LoggingService(Config(port=4433))

        self.assertEqual(len(logging.getLogger().handlers), 1)

    def test_file_logging_is_json(self):
        log_path = os.path.join(self.temp_dir, "logs", "mtls-echo.log")
        LoggingService(Config(port=4433, log_file_path=log_path))

        logging.getLogger('mtls_echo.test').warning("Could not perform SSL handshake with 127.0.0.1:50000")
        for handler in logging.getLogger().handlers:
            handler.flush()

        with open(log_path, 'r', encoding='utf-8') as f:
            lines = [json.loads(line) for line in f if line.strip()]

        self.assertTrue(any(
            entry['message'] == "Could not perform SSL handshake with 127.0.0.1:50000" and entry['level'] == 'WARNING'
            for entry in lines
        ))

    def test_performance_and_error_summaries(self):
        service = LoggingService(Config(port=4433))

        with service.performance_monitor.measure_operation('handshake'):
            pass
        service.error_tracker.track_error(ValueError("Test error"))

        self.assertEqual(service.get_performance_stats()['handshake']['total_calls'], 1)
        self.assertEqual(service.get_error_summary()['error_types'], {'ValueError': 1})


if __name__ == '__main__':
    unittest.main()
