"""
Tests for the logger factory and the Loki handler.
"""

import json
import logging

import httpx

from loggers import LokiHandler, build_loki_payload, get_logger


def make_record(message: str = "Session s1 created", level: int = logging.INFO) -> logging.LogRecord:
    record = logging.LogRecord("SESSION_SERVICE", level, __file__, 10, message, None, None)
    record.created = 1741618800.5
    return record


class TestLokiPayload:
    """Tests for build_loki_payload."""

    def test_labels_and_timestamp(self):
        payload = build_loki_payload(make_record(), "created", {"app": "session_service"})

        stream = payload["streams"][0]
        assert stream["stream"] == {"app": "session_service", "level": "info", "logger": "SESSION_SERVICE"}
        assert stream["values"] == [["1741618800500000000", "created"]]


class TestLokiHandler:
    """Tests for LokiHandler."""

    def test_pushes_record(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        loki = LokiHandler("http://loki.test/loki/api/v1/push", {"app": "test"}, client=client)
        loki.emit(make_record(level=logging.WARNING))
        loki.close()

        body = json.loads(requests[0].content)
        assert requests[0].url.path == "/loki/api/v1/push"
        assert body["streams"][0]["stream"]["level"] == "warning"

    def test_delivery_failure_is_contained(self, monkeypatch):
        errors = []
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        loki = LokiHandler("http://loki.test/push", {"app": "test"}, client=client)
        monkeypatch.setattr(loki, "handleError", errors.append)

        loki.emit(make_record())

        assert len(errors) == 1


class TestGetLogger:
    """Tests for get_logger."""

    def test_handlers(self, tmp_path):
        log_file = tmp_path / "nested" / "service.log"
        logger = get_logger("test-handlers", log_file=str(log_file), level="INFO", loki_url="http://loki.test")

        kinds = {type(h).__name__ for h in logger.handlers}
        assert kinds == {"StreamHandler", "RotatingFileHandler", "LokiHandler"}
        assert logger.level == logging.INFO
        assert log_file.parent.is_dir()

        for h in logger.handlers:
            h.close()

    def test_console_only_and_idempotent(self):
        logger = get_logger("test-console", log_file=None, loki_url=None)
        again = get_logger("test-console", log_file=None, loki_url=None)

        assert again is logger
        assert len(logger.handlers) == 1
