import json
import logging

from salesbot.logging_config import ConversationLogger, JSONFormatter, get_logger, setup_logging


def _record(msg="Funnel stage greeting -> qualification", **extra):
    record = logging.LogRecord("salesbot.funnel_service", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "salesbot.funnel_service"
        assert data["message"] == "Funnel stage greeting -> qualification"
        assert "timestamp" in data
        assert "context" not in data

    def test_context_is_included(self):
        data = json.loads(JSONFormatter().format(_record(context={"contact_key": "5511@s.whatsapp.net"})))

        assert data["context"] == {"contact_key": "5511@s.whatsapp.net"}

    def test_non_ascii_is_kept(self):
        output = JSONFormatter().format(_record(msg="Transcrição concluída"))

        assert "Transcrição concluída" in output

    def test_exception_is_formatted(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            import sys

            record = _record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestLoggers:
    def test_get_logger_namespaces(self):
        assert get_logger("webhook").name == "salesbot.webhook"

    def test_setup_logging_installs_json_handler(self):
        root = logging.getLogger()
        previous = root.handlers[:], root.level
        try:
            setup_logging("debug")

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = previous[0]
            root.setLevel(previous[1])

    def test_conversation_logger_merges_context(self):
        adapter = ConversationLogger(logging.getLogger("salesbot.test"), {"contact_key": "5511@s.whatsapp.net"})

        msg, kwargs = adapter.process("hello", {"context": {"stage": "closing"}})

        assert msg == "hello"
        assert kwargs["extra"]["context"] == {"contact_key": "5511@s.whatsapp.net", "stage": "closing"}
