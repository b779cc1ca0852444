"""Unit tests for cancellation, settings, notifications and the SMTP sender."""

import logging
import smtplib
import threading

import pytest
import requests

from jobpilot import config
from jobpilot.cancellation import CancelToken, OperationCancelled, ensure_token
from jobpilot.email_sender import SmtpEmailSender
from jobpilot.log import configure_logging
from jobpilot.notifications import Notifier


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@pytest.mark.unit
def test_wait_returns_early_when_cancelled_from_another_thread():
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()
    assert token.wait(30) is True
    with pytest.raises(OperationCancelled):
        token.raise_if_cancelled()


@pytest.mark.unit
def test_ensure_token():
    token = CancelToken()
    assert ensure_token(token) is token
    assert ensure_token(None).cancelled is False


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.mark.unit
def test_settings_merge_yaml_over_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("AI_MODEL", raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text("matching:\n  min_score: 70\nscraping:\n  keywords: [golang]\n", encoding="utf-8")

    settings = config.load_settings(path)

    assert settings["matching"] == {"min_score": 70, "batch_size": 50}
    assert settings["scraping"]["keywords"] == ["golang"]
    assert settings["scraping"]["limit"] == 200
    assert config.DEFAULTS["matching"]["min_score"] == 80


@pytest.mark.unit
def test_environment_overrides_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("RUN_HEADLESS", "false")
    monkeypatch.setenv("SMTP_PORT", "not-a-port")

    settings = config.load_settings(tmp_path / "missing.yaml")

    assert settings["database"]["url"] == "sqlite://"
    assert settings["scraping"]["headless"] is False
    assert settings["smtp"]["port"] == 587


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@pytest.mark.unit
def test_notifier_without_webhook_only_logs():
    assert Notifier(webhook_url="").new_match("u1", "m1", "Dev", "Acme", 90) is False


@pytest.mark.unit
def test_notifier_swallows_webhook_errors(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "post", boom)
    assert Notifier(webhook_url="http://hooks.local/x").notify("u1", "new_match", {}) is False


@pytest.mark.unit
def test_notifier_posts_payload(monkeypatch):
    seen = {}

    class Resp:
        def raise_for_status(self):
            pass

    def fake_post(url, json, timeout):
        seen.update(url=url, json=json)
        return Resp()

    monkeypatch.setattr(requests, "post", fake_post)
    assert Notifier(webhook_url="http://hooks.local/x").new_match("u1", "m1", "Dev", "Acme", 88) is True
    assert seen["json"]["payload"]["score"] == 88


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.logged_in = None
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, from_addr, to_addrs, msg):
        self.messages.append((from_addr, to_addrs, msg))


@pytest.mark.unit
def test_smtp_sender_builds_and_sends(monkeypatch):
    FakeSMTP.instances.clear()
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    sender = SmtpEmailSender(host="smtp.local", port=2525, user="bot", password="pw")

    message_id = sender.send("hr@acme.example", "Hello", "Body text", from_addr="ada@example.com", from_name="Ada")

    [server] = FakeSMTP.instances
    assert (server.host, server.port, server.logged_in) == ("smtp.local", 2525, "bot")
    from_addr, to_addrs, raw = server.messages[0]
    assert to_addrs == ["hr@acme.example"]
    assert "Subject: Hello" in raw
    assert message_id in raw


@pytest.mark.unit
def test_smtp_sender_requires_host(monkeypatch):
    monkeypatch.delenv("SMTP_HOST", raising=False)
    with pytest.raises(RuntimeError):
        SmtpEmailSender(host="").send("a@b.c", "s", "b", from_addr="x@y.z")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

@pytest.mark.unit
def test_logging_section_controls_level_and_file(tmp_path):
    root = logging.getLogger()
    level = root.level
    try:
        path = configure_logging({"level": "WARNING", "file": True, "dir": str(tmp_path)})
        assert path is not None and path.parent == tmp_path
        logging.getLogger("jobpilot.test").debug("written to the file only")
        for handler in root.handlers:
            handler.flush()
        assert "written to the file only" in path.read_text(encoding="utf-8")

        assert configure_logging({"level": "ERROR", "file": False}) is None
        assert root.level == logging.ERROR
    finally:
        configure_logging({"file": False})
        root.setLevel(level)


@pytest.mark.unit
def test_log_level_env_overrides_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert config.load_settings(tmp_path / "missing.yaml")["logging"]["level"] == "debug"
