"""Tests for the activity/audit logs and the local notifier."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest
import respx

from octoledger.activity import ActivityLog, AuditLog, format_line
from octoledger.config import Settings
from octoledger.notify import LocalNotifier, NullNotifier, build_payload, error_html, notify_safely

NOW = datetime(2026, 2, 15, 10, 0, 3, tzinfo=timezone.utc)
ENDPOINT = "http://localhost:55000/api/notify"


def test_format_line_collapses_newlines():
    assert format_line("first\nsecond\r\nthird ", NOW) == "[2026-02-15T10:00:03+00:00] first second third"


def test_activity_log_appends_to_dated_file(tmp_path):
    log = ActivityLog(tmp_path / "logs", clock=lambda: NOW)

    log.append("Imported ELECTRIC")
    log.append("Imported GAS")

    path = tmp_path / "logs" / "activity-2026-02-15.log"
    assert log.path_for() == path
    assert path.read_text().splitlines() == [
        "[2026-02-15T10:00:03+00:00] Imported ELECTRIC",
        "[2026-02-15T10:00:03+00:00] Imported GAS",
    ]


def test_activity_log_never_raises(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")

    ActivityLog(blocker, clock=lambda: NOW).append("lost")


def test_audit_log_mirrors_and_echoes(tmp_path):
    activity = ActivityLog(tmp_path, clock=lambda: NOW)
    echoed = []
    log = AuditLog(tmp_path, activity, clock=lambda: NOW, echo=echoed.append)

    log.line("Audit starting mode=full")

    assert log.path == tmp_path / "audit-2026-02-15.log"
    assert log.path.read_text() == "[2026-02-15T10:00:03+00:00] Audit starting mode=full\n"
    assert echoed == ["[2026-02-15T10:00:03+00:00] Audit starting mode=full"]
    assert "[AUDIT] Audit starting mode=full" in activity.path_for().read_text()


def test_build_payload():
    assert build_payload("Title", "Body") == {"title": "Title", "body": "Body", "sendNow": True}
    assert build_payload("Title", "Body", html_body="<p>x</p>")["html"] == "<p>x</p>"
    assert build_payload("Title", "Body", url="http://example.com")["url"] == "http://example.com"


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"title": "", "body": "b"}, "title is required"),
        ({"title": "t", "body": ""}, "body is required"),
        ({"title": "t", "body": "b", "html_body": "<p/>", "url": "http://x"}, "either html or url"),
    ],
)
def test_build_payload_validation(kwargs, message):
    with pytest.raises(ValueError, match=message):
        build_payload(**kwargs)


def test_error_html_escapes():
    html = error_html("Audit mismatch", "<b>bad</b>", "/tmp/audit.log")
    assert "&lt;b&gt;bad&lt;/b&gt;" in html
    assert "/tmp/audit.log" in html


@respx.mock
def test_local_notifier_posts_json():
    route = respx.post(ENDPOINT).mock(return_value=httpx.Response(200))
    notifier = LocalNotifier.from_settings(Settings())

    assert notifier.timeout == 5.0
    assert notifier.send("Audit mismatch", "details") == 200
    assert json.loads(route.calls.last.request.read()) == {"title": "Audit mismatch", "body": "details", "sendNow": True}


@respx.mock
def test_notify_safely_sends_html():
    route = respx.post(ENDPOINT).mock(return_value=httpx.Response(200))

    assert notify_safely(LocalNotifier(ENDPOINT), "Audit mismatch", "2 fails", "/tmp/audit.log")
    payload = json.loads(route.calls.last.request.read())
    assert payload["body"] == "Audit mismatch: 2 fails"
    assert "Octopus Service Issue" in payload["html"]


@respx.mock
def test_notify_safely_swallows_delivery_errors():
    respx.post(ENDPOINT).mock(return_value=httpx.Response(500))

    assert notify_safely(LocalNotifier(ENDPOINT), "Audit mismatch", "2 fails") is False


def test_notify_safely_with_mock_notifier():
    notifier = MagicMock()
    notifier.send.side_effect = httpx.ConnectError("refused")

    assert notify_safely(notifier, "Import failed", "boom") is False
    assert notifier.send.call_args.kwargs["body"] == "Import failed: boom"


def test_null_notifier():
    assert NullNotifier().send("t", "b") is None
