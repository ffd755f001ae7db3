from __future__ import annotations

import pytest
import requests

from pg_partialcopy import alerts
from pg_partialcopy.errors import StepSQLError


class FakeResponse:
    def __init__(self, status_code: int, text: str = ""):
        self.status_code = status_code
        self.text = text


@pytest.fixture()
def posts(monkeypatch):
    sent = []

    def fake_post(url, json=None, timeout=None):
        sent.append((url, json))
        return FakeResponse(204)

    monkeypatch.setattr(requests, "post", fake_post)
    return sent


def test_no_webhook_skips(monkeypatch, posts):
    monkeypatch.delenv(alerts.WEBHOOK_ENV, raising=False)
    assert alerts.send_discord_alert("hello") is False
    assert posts == []


def test_webhook_from_environment(monkeypatch, posts):
    monkeypatch.setenv(alerts.WEBHOOK_ENV, "https://discord.test/hook")
    assert alerts.send_discord_alert("hello") is True
    assert posts == [("https://discord.test/hook", {"content": "hello", "username": "Partial Copy Alert"})]


def test_long_messages_are_truncated(posts):
    alerts.send_discord_alert("x" * 5000, webhook_url="https://discord.test/hook")
    content = posts[0][1]["content"]
    assert len(content) <= alerts.DISCORD_LIMIT
    assert content.endswith("(truncated)")


def test_http_failures_are_not_raised(monkeypatch):
    def broken_post(url, json=None, timeout=None):
        raise requests.ConnectionError("no route to host")

    monkeypatch.setattr(requests, "post", broken_post)
    assert alerts.send_discord_alert("hello", webhook_url="https://discord.test/hook") is False

    monkeypatch.setattr(requests, "post", lambda url, json=None, timeout=None: FakeResponse(400, "bad"))
    assert alerts.send_discord_alert("hello", webhook_url="https://discord.test/hook") is False


def test_failure_message_lists_missing_constraints():
    err = StepSQLError("error executing after copy SQL: boom", when="after_copy",
                       phase="step", step_index=2, table_name="orders")
    err.mark_constraints_missing(["alter table b add constraint b_id_fkey FOREIGN KEY (id) REFERENCES a(id)"])

    text = alerts.format_failure(err, "prod_to_dev.toml")

    assert "`prod_to_dev.toml`" in text
    assert "error executing step 2 (orders)" in text
    assert "- Phase: step" in text
    assert "`alter table b add constraint b_id_fkey FOREIGN KEY (id) REFERENCES a(id)`" in text


def test_truncation_keeps_whole_lines(posts):
    message = "\n".join(f"line {i:04d}" for i in range(500))
    alerts.send_discord_alert(message, webhook_url="https://discord.test/hook")
    content = posts[0][1]["content"]
    assert len(content) <= alerts.DISCORD_LIMIT
    kept = content[: -len(alerts.TRUNCATION_MARK)].splitlines()
    assert kept[0] == "line 0000"
    assert all(len(line) == len("line 0000") for line in kept)
