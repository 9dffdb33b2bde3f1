"""Tests for the notification dispatcher: dedup, harness detection, delivery."""

import os
import time
from unittest import mock

import pytest

from agent_bus.config import BusConfig
from agent_bus.errors import TerminalError
from agent_bus.notify import (
    FALLBACK_TEXT,
    NotificationDispatcher,
    NotifyResult,
    pid_alive,
    preview,
    role_lock,
)
from agent_bus.transport import BusTransport, new_message

SESSION = "s"


def _make_dispatcher(tmp_path, **overrides):
    cfg = BusConfig(bus_root=tmp_path, memory_dir=tmp_path / "memory").with_overrides(**overrides)
    transport = BusTransport(cfg)
    terminal = mock.Mock()
    terminal.has_session.return_value = True
    return NotificationDispatcher(cfg, transport, terminal), transport, terminal


def _send(transport, role="build", payload="hello", action="run", sender="test"):
    transport.send(SESSION, new_message(sender, role, "request", action, payload))


@pytest.fixture(autouse=True)
def _no_keystroke_delay():
    with mock.patch("agent_bus.notify.time.sleep"):
        yield


# ---------------------------------------------------------------------------
# Harness detection
# ---------------------------------------------------------------------------


class TestHarnessActive:
    def test_no_marker(self, tmp_path):
        dispatcher, _, _ = _make_dispatcher(tmp_path)
        assert dispatcher.harness_active(SESSION, "build") is False

    def test_live_pid(self, tmp_path):
        dispatcher, _, _ = _make_dispatcher(tmp_path)
        marker = dispatcher.config.harness_marker_path(SESSION, "build")
        marker.parent.mkdir(parents=True)
        marker.write_text(f"{os.getpid()}\n")
        assert dispatcher.harness_active(SESSION, "build") is True
        assert marker.exists()

    def test_garbage_marker_removed(self, tmp_path):
        dispatcher, _, _ = _make_dispatcher(tmp_path)
        marker = dispatcher.config.harness_marker_path(SESSION, "build")
        marker.parent.mkdir(parents=True)
        marker.write_text("not-a-pid")
        assert dispatcher.harness_active(SESSION, "build") is False
        assert not marker.exists()

    def test_dead_pid_removed(self, tmp_path):
        dispatcher, _, _ = _make_dispatcher(tmp_path)
        marker = dispatcher.config.harness_marker_path(SESSION, "build")
        marker.parent.mkdir(parents=True)
        marker.write_text("999999")
        with mock.patch("agent_bus.notify.pid_alive", return_value=False):
            assert dispatcher.harness_active(SESSION, "build") is False
        assert not marker.exists()


def test_pid_alive():
    assert pid_alive(os.getpid()) is True
    assert pid_alive(0) is False
    with mock.patch("os.kill", side_effect=ProcessLookupError):
        assert pid_alive(12345) is False
    with mock.patch("os.kill", side_effect=PermissionError):
        assert pid_alive(12345) is True


# ---------------------------------------------------------------------------
# Dedup marker
# ---------------------------------------------------------------------------


class TestAlreadyNotified:
    def test_empty_inbox_is_suppressed(self, tmp_path):
        dispatcher, _, _ = _make_dispatcher(tmp_path)
        assert dispatcher.already_notified(SESSION, "build") is True

    def test_no_marker(self, tmp_path):
        dispatcher, transport, _ = _make_dispatcher(tmp_path)
        _send(transport)
        assert dispatcher.already_notified(SESSION, "build") is False

    def test_marker_matches_size(self, tmp_path):
        dispatcher, transport, _ = _make_dispatcher(tmp_path)
        _send(transport)
        dispatcher.mark_notified(SESSION, "build")
        marker = dispatcher.config.notified_size_path(SESSION, "build")
        assert marker.read_text() == str(transport.inbox_size(SESSION, "build"))
        assert dispatcher.already_notified(SESSION, "build") is True

    def test_growth_within_cooldown_is_suppressed(self, tmp_path):
        dispatcher, transport, _ = _make_dispatcher(tmp_path, notify_cooldown=60)
        _send(transport)
        dispatcher.mark_notified(SESSION, "build")
        _send(transport, payload="more")
        assert dispatcher.already_notified(SESSION, "build") is True

    def test_growth_after_cooldown_is_not_suppressed(self, tmp_path):
        dispatcher, transport, _ = _make_dispatcher(tmp_path)
        _send(transport)
        dispatcher.mark_notified(SESSION, "build")
        marker = dispatcher.config.notified_size_path(SESSION, "build")
        old = time.time() - 10
        os.utime(marker, (old, old))
        _send(transport, payload="more")
        assert dispatcher.already_notified(SESSION, "build") is False

    def test_unparsable_marker(self, tmp_path):
        dispatcher, transport, _ = _make_dispatcher(tmp_path)
        _send(transport)
        dispatcher.config.notified_size_path(SESSION, "build").write_text("junk")
        assert dispatcher.already_notified(SESSION, "build") is False


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def test_preview_truncates():
    assert preview("x" * 100) == "x" * 100
    assert preview("x" * 101) == "x" * 100 + "…"


def test_notify_text_uses_newest_message(tmp_path):
    dispatcher, transport, _ = _make_dispatcher(tmp_path)
    assert dispatcher.notify_text(SESSION, "build") == FALLBACK_TEXT
    _send(transport, payload="first")
    _send(transport, payload="second", action="deploy", sender="cron")
    assert dispatcher.notify_text(SESSION, "build") == "[cron → deploy] second → Run: agent-bus inbox"


# ---------------------------------------------------------------------------
# notify()
# ---------------------------------------------------------------------------


class TestNotify:
    def test_delivers_text_then_enter(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path)
        _send(transport, payload="go")

        assert dispatcher.notify(SESSION, "build") is NotifyResult.DELIVERED
        terminal.has_session.assert_called_once_with(SESSION)
        terminal.send_literal.assert_called_once_with(
            "s:build.1", "[test → run] go → Run: agent-bus inbox"
        )
        terminal.send_key.assert_called_once_with("s:build.1", "Enter")
        terminal.display_message.assert_not_called()

    def test_second_call_unchanged_inbox_is_suppressed(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path)
        _send(transport)
        assert dispatcher.notify(SESSION, "build") is NotifyResult.DELIVERED
        assert dispatcher.notify(SESSION, "build") is NotifyResult.SUPPRESSED
        assert terminal.send_literal.call_count == 1

    def test_growth_after_cooldown_delivers_again(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path, notify_cooldown=0)
        _send(transport)
        dispatcher.notify(SESSION, "build")
        _send(transport, payload="again")
        assert dispatcher.notify(SESSION, "build") is NotifyResult.DELIVERED

    def test_marker_stores_compared_size(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path)
        _send(transport)
        # A message lands between the dedup check and the marker write
        with mock.patch.object(transport, "inbox_size", side_effect=[10, 25]) as inbox_size:
            assert dispatcher.notify(SESSION, "build") is NotifyResult.DELIVERED
        inbox_size.assert_called_once_with(SESSION, "build")
        marker = dispatcher.config.notified_size_path(SESSION, "build")
        assert marker.read_text() == "10"
        assert terminal.send_literal.call_count == 2

    def test_passive_role_uses_status_line(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path)
        _send(transport, role="edit", payload="review done")

        assert dispatcher.notify(SESSION, "edit") is NotifyResult.DELIVERED
        terminal.display_message.assert_called_once_with(
            SESSION, "📬 [test → run] review done → Run: agent-bus inbox"
        )
        terminal.send_literal.assert_not_called()
        terminal.send_key.assert_not_called()

    def test_configured_passive_role(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(
            tmp_path, passive_roles=frozenset({"review"})
        )
        _send(transport, role="review")
        dispatcher.notify(SESSION, "review")
        terminal.display_message.assert_called_once()
        terminal.send_literal.assert_not_called()

    def test_harness_skips_delivery(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path)
        _send(transport)
        with mock.patch.object(dispatcher, "harness_active", return_value=True):
            assert dispatcher.notify(SESSION, "build") is NotifyResult.HARNESS
        terminal.send_literal.assert_not_called()
        assert not dispatcher.config.notified_size_path(SESSION, "build").exists()

    def test_missing_session_fails_but_keeps_marker(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path)
        terminal.has_session.return_value = False
        _send(transport)

        assert dispatcher.notify(SESSION, "build") is NotifyResult.FAILED
        terminal.send_literal.assert_not_called()
        assert dispatcher.config.notified_size_path(SESSION, "build").exists()
        # No retry for the same inbox size
        assert dispatcher.notify(SESSION, "build") is NotifyResult.SUPPRESSED

    def test_terminal_error_is_reported_not_raised(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path)
        terminal.send_key.side_effect = TerminalError("pane gone")
        _send(transport)
        assert dispatcher.notify(SESSION, "build") is NotifyResult.FAILED

    def test_passive_failure_is_reported_not_raised(self, tmp_path):
        dispatcher, transport, terminal = _make_dispatcher(tmp_path)
        terminal.display_message.side_effect = TerminalError("no server")
        _send(transport, role="edit")
        assert dispatcher.notify(SESSION, "edit") is NotifyResult.FAILED

    def test_empty_inbox_never_delivers(self, tmp_path):
        dispatcher, _, terminal = _make_dispatcher(tmp_path)
        assert dispatcher.notify(SESSION, "build") is NotifyResult.SUPPRESSED
        terminal.has_session.assert_not_called()


# ---------------------------------------------------------------------------
# Lock
# ---------------------------------------------------------------------------


def test_role_lock_creates_lock_file(tmp_path):
    path = tmp_path / "lock" / "notify-build.lock"
    with role_lock(path) as locked:
        assert locked is True
    assert path.exists()


def test_role_lock_falls_back_when_unavailable(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    with role_lock(blocker / "lock" / "x.lock") as locked:
        assert locked is False
