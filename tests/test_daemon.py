"""Tests for the docsync daemon."""

from __future__ import annotations

import json
import os
import time
import urllib.request
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from docsync.daemon import (
    DaemonConfig,
    DaemonState,
    SyncDaemon,
    get_daemon_status,
    is_running,
    read_pid,
)
from docsync.sync.models import PullResult


@pytest.fixture
def daemon_config(docsync_home: Path) -> DaemonConfig:
    return DaemonConfig(home=docsync_home, pull_interval=60, port=0)


@pytest.fixture
def coordinator() -> MagicMock:
    mock = MagicMock()
    mock.backend.name = "memory"
    mock.pull.return_value = PullResult(pulled=2)
    mock.status.return_value = {"phase": "idle", "local_documents": 3}
    return mock


@pytest.fixture
def running_daemon(daemon_config, coordinator):
    daemon = SyncDaemon(daemon_config, coordinator=coordinator)
    daemon.start(install_signals=False, file_logging=False)
    yield daemon
    daemon.stop()


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class TestDaemonState:
    """Tests for thread-safe DaemonState."""

    def test_initial_snapshot(self):
        snap = DaemonState().snapshot()
        assert snap["running"] is False
        assert snap["pulls_completed"] == 0
        assert snap["pid"] == os.getpid()

    def test_record_pull(self):
        state = DaemonState()
        state.record_pull({"pulled": 1, "skipped": False})
        state.record_pull({"skipped": True})

        snap = state.snapshot()
        assert snap["pulls_completed"] == 1
        assert snap["pulls_skipped"] == 1
        assert snap["last_result"] == {"skipped": True}
        assert snap["last_pull"] is not None

    def test_errors_keep_latest(self):
        state = DaemonState()
        state.record_error("API server: address in use")
        state.record_pull({"error": "Authentication failed: expired"})

        snap = state.snapshot()
        assert snap["error_count"] == 2
        assert snap["last_error"] == "Authentication failed: expired"

    def test_mark_running(self):
        state = DaemonState()
        state.mark_running(True)
        assert state.snapshot()["started_at"] is not None
        state.mark_running(False)
        assert state.snapshot()["running"] is False


class TestDaemonConfig:
    def test_creates_log_dir(self, docsync_home: Path):
        config = DaemonConfig(home=docsync_home)
        assert config.log_file == docsync_home / "logs" / "daemon.log"
        assert config.log_file.parent.is_dir()
        assert config.pull_interval == 900
        assert config.pid_file == docsync_home / "daemon.pid"


class TestSyncDaemon:
    """Tests for the pull loop and the HTTP API."""

    def test_pulls_on_start(self, running_daemon, coordinator):
        assert _wait_for(lambda: running_daemon.state.pulls_completed >= 1)
        coordinator.pull.assert_called()
        assert running_daemon.state.last_result["pulled"] == 2

    def test_pull_error_recorded(self, daemon_config, coordinator):
        coordinator.pull.return_value = PullResult(error="Authentication failed: expired")
        daemon = SyncDaemon(daemon_config, coordinator=coordinator)

        data = daemon.pull_once()
        assert data["error"] == "Authentication failed: expired"
        assert daemon.state.last_error == "Authentication failed: expired"

    def test_ping(self, running_daemon):
        url = f"http://127.0.0.1:{running_daemon.port}/ping"
        with urllib.request.urlopen(url, timeout=2) as resp:
            data = json.loads(resp.read())
        assert data["pong"] is True

    def test_status_includes_sync(self, running_daemon):
        data = get_daemon_status(running_daemon.port)
        assert data is not None
        assert data["running"] is True
        assert data["sync"] == {"phase": "idle", "local_documents": 3}

    def test_post_pull_wakes_loop(self, running_daemon, coordinator):
        assert _wait_for(lambda: coordinator.pull.call_count >= 1)
        request = urllib.request.Request(
            f"http://127.0.0.1:{running_daemon.port}/pull", data=b"", method="POST",
        )
        with urllib.request.urlopen(request, timeout=2) as resp:
            assert resp.status == 202
            assert json.loads(resp.read()) == {"queued": True}

        assert _wait_for(lambda: coordinator.pull.call_count >= 2)

    def test_stop_closes_coordinator_and_pid(self, daemon_config, coordinator):
        daemon = SyncDaemon(daemon_config, coordinator=coordinator)
        daemon.start(install_signals=False, file_logging=False)
        assert read_pid(daemon_config.home) == os.getpid()

        daemon.stop()
        coordinator.close.assert_called_once()
        assert not is_running(daemon_config.home)


class TestPidHelpers:
    def test_no_pid_file(self, docsync_home: Path):
        assert read_pid(docsync_home) is None

    def test_garbage_pid_file_removed(self, docsync_home: Path):
        pid_file = docsync_home / "daemon.pid"
        pid_file.write_text("not-a-pid")
        assert read_pid(docsync_home) is None
        assert not pid_file.exists()

    def test_unreachable_daemon(self):
        assert get_daemon_status(port=1) is None
