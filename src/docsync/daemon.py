"""
docsync daemon -- the periodic pull trigger.

Runs in the background, pulls once on start and then every
``pull_interval_minutes``, drains the push queue, and exposes a small
local HTTP API so the CLI can ask how sync is doing or request a pull
right now.

    GET  /status   daemon counters plus coordinator status
    GET  /ping     liveness
    POST /pull     wake the pull loop immediately
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Optional

from .sync.engine import SyncCoordinator, _pid_alive, resolve_home

logger = logging.getLogger("docsync.daemon")

DEFAULT_PORT = 7788
PID_FILE = "daemon.pid"
LOG_DIR = "logs"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class DaemonConfig:
    """Configuration for the daemon process.

    Attributes:
        home: docsync home directory.
        pull_interval: Seconds between pulls.
        port: HTTP API port (0 picks a free port).
        log_file: Path for daemon log output.
        pid_file: Path of the PID file while running.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        pull_interval: int = 15 * 60,
        port: int = DEFAULT_PORT,
    ):
        self.home = resolve_home(home)
        self.pull_interval = pull_interval
        self.port = port

        log_dir = self.home / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / "daemon.log"
        self.pid_file = self.home / PID_FILE


class DaemonState:
    """Pull counters shared between the loop and the status endpoint."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_pull: Optional[datetime] = None
        self.pulls_completed: int = 0
        self.pulls_skipped: int = 0
        self.last_result: dict = {}
        self.last_error: Optional[str] = None
        self.error_count: int = 0
        self.running: bool = False

    def snapshot(self) -> dict:
        with self._lock:
            started = self.started_at
            return {
                "running": self.running,
                "pid": os.getpid(),
                "started_at": started.isoformat() if started else None,
                "last_pull": self.last_pull.isoformat() if self.last_pull else None,
                "pulls_completed": self.pulls_completed,
                "pulls_skipped": self.pulls_skipped,
                "last_result": self.last_result,
                "last_error": self.last_error,
                "error_count": self.error_count,
            }

    def mark_running(self, running: bool) -> None:
        with self._lock:
            self.running = running
            if running:
                self.started_at = datetime.now(timezone.utc)

    def record_pull(self, result: dict) -> None:
        with self._lock:
            self.last_pull = datetime.now(timezone.utc)
            self.last_result = result
            if result.get("skipped"):
                self.pulls_skipped += 1
                return
            self.pulls_completed += 1
            if result.get("error"):
                self.last_error = result["error"]
                self.error_count += 1

    def record_error(self, error: str) -> None:
        with self._lock:
            self.last_error = error
            self.error_count += 1


class SyncDaemon:
    """Background pull loop with a local status API.

    Args:
        config: Daemon configuration.
        coordinator: Sync coordinator. Built from ``config.home`` when omitted.
    """

    def __init__(self, config: DaemonConfig, coordinator: Optional[SyncCoordinator] = None):
        self.config = config
        self.coordinator = coordinator
        self.state = DaemonState()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._server: Optional[HTTPServer] = None
        self._log_handler: Optional[logging.Handler] = None

    @property
    def port(self) -> Optional[int]:
        return self._server.server_address[1] if self._server else None

    def start(self, install_signals: bool = True, file_logging: bool = True) -> None:
        """Start the pull loop and the API server.

        Args:
            install_signals: Handle SIGTERM/SIGINT (main thread only).
            file_logging: Attach the daemon log file handler.
        """
        self.config.pid_file.write_text(str(os.getpid()), encoding="utf-8")
        if file_logging:
            self._setup_logging()
        if install_signals:
            self._setup_signals()

        if self.coordinator is None:
            self.coordinator = SyncCoordinator(self.config.home)

        self.state.mark_running(True)

        logger.info(
            "Daemon starting -- home=%s port=%d pull=%ds backend=%s",
            self.config.home,
            self.config.port,
            self.config.pull_interval,
            self.coordinator.backend.name,
        )

        t = threading.Thread(target=self._pull_loop, name="daemon-pull", daemon=True)
        t.start()
        self._threads.append(t)

        self._start_api_server()
        logger.info("Daemon started -- PID %d", os.getpid())

    def stop(self) -> None:
        """Stop both threads, flush pending pushes, and drop the PID file."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self._wake_event.set()
        self.state.mark_running(False)

        if self._server:
            self._server.shutdown()
            self._server.server_close()
        for t in self._threads:
            t.join(timeout=5)
        if self.coordinator is not None:
            self.coordinator.close()

        self.config.pid_file.unlink(missing_ok=True)
        if self._log_handler is not None:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None
        logger.info("Daemon stopped.")

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def request_pull(self) -> None:
        """Wake the pull loop now instead of at the next interval."""
        self._wake_event.set()

    def pull_once(self) -> dict:
        data = self.coordinator.pull().model_dump()
        self.state.record_pull(data)
        return data

    def _pull_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.pull_once()
            except Exception as exc:
                logger.error("Pull loop error: %s", exc)
                self.state.record_error(f"Pull loop: {exc}")

            self._wake_event.wait(timeout=self.config.pull_interval)
            self._wake_event.clear()

    def _status(self) -> dict:
        data = self.state.snapshot()
        data["sync"] = self.coordinator.status()
        return data

    def _start_api_server(self) -> None:
        """Serve the status API on localhost from a background thread."""
        daemon = self
        get_routes = {
            "/status": lambda: (200, daemon._status()),
            "/ping": lambda: (200, {"pong": True, "pid": os.getpid()}),
        }

        class DaemonHandler(BaseHTTPRequestHandler):
            def do_GET(self):
                route = get_routes.get(self.path)
                if route is None:
                    self._send(404, {"endpoints": [*get_routes, "POST /pull"]})
                    return
                self._send(*route())

            def do_POST(self):
                if self.path != "/pull":
                    self._send(404, {"error": "not found"})
                    return
                daemon.request_pull()
                self._send(202, {"queued": True})

            def _send(self, status: int, data: dict):
                body = json.dumps(data, default=str).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = HTTPServer(("127.0.0.1", self.config.port), DaemonHandler)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")
            return
        t = threading.Thread(target=self._server.serve_forever, name="daemon-api", daemon=True)
        t.start()
        self._threads.append(t)
        logger.info("API server listening on http://127.0.0.1:%d", self.port)

    def _setup_logging(self) -> None:
        handler = logging.FileHandler(self.config.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.setLevel(logging.INFO)
        root = logging.getLogger()
        root.addHandler(handler)
        if root.getEffectiveLevel() > logging.INFO:
            root.setLevel(logging.INFO)
        self._log_handler = handler

    def _setup_signals(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s -- stopping", signal.Signals(signum).name)
        self._stop_event.set()
        self._wake_event.set()


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """PID of a live daemon, or None. A stale PID file is removed."""
    pid_path = resolve_home(home) / PID_FILE
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
    except FileNotFoundError:
        return None
    except ValueError:
        pid = None
    if _pid_alive(pid):
        return pid
    pid_path.unlink(missing_ok=True)
    return None


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None


def get_daemon_status(port: int = DEFAULT_PORT) -> Optional[dict]:
    """Query the running daemon's status via its HTTP API.

    Returns:
        Status dict from the daemon, or None if unreachable.
    """
    import urllib.error
    import urllib.request

    try:
        url = f"http://127.0.0.1:{port}/status"
        with urllib.request.urlopen(url, timeout=3) as resp:
            return json.loads(resp.read())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None
