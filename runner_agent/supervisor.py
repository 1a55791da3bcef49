"""
Process Supervisor
==================

Runs the configured runner (run.sh) and stays with it until it ends.

Termination paths, all funnelled into one cleanup:
  - runner exits on its own        → cleanup, exit with the runner's code
                                     (128 + N when signal N killed it)
  - SIGTERM / SIGINT               → forward SIGTERM to the runner, wait up to
                                     stop_timeout, kill the process tree if it
                                     is still alive, cleanup, exit 0
  - interpreter exit (exception …) → atexit hook runs the same cleanup

Cleanup deregisters through RunnerController.shutdown(), which is latched,
so repeated signals or a signal racing a normal exit deregister only once.

Use it as a context manager around registration: a SIGTERM that lands
while config.sh is still running is remembered, the runner is never
started, and the fresh registration is removed again.
"""

from __future__ import annotations
import atexit
import logging
import os
import signal
import subprocess
import threading
import time
from typing import Optional

import psutil

from .controller import RunnerController

log = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ProcessSupervisor:
    def __init__(
        self,
        controller:    RunnerController,
        stop_timeout:  float = 30.0,
        poll_interval: float = 0.5,
        command:       Optional[list] = None,
    ):
        self.controller    = controller
        self.stop_timeout  = stop_timeout
        self.poll_interval = poll_interval
        self.command       = command or [str(controller.config.runner_dir / "run.sh")]

        self.process: Optional[subprocess.Popen] = None
        self._stop_requested = threading.Event()
        self._stop_deadline: Optional[float] = None
        self._original_handlers: dict = {}

    # ─── Signals ──────────────────────────────────────────────────────────────

    def install_handlers(self):
        for sig in HANDLED_SIGNALS:
            self._original_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, self._handle_signal)
        atexit.register(self._cleanup)

    def restore_handlers(self):
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()
        atexit.unregister(self._cleanup)

    def __enter__(self):
        self.install_handlers()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.restore_handlers()

    def _handle_signal(self, signum, frame):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)

        if self._stop_requested.is_set():
            log.info(f"[supervisor] Received {name} again — shutdown already in progress")
            return

        log.info(f"[supervisor] Received {name} — stopping runner")
        self._stop_requested.set()
        self._stop_deadline = time.monotonic() + self.stop_timeout
        self._signal_worker(signal.SIGTERM)

    # ─── Worker Process ───────────────────────────────────────────────────────

    def _signal_worker(self, sig):
        if self.process is None or self.process.poll() is not None:
            return
        log.info(f"[supervisor] Stopping runner process (pid={self.process.pid})")
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            pass

    def _kill_tree(self):
        """The runner ignored SIGTERM for too long; kill it and everything it spawned."""
        if self.process is None or self.process.poll() is not None:
            return
        log.warning(f"[supervisor] Runner did not stop within {self.stop_timeout}s — killing process tree")
        try:
            children = psutil.Process(self.process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        for child in children:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        self.process.kill()

    def launch(self) -> subprocess.Popen:
        kwargs = self.controller.worker_kwargs()
        who = self.controller.identity.user if self.controller.identity else f"uid {os.geteuid()}"
        log.info(f"[supervisor] Starting runner ({' '.join(self.command)}) as {who}")
        self.process = subprocess.Popen(self.command, **kwargs)
        return self.process

    def wait(self) -> int:
        """Block until the runner exits, enforcing the stop timeout once a stop was requested."""
        while True:
            try:
                return self.process.wait(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                if self._stop_deadline is not None and time.monotonic() >= self._stop_deadline:
                    self._kill_tree()

    def stop_worker(self):
        if self.process is None or self.process.poll() is not None:
            return
        if not self._stop_requested.is_set():
            self._stop_requested.set()
            self._stop_deadline = time.monotonic() + self.stop_timeout
            self._signal_worker(signal.SIGTERM)
        self.wait()

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def _cleanup(self):
        self.stop_worker()
        self.controller.shutdown()

    def run(self) -> int:
        """
        Launch and supervise the runner.
        Returns 0 after a signal-triggered shutdown, otherwise the runner's exit code.
        """
        rc, stopped = 0, True
        try:
            if not self._stop_requested.is_set():
                self.launch()
                rc = self.wait()
                stopped = self._stop_requested.is_set()
                log.info(f"[supervisor] Runner exited with code {rc}")
        finally:
            self._cleanup()

        if stopped:
            return 0
        # killed by a signal: report it the way a shell would (SIGKILL → 137)
        return 128 - rc if rc < 0 else rc
