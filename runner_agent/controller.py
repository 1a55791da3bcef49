"""
Registration Lifecycle Controller
=================================

Owns everything the agent knows about its registration with the control
plane: the registration token, the lifecycle state, and whether there is
anything to deregister on the way out.

  UNCONFIGURED → CONFIGURING → RUNNING → DEREGISTERING → TERMINATED

acquire_token() and configure() are fatal on failure. evict_stale() and
deregister() are best effort: they log and carry on, because the configure
step replaces a same-named runner anyway and a runner that never got
registered has nothing to remove.

shutdown() is the only way out and runs at most once, however many
signals arrive and from wherever it is called.
"""

from __future__ import annotations
import logging
import os
import subprocess
import threading
import time
from enum import Enum
from typing import Callable, Optional

from .api_client import ApiClient
from .config import RunnerConfig
from .credentials import TOKEN_KEY, mask_token
from .errors import ConfigureError, TokenError
from .privilege import RuntimeIdentity

log = logging.getLogger(__name__)

LOCAL_CONFIG_MARKER = ".runner"
CONFIGURE_TIMEOUT   = 300


class LifecycleState(str, Enum):
    UNCONFIGURED  = "unconfigured"
    CONFIGURING   = "configuring"
    RUNNING       = "running"
    DEREGISTERING = "deregistering"
    TERMINATED    = "terminated"


class RunnerController:
    def __init__(
        self,
        config:           RunnerConfig,
        client:           ApiClient,
        identity:         Optional[RuntimeIdentity] = None,
        deregister_polls: int   = 6,
        deregister_pause: float = 2.0,
        sleep:            Callable[[float], None] = time.sleep,
    ):
        self.config           = config
        self.client           = client
        self.identity         = identity
        self.deregister_polls = deregister_polls
        self.deregister_pause = deregister_pause
        self._sleep           = sleep

        self.state            = LifecycleState.UNCONFIGURED
        self.registered       = False
        self._token: Optional[str] = None
        self._shutdown_latch  = threading.Lock()

    # ─── URLs ─────────────────────────────────────────────────────────────────

    @property
    def registration_token_url(self) -> str:
        return self.config.target.registration_token_url(self.config.api_url)

    @property
    def runners_url(self) -> str:
        return self.config.target.runners_url(self.config.api_url)

    # ─── Registration Token ───────────────────────────────────────────────────

    def acquire_token(self) -> str:
        log.info(f"Requesting registration token from API ({self.registration_token_url})")
        resp = self.client.call_json("POST", self.registration_token_url)

        data  = resp.data if isinstance(resp.data, dict) else {}
        token = data.get("token")
        if not token:
            raise TokenError(
                f"Failed to obtain registration token after {resp.attempts} attempt(s). Response:",
                response_text=resp.text or resp.error or "",
            )

        log.info(f"Obtained registration token (masked): {mask_token(token)}")
        if data.get("expires_at"):
            log.info(f"Token expires at: {data['expires_at']}")
        self._token = token
        return token

    # ─── Listing / Deletion ───────────────────────────────────────────────────

    def find_runner_ids(self, retries: Optional[int] = None) -> list:
        """Ids of registrations carrying our name. Empty on any API failure."""
        resp = self.client.call_json("GET", self.runners_url, retries=retries)
        if not resp.ok or not isinstance(resp.data, dict):
            log.warning(f"Could not list runners — {resp.describe()}")
            return []
        runners = resp.data.get("runners")
        if not isinstance(runners, list):
            log.warning(f"Runner listing has no 'runners' field — {resp.describe()}")
            return []
        return [r.get("id") for r in runners if r.get("name") == self.config.runner_name]

    def delete_runner(self, runner_id) -> bool:
        url  = self.config.target.runner_url(self.config.api_url, runner_id)
        resp = self.client.call_status("DELETE", url)
        if resp.ok:
            log.info(f"Unregistered runner id {runner_id}")
        else:
            log.warning(f"Failed to unregister runner id {runner_id} — {resp.describe()}")
        return resp.ok

    def evict_stale(self) -> int:
        """Delete leftover registrations that carry our name. Best effort."""
        evicted = 0
        for runner_id in self.find_runner_ids():
            log.info(f"Removing stale runner '{self.config.runner_name}' (id {runner_id})")
            if self.delete_runner(runner_id):
                evicted += 1
        return evicted

    # ─── Configure ────────────────────────────────────────────────────────────

    def worker_env(self) -> dict:
        """Environment for runner processes. The API token stays with the agent."""
        env = self.identity.env(os.environ) if self.identity else dict(os.environ)
        env.pop(TOKEN_KEY, None)
        return env

    def worker_kwargs(self) -> dict:
        kwargs = {"cwd": str(self.config.runner_dir), "env": self.worker_env()}
        if self.identity is not None:
            kwargs.update(self.identity.popen_kwargs())
        return kwargs

    def _remove_local_config(self, token: str):
        log.info("Local runner config detected; removing before reconfiguration")
        result = subprocess.run(
            [str(self.config.runner_dir / "config.sh"), "remove", "--unattended", "--token", token],
            capture_output=True, text=True, timeout=CONFIGURE_TIMEOUT,
            **self.worker_kwargs(),
        )
        if result.returncode != 0:
            log.warning(f"config.sh remove failed ({result.returncode}): {result.stderr.strip()[:300]}")

    def configure(self, token: Optional[str] = None):
        token = token or self._token
        if not token:
            raise ConfigureError("configure() needs a registration token")
        self._token = None  # one configure attempt per token

        self.state = LifecycleState.CONFIGURING
        if (self.config.runner_dir / LOCAL_CONFIG_MARKER).exists():
            self._remove_local_config(token)

        who = self.identity.user if self.identity else "current user"
        log.info(f"Configuring runner for {self.config.repo_url} as {self.config.runner_name} (as {who})")
        cmd = [
            str(self.config.runner_dir / "config.sh"), "--unattended",
            "--url",    self.config.repo_url,
            "--token",  token,
            "--name",   self.config.runner_name,
            "--work",   self.config.work_dir,
            "--labels", self.config.labels,
            "--replace",
        ]
        try:
            result = subprocess.run(cmd, timeout=CONFIGURE_TIMEOUT, **self.worker_kwargs())
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ConfigureError(f"config.sh could not be run: {e}")
        if result.returncode != 0:
            raise ConfigureError(f"config.sh exited with code {result.returncode}")

        self.registered = True
        self.state = LifecycleState.RUNNING

    def register(self):
        """Token → eviction → configure. Everything up to handing over to the supervisor."""
        token = self.acquire_token()
        self.evict_stale()
        self.configure(token)

    # ─── Deregister ───────────────────────────────────────────────────────────

    def deregister(self) -> int:
        """
        Remove our registration. Listings lag behind a runner that just
        stopped, so the lookup is polled a few times before giving up.
        """
        if not self.registered:
            log.info("Runner was never registered; nothing to unregister")
            return 0

        self.state = LifecycleState.DEREGISTERING
        log.info(f"Attempting runner unregister via API (name={self.config.runner_name})")

        # one request per poll: polls × pause bounds the whole lookup
        ids = []
        for i in range(1, self.deregister_polls + 1):
            ids = self.find_runner_ids(retries=1)
            if ids:
                break
            if i < self.deregister_polls:
                self._sleep(self.deregister_pause)

        if not ids:
            log.info("Runner not found via API; nothing to delete")
            return 0

        return sum(1 for runner_id in ids if self.delete_runner(runner_id))

    def shutdown(self) -> bool:
        """Deregister exactly once. Returns False if shutdown already ran."""
        if not self._shutdown_latch.acquire(blocking=False):
            return False
        try:
            self.deregister()
        except Exception:
            log.exception("Deregistration failed")
        finally:
            self.state = LifecycleState.TERMINATED
        return True
